import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator, TypeVar

from sqlalchemy import DateTime, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.types import TypeDecorator

from .config import get_settings
from .errors import ConcurrencyConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Base(DeclarativeBase):
    pass


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend.

    SQLite drops tzinfo on the way in and hands back naive values, so values
    are normalized to UTC before binding and re-tagged as UTC after loading.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to a UTC column")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # busy timeout lets concurrent writers queue on the database lock
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, pool_pre_ping=True)


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, expire_on_commit=False)


engine = make_engine(get_settings().DATABASE_URL)
SessionLocal = make_session_factory(engine)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def transaction(factory: sessionmaker) -> Iterator[Session]:
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


class SwapLost(Exception):
    """A conditional write matched no row; the unit of work should rerun."""


def run_unit_of_work(
    factory: sessionmaker,
    work: Callable[[Session], T],
    retries: int,
    retry_integrity: bool = False,
) -> T:
    """Run ``work`` in its own transaction, rerunning it when a swap is lost.

    With ``retry_integrity`` a unique-constraint violation is treated the same
    way: a concurrent writer created the row first.
    """
    for attempt in range(1, retries + 1):
        try:
            with transaction(factory) as db:
                return work(db)
        except SwapLost:
            logger.debug("conditional write lost, attempt %d/%d", attempt, retries)
        except IntegrityError:
            if not retry_integrity:
                raise
            logger.debug("unique constraint race, attempt %d/%d", attempt, retries)
    raise ConcurrencyConflictError()
