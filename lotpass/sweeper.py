"""Expiration sweeper: reclaims pending registrations whose hold has elapsed."""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import sessionmaker

from .clock import Clock
from .db import transaction
from .store import RegistrationStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepReport:
    reclaimed: int
    scanned: int
    errors: int


class ExpirationSweeper:
    def __init__(self, sessions: sessionmaker, clock: Clock) -> None:
        self._sessions = sessions
        self._clock = clock

    def reclaim_one(self, registration_id: str, now: datetime) -> bool:
        """Fail one expired registration; False when it already left ``pending``."""
        with transaction(self._sessions) as db:
            return RegistrationStore(db).reclaim(registration_id, now)

    def sweep(self, now: datetime | None = None) -> SweepReport:
        now = now or self._clock.now()
        with transaction(self._sessions) as db:
            candidates = RegistrationStore(db).expired_pending_ids(now)

        reclaimed = errors = 0
        for registration_id in candidates:
            try:
                if self.reclaim_one(registration_id, now):
                    reclaimed += 1
                else:
                    logger.info("registration %s settled before reclaim, skipping", registration_id)
            except Exception:
                # one bad row must not stop the batch; it is retried next sweep
                errors += 1
                logger.exception("failed to reclaim registration %s", registration_id)

        logger.info(
            "sweep at %s: reclaimed=%d scanned=%d errors=%d",
            now.isoformat(), reclaimed, len(candidates), errors,
        )
        return SweepReport(reclaimed=reclaimed, scanned=len(candidates), errors=errors)
