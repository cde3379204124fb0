import httpx
import pytest
import pytest_asyncio

from lotpass.config import Settings
from lotpass.db import Base, make_engine, make_session_factory
from lotpass.deps import build_services
from lotpass.main import create_app
from lotpass.notifications import EmailSender
from lotpass.processor import PaymentProcessorClient
from tests.helpers import START, SettableClock


class InMemoryRedis:
    """Just the redis.asyncio calls the service makes, backed by dicts."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.closed = False

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.values:
            return None
        self.values[key] = str(value)
        return True

    async def setex(self, key, ttl, value):
        self.values[key] = str(value)
        return True

    async def delete(self, key):
        return 1 if self.values.pop(key, None) is not None else 0

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})
        return len(mapping)

    async def expire(self, key, seconds):
        return True

    async def aclose(self):
        self.closed = True


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'lotpass.db'}",
        CHECKIN_SIGNING_SECRET="test_checkin_secret",
        PAYMENT_WEBHOOK_SECRET="test_webhook_secret",
        PROCESSOR_URL="http://processor.test",
        HOLD_MINUTES=5,
        MAX_WRITE_RETRIES=5,
    )


@pytest.fixture
def sessions(settings):
    engine = make_engine(settings.DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def clock() -> SettableClock:
    return SettableClock(START)


@pytest.fixture
def processor_calls() -> list:
    return []


@pytest.fixture
def processor(settings, processor_calls) -> PaymentProcessorClient:
    def handler(request: httpx.Request) -> httpx.Response:
        processor_calls.append(request)
        return httpx.Response(200, json={"id": f"pi_test_{len(processor_calls)}", "client_secret": "cs_test"})

    client = PaymentProcessorClient(
        settings.PROCESSOR_URL, "sk_test", transport=httpx.MockTransport(handler)
    )
    yield client
    client.close()


class RecordingSender(EmailSender):
    """Keeps outgoing mail instead of talking SMTP; set ``fail`` to make sends raise."""

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.sent: list[dict] = []
        self.fail = False

    def send_email(self, to_emails, subject, html_content, text_content=None) -> bool:
        if self.fail:
            raise ConnectionRefusedError("smtp down")
        self.sent.append({"to": to_emails, "subject": subject, "html": html_content, "text": text_content})
        return True


@pytest.fixture
def sender(settings) -> RecordingSender:
    return RecordingSender(settings)


@pytest.fixture
def services(sessions, settings, clock, processor, sender):
    return build_services(sessions, settings, clock=clock, processor=processor, sender=sender)


@pytest.fixture
def redis() -> InMemoryRedis:
    return InMemoryRedis()


@pytest_asyncio.fixture(scope="function")
async def client(services, redis):
    app = create_app(services, redis=redis)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test", timeout=10.0) as c:
        yield c
