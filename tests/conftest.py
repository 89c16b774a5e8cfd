from datetime import datetime, timedelta, timezone

import pytest

from drasbot.config import Settings
from drasbot.services.container import build_services
from drasbot.services.domain import RawMessage
from drasbot.services.memory_store import InMemoryPersistence
from drasbot.services.result import Result

T0 = datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeTransport:
    def __init__(self, fail: bool = False):
        self.sent: list[tuple[str, str]] = []
        self.fail = fail

    async def send(self, identity: str, text: str) -> Result[str]:
        if self.fail:
            return Result.failure("bridge down", "transport_error")
        self.sent.append((identity, text))
        return Result.success(f"{identity}@s.whatsapp.net")

    def texts_for(self, identity: str) -> list[str]:
        return [text for to, text in self.sent if to == identity]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def store():
    return InMemoryPersistence()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        database_url="sqlite:///:memory:",
        default_language="en",
        super_admin_identities=["34600000001"],
        context_sweep_enabled=False,
    )


@pytest.fixture
def make_services(settings, store, transport, clock):
    """Build the full service graph over in-memory fakes."""

    def factory(**overrides):
        current = settings.model_copy(update=overrides.pop("settings", {}))
        return build_services(
            current,
            persistence=overrides.pop("persistence", store),
            transport=overrides.pop("transport", transport),
            clock=overrides.pop("clock", clock),
            **overrides,
        )

    return factory


@pytest.fixture
def services(make_services):
    return make_services()


@pytest.fixture
def raw():
    def factory(text: str, sender: str = "34600111222") -> RawMessage:
        return RawMessage(sender=f"{sender}@s.whatsapp.net", text=text)

    return factory


@pytest.fixture
def failing_transport():
    return FakeTransport(fail=True)
