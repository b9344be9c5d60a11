from __future__ import annotations

from typing import Callable, Optional

import pytest
from fastapi.testclient import TestClient

from backend.app.errors import TransientNetworkError
from backend.app.main import create_app
from backend.app.models import OrderRow
from backend.app.services.dispatch import DispatchQueue
from backend.app.services.engine import EngineConfig, ReconciliationEngine
from backend.app.services.resilience import ResilienceWrapper, RetryPolicy
from backend.app.services.transport import ConnectionStatus

START_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self, start_ms: int = START_MS) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, *, ms: int = 0, minutes: int = 0, hours: int = 0) -> None:
        self.now += ms + minutes * 60_000 + hours * 3_600_000


class FakeSource:
    def __init__(self) -> None:
        self.rows: list[OrderRow] = []
        self.fetch_calls = 0
        self.failures_remaining = 0
        self.error: Optional[Exception] = None
        self.on_fetch: Optional[Callable[[], None]] = None

    def fetch_rows(self) -> list[OrderRow]:
        self.fetch_calls += 1
        if self.on_fetch:
            self.on_fetch()
        if self.error is not None:
            raise self.error
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise TransientNetworkError("connection reset by peer")
        return list(self.rows)

    def check_configuration(self) -> Optional[str]:
        return None


class FakeTransport:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.unregistered: set[str] = set()
        self.connected = True
        self.registration_calls = 0
        self.send_error: Optional[Exception] = None

    def send(self, phone: str, message: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((phone, message))

    def is_registered(self, phone: str) -> bool:
        self.registration_calls += 1
        return phone not in self.unregistered

    def connection_status(self) -> ConnectionStatus:
        return ConnectionStatus(is_connected=self.connected, session_exists=self.connected)


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def fake_source() -> FakeSource:
    return FakeSource()


@pytest.fixture()
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def make_row() -> Callable[..., OrderRow]:
    def factory(
        order_id: str = "A1",
        *,
        phone: str = "01012345678",
        whatsapp: str = "",
        status: str = "",
        name: str = "Ahmed Ali",
        **extra,
    ) -> OrderRow:
        return OrderRow(
            order_id=order_id,
            name=name,
            phone_raw=phone,
            whatsapp_raw=whatsapp,
            status=status,
            **extra,
        )

    return factory


@pytest.fixture()
def resilience(fake_clock: FakeClock) -> ResilienceWrapper:
    return ResilienceWrapper(sleep=lambda _: None, clock=fake_clock)


@pytest.fixture()
def queue(fake_transport: FakeTransport, resilience: ResilienceWrapper, fake_clock: FakeClock) -> DispatchQueue:
    return DispatchQueue(
        transport=fake_transport,
        resilience=resilience,
        send_policy=RetryPolicy(max_retries=0, base_delay_ms=0),
        clock=fake_clock,
    )


@pytest.fixture()
def engine_config() -> EngineConfig:
    return EngineConfig(
        row_cache_ttl_seconds=0,
        source_policy=RetryPolicy(max_retries=1, base_delay_ms=0),
        transport_policy=RetryPolicy(max_retries=0, base_delay_ms=0),
    )


@pytest.fixture()
def engine(
    fake_source: FakeSource,
    fake_transport: FakeTransport,
    queue: DispatchQueue,
    resilience: ResilienceWrapper,
    engine_config: EngineConfig,
    fake_clock: FakeClock,
) -> ReconciliationEngine:
    return ReconciliationEngine(
        source=fake_source,
        transport=fake_transport,
        queue=queue,
        resilience=resilience,
        config=engine_config,
        clock=fake_clock,
    )


@pytest.fixture()
def client(
    monkeypatch: pytest.MonkeyPatch,
    fake_source: FakeSource,
    fake_transport: FakeTransport,
) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("SOURCE_RETRY_BASE_DELAY_MS", "0")
    monkeypatch.setenv("TRANSPORT_RETRY_BASE_DELAY_MS", "0")
    app = create_app(
        source=fake_source,
        transport=fake_transport,
        resilience=ResilienceWrapper(sleep=lambda _: None),
    )
    return TestClient(app)
