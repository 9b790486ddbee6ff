"""Pytest Configuration - Shared fixtures for tests."""

import os
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

# Set test environment before importing app
os.environ["TELEGRAM_BOT_TOKEN"] = "123456:TEST-TOKEN"
os.environ["APP_ENV"] = "development"
os.environ["TELEGRAM_WEBHOOK_SECRET"] = ""

from src.contracts.updates import InboundUpdate, InputKind, OutboundRequest  # noqa: E402
from src.core.dispatcher import OutboundDispatcher  # noqa: E402
from src.core.engine import ConversationEngine  # noqa: E402
from src.core.idempotency import IdempotencyGuard  # noqa: E402
from src.core.retry import RetryExecutor, RetryPolicy  # noqa: E402
from src.services.persistence import PersistenceGateway  # noqa: E402


class FakeTransport:
    """Outbound transport recording every call.

    ``failures`` is consumed one entry per call: an exception is raised,
    None lets the call through. Once empty, every call succeeds.
    """

    def __init__(self, failures: list[Exception | None] | None = None) -> None:
        self.failures = list(failures or [])
        self.calls: list[OutboundRequest] = []
        self.sent: list[OutboundRequest] = []

    async def send(self, request: OutboundRequest) -> dict[str, Any]:
        self.calls.append(request)
        if self.failures:
            error = self.failures.pop(0)
            if error is not None:
                raise error
        self.sent.append(request)
        return {"message_id": len(self.sent)}

    @property
    def texts(self) -> list[str]:
        return [r.message_payload["text"] for r in self.sent]


class FakeCoins:
    """Coin directory answering from a fixed set.

    ``failures`` works like FakeTransport.failures.
    """

    def __init__(
        self,
        listed: set[str] | None = None,
        failures: list[Exception | None] | None = None,
    ) -> None:
        self.listed = listed if listed is not None else {"BTC", "ETH", "SOL"}
        self.failures = list(failures or [])
        self.lookups: list[str] = []

    async def coin_exists(self, coin: str) -> bool:
        self.lookups.append(coin)
        if self.failures:
            error = self.failures.pop(0)
            if error is not None:
                raise error
        return coin in self.listed


class RecordingSleep:
    """Sleep replacement that records delays and returns immediately."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def policy() -> RetryPolicy:
    """Retry policy used by engine tests."""
    return RetryPolicy(
        base_delay=0.01,
        multiplier=2.0,
        max_delay=0.1,
        max_attempts=5,
        jitter_fraction=0.0,
    )


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def executor(policy: RetryPolicy, sleep: RecordingSleep) -> RetryExecutor:
    return RetryExecutor(policy, sleep=sleep)


@pytest.fixture
async def gateway(tmp_path) -> AsyncGenerator[PersistenceGateway, None]:
    """Gateway on a fresh SQLite file."""
    gw = PersistenceGateway.from_url(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await gw.create_schema()
    yield gw
    await gw.close()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def make_engine(
    gateway: PersistenceGateway, executor: RetryExecutor
) -> Callable[..., ConversationEngine]:
    """Build an engine around a given transport (and coin directory)."""

    def _make(
        transport: FakeTransport, coins: FakeCoins | None = None
    ) -> ConversationEngine:
        dispatcher = OutboundDispatcher(transport=transport, executor=executor)
        guard = IdempotencyGuard(gateway)
        return ConversationEngine(
            guard=guard, gateway=gateway, dispatcher=dispatcher, coins=coins
        )

    return _make


@pytest.fixture
def engine(
    make_engine: Callable[..., ConversationEngine], transport: FakeTransport
) -> ConversationEngine:
    return make_engine(transport)


@pytest.fixture
def make_transport() -> type[FakeTransport]:
    """Factory for transports with scripted failures."""
    return FakeTransport


@pytest.fixture
def make_coins() -> type[FakeCoins]:
    """Factory for coin directories."""
    return FakeCoins


@pytest.fixture
def make_update() -> Callable[..., InboundUpdate]:
    """Factory for inbound updates (chat 1001 unless given)."""

    def _make(
        update_id: int | str,
        input_kind: InputKind,
        chat_id: int = 1001,
        **payload: Any,
    ) -> InboundUpdate:
        return InboundUpdate(
            update_id=update_id,
            chat_id=chat_id,
            input_kind=input_kind,
            payload=payload,
        )

    return _make


@pytest.fixture
def sample_telegram_update() -> dict:
    """Sample Bot API update with a text message."""
    return {
        "update_id": 900001,
        "message": {
            "message_id": 42,
            "from": {"id": 1001, "is_bot": False, "username": "alice"},
            "chat": {"id": 1001, "type": "private"},
            "date": 1767225600,
            "text": "/subscribe eth",
        },
    }


@pytest.fixture
async def async_client() -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for the FastAPI app (lifespan not run)."""
    from src.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
