"""Outbound Dispatcher - Ordered, per-user execution of side effects.

Each active user owns a lane: a FIFO lock serializing that user's units
of work. Different users run in parallel. Every outbound call goes
through the RetryExecutor.
"""

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

from src.contracts.side_effects import SendDiagnostic, SendMessage, SideEffect
from src.contracts.updates import InputKind, OutboundRequest
from src.core.errors import RetryCancelledError, TerminalError
from src.core.retry import RetryExecutor
from src.services.observability import effect_span, get_tracer, mark_failed
from src.services.telegram import OutboundTransport
from src.utils.logger import get_logger

logger = get_logger(__name__)
tracer = get_tracer(__name__)

EffectStatus = Literal["delivered", "failed", "skipped"]


class UserLane:
    """Serializes the work of one user.

    asyncio.Lock wakes waiters in FIFO order, so units run in the order
    they asked for the lane.
    """

    def __init__(self, chat_id: int, clock: Callable[[], float]) -> None:
        self.chat_id = chat_id
        self._lock = asyncio.Lock()
        self._clock = clock
        self._waiters = 0
        self.last_used = clock()

    @property
    def busy(self) -> bool:
        return self._lock.locked() or self._waiters > 0

    async def __aenter__(self) -> "UserLane":
        self._waiters += 1
        try:
            await self._lock.acquire()
        finally:
            self._waiters -= 1
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.last_used = self._clock()
        self._lock.release()


@dataclass
class EffectResult:
    """Outcome of one side effect."""

    effect: SideEffect
    status: EffectStatus
    reason: str | None = None


@dataclass
class DispatchReport:
    """Outcome of one ordered batch of side effects."""

    chat_id: int
    results: list[EffectResult] = field(default_factory=list)

    @property
    def delivered(self) -> int:
        return sum(1 for r in self.results if r.status == "delivered")

    @property
    def failure(self) -> EffectResult | None:
        return next((r for r in self.results if r.status == "failed"), None)

    def feedback(self) -> tuple[InputKind, dict[str, Any]] | None:
        """Internal input the conversation must see, if any.

        Failed replies always report back; successful ones only when the
        effect asked for it. Diagnostics never report back.
        """
        failure = self.failure
        if failure is not None and isinstance(failure.effect, SendMessage):
            return InputKind.DELIVERY_FAILED, {"reason": failure.reason}

        for result in self.results:
            if (
                result.status == "delivered"
                and isinstance(result.effect, SendMessage)
                and result.effect.report_outcome
            ):
                return InputKind.DELIVERY_SUCCEEDED, {}
        return None


def to_request(chat_id: int, effect: SideEffect) -> OutboundRequest:
    """Translate a side effect into a transport request."""
    if isinstance(effect, SendDiagnostic):
        payload = {"text": effect.text, "diagnostic": effect.reason}
    else:
        payload = {"text": effect.text}
    return OutboundRequest(chat_id=chat_id, message_payload=payload)


class OutboundDispatcher:
    """Executes side effects in order, one lane per user."""

    def __init__(
        self,
        transport: OutboundTransport,
        executor: RetryExecutor,
        idle_timeout: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            transport: Outbound transport (Telegram client).
            executor: Retry executor wrapping every call.
            idle_timeout: Seconds before an unused lane is reclaimed.
            clock: Monotonic clock.
        """
        self.transport = transport
        self.executor = executor
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._lanes: dict[int, UserLane] = {}
        self.cancel_event = asyncio.Event()

    def lane(self, chat_id: int) -> UserLane:
        """Get or create the lane of a user."""
        lane = self._lanes.get(chat_id)
        if lane is None:
            lane = UserLane(chat_id, self._clock)
            self._lanes[chat_id] = lane
        return lane

    @property
    def active_lanes(self) -> int:
        return len(self._lanes)

    def reclaim_idle(self) -> int:
        """Drop lanes nobody used for ``idle_timeout`` seconds.

        Returns:
            Number of lanes dropped.
        """
        cutoff = self._clock() - self.idle_timeout
        stale = [
            chat_id
            for chat_id, lane in self._lanes.items()
            if not lane.busy and lane.last_used <= cutoff
        ]
        for chat_id in stale:
            del self._lanes[chat_id]
        if stale:
            logger.debug("lanes_reclaimed", count=len(stale), active=len(self._lanes))
        return len(stale)

    async def dispatch(self, chat_id: int, effects: Sequence[SideEffect]) -> DispatchReport:
        """Execute effects for a user, waiting for the user's lane."""
        async with self.lane(chat_id):
            return await self.execute(chat_id, effects)

    async def execute(self, chat_id: int, effects: Sequence[SideEffect]) -> DispatchReport:
        """Execute effects strictly in order. The caller holds the lane.

        The batch stops at the first failure; the remaining effects are
        reported as skipped.

        Args:
            chat_id: Target chat.
            effects: Ordered side effects.

        Returns:
            DispatchReport with one result per effect.
        """
        report = DispatchReport(chat_id=chat_id)
        failed = False

        for index, effect in enumerate(effects):
            if failed:
                report.results.append(EffectResult(effect=effect, status="skipped"))
                continue

            request = to_request(chat_id, effect)
            operation_id = f"{effect.kind}:{chat_id}:{index}"

            with effect_span(tracer, operation_id, effect.kind) as span:
                result = await self._run_effect(effect, request, operation_id)
                if result.status == "failed":
                    failed = True
                    mark_failed(span, result.reason or "unknown")
            report.results.append(result)

        if failed:
            logger.warning(
                "dispatch_incomplete",
                chat_id=chat_id,
                delivered=report.delivered,
                total=len(effects),
                reason=report.failure.reason if report.failure else None,
            )
        return report

    async def _run_effect(
        self, effect: SideEffect, request: OutboundRequest, operation_id: str
    ) -> EffectResult:
        try:
            await self.executor.run(
                lambda: self.transport.send(request),
                operation_id=operation_id,
                cancel_event=self.cancel_event,
            )
        except RetryCancelledError:
            return EffectResult(effect=effect, status="failed", reason="cancelled")
        except TerminalError as e:
            return EffectResult(effect=effect, status="failed", reason=e.reason)
        except Exception as e:
            logger.error(
                "effect_failed_unclassified",
                operation_id=operation_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return EffectResult(effect=effect, status="failed", reason=type(e).__name__)
        return EffectResult(effect=effect, status="delivered")
