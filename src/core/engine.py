"""Conversation Engine - The update processing pipeline.

One unit of work per update, run inside the user's lane:

1. Reserve the update id (duplicates stop here)
2. Load the user, look up the coin if the input names one
3. Compute the transition
4. Commit new state + update record atomically
5. Dispatch the side effects
6. Feed the delivery outcome back as an internal update
"""

import asyncio
from typing import Any, Literal

from pydantic import BaseModel, Field

from src.contracts.updates import InboundUpdate
from src.core.dispatcher import OutboundDispatcher
from src.core.errors import BotError, EngineShuttingDownError, PersistenceError
from src.core.fsm import ConversationState, Transition, coin_to_check, transition
from src.core.idempotency import IdempotencyGuard
from src.services.hyperliquid import CoinDirectory
from src.services.observability import annotate_update, get_current_trace_id, get_tracer
from src.services.persistence import PersistenceGateway
from src.utils.logger import get_logger, update_log_context

logger = get_logger(__name__)
tracer = get_tracer(__name__)


class ProcessResult(BaseModel):
    """What happened to one update."""

    update_id: str
    status: Literal["processed", "duplicate"]
    state: ConversationState | None = Field(
        default=None,
        description="Committed state (None for duplicates)",
    )
    outcome: dict[str, Any] | None = Field(
        default=None,
        description="Recorded outcome (earlier one for duplicates)",
    )
    delivered: int = 0
    follow_up: "ProcessResult | None" = None

    @property
    def final_state(self) -> ConversationState | None:
        """State after the follow-up chain settled."""
        if self.follow_up is not None and self.follow_up.state is not None:
            return self.follow_up.final_state
        return self.state


ProcessResult.model_rebuild()


def build_outcome(update: InboundUpdate, result: Transition) -> dict[str, Any]:
    """Outcome stored on the update record."""
    return {
        "input_kind": update.input_kind.value,
        "state": result.next_state.label,
        "accepted": result.accepted,
        "effects": [effect.kind for effect in result.side_effects],
    }


class ConversationEngine:
    """Processes inbound updates with at-most-once application.

    The engine holds no per-user state of its own; lanes live in the
    dispatcher and everything else in the store.
    """

    def __init__(
        self,
        guard: IdempotencyGuard,
        gateway: PersistenceGateway,
        dispatcher: OutboundDispatcher,
        coins: CoinDirectory | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            guard: Idempotency guard over the update log.
            gateway: Persistence gateway.
            dispatcher: Executes side effects in the user's lane.
            coins: Coin listing lookup; without it any well-formed
                ticker is accepted.
        """
        self.guard = guard
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.coins = coins
        self._accepting = True
        self._in_flight = 0
        self._drained = asyncio.Event()
        self._drained.set()

    @property
    def accepting(self) -> bool:
        return self._accepting

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def process(self, update: InboundUpdate) -> ProcessResult:
        """Process one inbound update.

        Args:
            update: Classified update from the transport.

        Returns:
            ProcessResult describing the committed state.

        Raises:
            EngineShuttingDownError: Shutdown has started.
            PersistenceError: Nothing was committed; the update id is left
                unreserved so a redelivery is processed again.
        """
        if not self._accepting:
            raise EngineShuttingDownError(f"update {update.update_id} rejected")

        self._in_flight += 1
        self._drained.clear()
        try:
            with (
                update_log_context(update.update_id, update.chat_id),
                tracer.start_as_current_span("process_update") as span,
            ):
                annotate_update(span, update)
                async with self.dispatcher.lane(update.chat_id):
                    result = await self._process_in_lane(update)
                span.set_attribute("status", result.status)
                return result
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._drained.set()
            self.dispatcher.reclaim_idle()

    async def _process_in_lane(self, update: InboundUpdate) -> ProcessResult:
        log = logger.bind(
            update_id=update.update_id,
            chat_id=update.chat_id,
            input_kind=update.input_kind.value,
        )

        reservation = await self.guard.check_and_reserve(update.update_id, update.chat_id)
        if reservation.duplicate:
            log.info("duplicate_update_skipped")
            return ProcessResult(
                update_id=update.update_id,
                status="duplicate",
                outcome=reservation.outcome,
            )

        try:
            user = await self.gateway.load(update.chat_id)
            payload = await self._with_coin_listing(user.state, update)
            result = transition(user.state, update.input_kind, payload)
            outcome = build_outcome(update, result)
            committed = await self.gateway.commit(
                user, update.update_id, result.next_state, outcome
            )
        except Exception as e:
            log.error(
                "update_processing_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._release(update.update_id)
            raise

        log.info(
            "transition_applied",
            from_state=user.state.label,
            to_state=result.next_state.label,
            accepted=result.accepted,
            effects=len(result.side_effects),
            trace_id=get_current_trace_id(),
        )

        report = await self.dispatcher.execute(update.chat_id, result.side_effects)
        processed = ProcessResult(
            update_id=update.update_id,
            status="processed",
            state=committed.state,
            outcome=outcome,
            delivered=report.delivered,
        )

        feedback = report.feedback()
        if feedback is not None:
            input_kind, feedback_payload = feedback
            follow_up = InboundUpdate(
                update_id=f"{update.update_id}:delivery",
                chat_id=update.chat_id,
                input_kind=input_kind,
                payload=feedback_payload,
            )
            try:
                processed.follow_up = await self._process_in_lane(follow_up)
            except PersistenceError as e:
                # The update itself stays committed; the user leaves
                # Processing with /cancel or /start
                log.error(
                    "delivery_feedback_lost",
                    feedback=input_kind.value,
                    error=str(e),
                )
        return processed

    async def _with_coin_listing(
        self, state: ConversationState, update: InboundUpdate
    ) -> dict[str, Any]:
        """Payload extended with ``coin_listed`` when the input names a coin."""
        payload = dict(update.payload)
        coin = coin_to_check(state, update.input_kind, payload)
        if coin is None or self.coins is None:
            return payload

        coins = self.coins
        try:
            payload["coin_listed"] = await self.dispatcher.executor.run(
                lambda: coins.coin_exists(coin),
                operation_id=f"coin_lookup:{update.update_id}",
                cancel_event=self.dispatcher.cancel_event,
            )
        except BotError as e:
            logger.warning(
                "coin_lookup_failed",
                coin=coin,
                error=str(e),
                error_type=type(e).__name__,
            )
            payload["coin_listed"] = None
        return payload

    async def _release(self, update_id: str) -> None:
        try:
            await self.guard.release(update_id)
        except PersistenceError as e:
            # Reservation expires after reservation_timeout
            logger.error("idempotency_release_failed", update_id=update_id, error=str(e))

    async def shutdown(self, timeout: float = 30.0) -> bool:
        """Stop accepting updates and wait for in-flight units.

        Units still running after ``timeout`` get their retry loops
        cancelled, which lets them commit a final state and finish.

        Returns:
            True if every unit finished.
        """
        self._accepting = False
        logger.info("engine_shutting_down", in_flight=self._in_flight)

        try:
            await asyncio.wait_for(self._drained.wait(), timeout)
            return True
        except TimeoutError:
            logger.warning("shutdown_timeout_cancelling_retries", in_flight=self._in_flight)
            self.dispatcher.cancel_event.set()

        try:
            await asyncio.wait_for(self._drained.wait(), timeout)
        except TimeoutError:
            logger.error("shutdown_incomplete", in_flight=self._in_flight)
            return False
        return True
