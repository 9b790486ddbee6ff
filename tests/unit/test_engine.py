"""Unit Tests - Conversation engine (end to end on SQLite)."""

import asyncio

import pytest

from src.contracts.updates import InputKind
from src.core.dispatcher import OutboundDispatcher
from src.core.engine import ConversationEngine
from src.core.errors import (
    EngineShuttingDownError,
    PersistenceError,
    TerminalError,
    TransientError,
)
from src.core.fsm import STAGE_ASK_COIN, STAGE_CONFIRM, ConversationState, StateTag
from src.core.idempotency import IdempotencyGuard
from src.core.retry import RetryExecutor, RetryPolicy


async def drive_to_confirmation(engine, make_update) -> None:
    """Bring chat 1001 to AwaitingInput(confirm) for ETH."""
    await engine.process(make_update(1, InputKind.START))
    await engine.process(make_update(2, InputKind.TEXT, text="eth"))


class TestProcess:
    """Tests for single-update processing."""

    @pytest.mark.asyncio
    async def test_start_moves_to_awaiting_input(
        self, engine, gateway, transport, make_update
    ) -> None:
        """Test Idle + start -> AwaitingInput(1) with one message sent."""
        result = await engine.process(make_update(1, InputKind.START))

        assert result.status == "processed"
        assert result.state == ConversationState.awaiting_input(STAGE_ASK_COIN)
        assert len(transport.sent) == 1
        assert (await gateway.load(1001)).state.stage == STAGE_ASK_COIN

    @pytest.mark.asyncio
    async def test_redelivery_is_noop(
        self, engine, gateway, transport, make_update
    ) -> None:
        """Test that the same update twice applies once and sends once."""
        first = await engine.process(make_update(1, InputKind.START))
        second = await engine.process(make_update(1, InputKind.START))

        assert second.status == "duplicate"
        assert second.outcome == first.outcome
        assert len(transport.sent) == 1
        assert (await gateway.load(1001)).state == first.state

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_apply_once(
        self, engine, transport, make_update
    ) -> None:
        """Test that concurrent copies of one update produce one effect."""
        results = await asyncio.gather(
            *(engine.process(make_update(1, InputKind.START)) for _ in range(3))
        )

        assert [r.status for r in results].count("processed") == 1
        assert len(transport.sent) == 1

    @pytest.mark.asyncio
    async def test_unexpected_input_keeps_state(
        self, engine, gateway, transport, make_update
    ) -> None:
        """Test that an input outside the table sends a diagnostic only."""
        result = await engine.process(make_update(1, InputKind.CONFIRM))

        assert result.outcome["accepted"] is False
        assert result.state == ConversationState.idle()
        assert transport.calls[0].message_payload["diagnostic"] == "unexpected_input"

    @pytest.mark.asyncio
    async def test_user_updates_applied_in_order(
        self, engine, gateway, make_update
    ) -> None:
        """Test that concurrent updates of one user run in arrival order."""
        await asyncio.gather(
            engine.process(make_update(1, InputKind.START)),
            engine.process(make_update(2, InputKind.TEXT, text="sol")),
        )

        state = (await gateway.load(1001)).state
        assert state.stage == STAGE_CONFIRM
        assert state.context["pending_coin"] == "SOL"


class TestDeliveryOutcome:
    """Tests for delivery feedback into the conversation."""

    @pytest.mark.asyncio
    async def test_confirm_completes_after_delivery(
        self, engine, gateway, transport, make_update
    ) -> None:
        """Test Confirm -> Processing -> Completed through the feedback update."""
        await drive_to_confirmation(engine, make_update)

        result = await engine.process(make_update(3, InputKind.CONFIRM))

        assert result.state.tag == StateTag.PROCESSING
        assert result.final_state == ConversationState.completed({"subscriptions": ["ETH"]})
        assert (await gateway.load(1001)).state.tag == StateTag.COMPLETED
        feedback = await gateway.get_update("3:delivery")
        assert feedback.status == "finalized"

    @pytest.mark.asyncio
    async def test_transient_failures_then_success(
        self, make_engine, make_transport, gateway, sleep, make_update
    ) -> None:
        """Test two transient failures: Completed and exactly one message sent."""
        transport = make_transport()
        engine = make_engine(transport)
        await drive_to_confirmation(engine, make_update)
        sent_before = len(transport.sent)
        transport.failures = [TransientError("503"), TransientError("503")]

        result = await engine.process(make_update(3, InputKind.CONFIRM))

        assert result.final_state.tag == StateTag.COMPLETED
        assert len(transport.sent) - sent_before == 1
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_terminal_failure_fails_conversation(
        self, make_engine, make_transport, gateway, make_update
    ) -> None:
        """Test a terminal error: one attempt, Failed(reason), subscription dropped."""
        transport = make_transport()
        engine = make_engine(transport)
        await drive_to_confirmation(engine, make_update)
        calls_before = len(transport.calls)
        transport.failures = [TerminalError("blocked", reason="forbidden")]

        result = await engine.process(make_update(3, InputKind.CONFIRM))

        assert result.final_state == ConversationState.failed(
            "forbidden", {"subscriptions": []}
        )
        # one attempt at the reply, then the diagnostic
        assert len(transport.calls) - calls_before == 2
        assert transport.calls[-1].message_payload["diagnostic"] == "forbidden"
        assert (await gateway.load(1001)).state.tag == StateTag.FAILED

    @pytest.mark.asyncio
    async def test_exhaustion_fails_conversation(
        self, make_engine, make_transport, gateway, policy, make_update
    ) -> None:
        transport = make_transport()
        engine = make_engine(transport)
        await drive_to_confirmation(engine, make_update)
        transport.failures = [TransientError("503")] * policy.max_attempts

        result = await engine.process(make_update(3, InputKind.CONFIRM))

        final = result.final_state
        assert final.tag == StateTag.FAILED
        assert final.reason == "max_attempts_exceeded"
        assert final.subscriptions == []

    @pytest.mark.asyncio
    async def test_lost_feedback_leaves_a_way_out(
        self, engine, gateway, make_update, monkeypatch
    ) -> None:
        """Test that a lost feedback commit keeps the update and cancel still works."""
        await drive_to_confirmation(engine, make_update)
        original = gateway.commit

        async def commit_without_feedback(user, update_id, *args, **kwargs):
            if update_id.endswith(":delivery"):
                raise PersistenceError("database unavailable")
            return await original(user, update_id, *args, **kwargs)

        monkeypatch.setattr(gateway, "commit", commit_without_feedback)

        result = await engine.process(make_update(3, InputKind.CONFIRM))

        assert result.status == "processed"
        assert result.follow_up is None
        assert result.final_state.tag == StateTag.PROCESSING
        assert await gateway.get_update("3:delivery") is None

        redelivered = await engine.process(make_update(3, InputKind.CONFIRM))
        assert redelivered.status == "duplicate"

        cancelled = await engine.process(make_update(4, InputKind.CANCEL))

        assert cancelled.outcome["accepted"] is True
        assert cancelled.state == ConversationState.idle({"subscriptions": ["ETH"]})
        assert (await gateway.load(1001)).state == cancelled.state


class TestCoinListing:
    """Tests for the coin lookup before a subscription is offered."""

    @pytest.mark.asyncio
    async def test_listed_coin_asks_confirmation(
        self, make_engine, make_coins, transport, make_update
    ) -> None:
        coins = make_coins()
        engine = make_engine(transport, coins)

        await drive_to_confirmation(engine, make_update)

        assert coins.lookups == ["ETH"]
        assert "Subscribe to ETH" in transport.texts[-1]

    @pytest.mark.asyncio
    async def test_unlisted_coin_asks_again(
        self, make_engine, make_coins, transport, gateway, make_update
    ) -> None:
        """Test that a well-formed but unlisted ticker is refused."""
        engine = make_engine(transport, make_coins({"BTC"}))
        await engine.process(make_update(1, InputKind.START))

        result = await engine.process(make_update(2, InputKind.TEXT, text="zzzz"))

        assert result.state == ConversationState.awaiting_input(STAGE_ASK_COIN)
        assert "ZZZZ is not available on Hyperliquid" in transport.texts[-1]
        assert (await gateway.load(1001)).state.stage == STAGE_ASK_COIN

    @pytest.mark.asyncio
    async def test_subscribe_command_checks_coin(
        self, make_engine, make_coins, transport, make_update
    ) -> None:
        engine = make_engine(transport, make_coins({"BTC"}))

        result = await engine.process(make_update(1, InputKind.START, coin="doge"))

        assert result.state == ConversationState.awaiting_input(STAGE_ASK_COIN)
        assert "DOGE is not available" in transport.texts[-1]

    @pytest.mark.asyncio
    async def test_lookup_retried(
        self, make_engine, make_coins, transport, sleep, make_update
    ) -> None:
        """Test that a transient lookup failure goes through the retry executor."""
        coins = make_coins(failures=[TransientError("503")])
        engine = make_engine(transport, coins)

        await drive_to_confirmation(engine, make_update)

        assert coins.lookups == ["ETH", "ETH"]
        assert len(sleep.delays) == 1
        assert "Subscribe to ETH" in transport.texts[-1]

    @pytest.mark.asyncio
    async def test_lookup_failure_asks_to_retry(
        self, make_engine, make_coins, transport, gateway, make_update
    ) -> None:
        """Test that a failed lookup keeps the dialog at the coin question."""
        coins = make_coins(failures=[TerminalError("bad body", reason="bad_response")])
        engine = make_engine(transport, coins)

        await drive_to_confirmation(engine, make_update)

        assert "error validating ETH" in transport.texts[-1]
        assert (await gateway.load(1001)).state.stage == STAGE_ASK_COIN


class TestCommitFailure:
    """Tests for rollback when the state write fails."""

    @pytest.mark.asyncio
    async def test_failed_commit_leaves_update_unprocessed(
        self, engine, gateway, transport, make_update, monkeypatch
    ) -> None:
        """Test that a failed commit sends nothing and allows reprocessing."""
        original = gateway.commit

        async def broken_commit(*args, **kwargs):
            raise PersistenceError("database unavailable")

        monkeypatch.setattr(gateway, "commit", broken_commit)

        with pytest.raises(PersistenceError):
            await engine.process(make_update(1, InputKind.START))

        assert transport.calls == []
        assert await gateway.get_update("1") is None

        monkeypatch.setattr(gateway, "commit", original)
        result = await engine.process(make_update(1, InputKind.START))

        assert result.status == "processed"
        assert len(transport.sent) == 1


class TestShutdown:
    """Tests for graceful shutdown."""

    @pytest.mark.asyncio
    async def test_rejects_new_updates(self, engine, make_update) -> None:
        assert await engine.shutdown(timeout=1) is True

        with pytest.raises(EngineShuttingDownError):
            await engine.process(make_update(1, InputKind.START))

    @pytest.mark.asyncio
    async def test_waits_for_in_flight(
        self, make_engine, make_transport, make_update
    ) -> None:
        """Test that shutdown lets a running unit finish."""
        release = asyncio.Event()
        transport = make_transport()
        original_send = transport.send

        async def slow_send(request):
            await release.wait()
            return await original_send(request)

        transport.send = slow_send
        engine = make_engine(transport)

        task = asyncio.create_task(engine.process(make_update(1, InputKind.START)))
        while engine.in_flight == 0:
            await asyncio.sleep(0)

        shutdown = asyncio.create_task(engine.shutdown(timeout=1))
        await asyncio.sleep(0.01)
        assert not shutdown.done()

        release.set()
        result = await task
        assert result.status == "processed"
        assert await shutdown is True

    @pytest.mark.asyncio
    async def test_timeout_cancels_retries(
        self, gateway, make_transport, make_update
    ) -> None:
        """Test that retries stuck in backoff are cancelled after the timeout."""
        transport = make_transport([TransientError("503")] * 10)
        executor = RetryExecutor(
            RetryPolicy(base_delay=1.0, max_delay=1.0, max_attempts=10, jitter_fraction=0)
        )
        engine = ConversationEngine(
            guard=IdempotencyGuard(gateway),
            gateway=gateway,
            dispatcher=OutboundDispatcher(transport, executor),
        )

        task = asyncio.create_task(engine.process(make_update(1, InputKind.START)))
        while not transport.calls:
            await asyncio.sleep(0.001)

        assert await engine.shutdown(timeout=0.2) is True

        result = await task
        assert result.final_state == ConversationState.failed("cancelled")
