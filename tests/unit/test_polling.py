"""Unit Tests - Long polling runner."""

import pytest

from src.core.errors import PersistenceError
from src.handlers.polling import PollingRunner


def text_update(update_id: int, text: str, chat_id: int = 1001) -> dict:
    return {
        "update_id": update_id,
        "message": {
            "message_id": update_id,
            "from": {"id": chat_id, "is_bot": False},
            "chat": {"id": chat_id, "type": "private"},
            "date": 1767225600,
            "text": text,
        },
    }


class FakeTelegram:
    """getUpdates returning scripted batches."""

    def __init__(self, *batches: list[dict]) -> None:
        self.batches = list(batches)
        self.offsets: list[int | None] = []

    async def get_updates(self, offset: int | None = None, timeout: int = 30) -> list[dict]:
        self.offsets.append(offset)
        return self.batches.pop(0) if self.batches else []


class TestPollingRunner:
    """Tests for batch processing and offsets."""

    @pytest.mark.asyncio
    async def test_batch_processed_and_offset_advanced(
        self, engine, gateway, executor, transport
    ) -> None:
        """Test that a batch is applied and the offset moves past it."""
        telegram = FakeTelegram(
            [text_update(10, "/start"), text_update(11, "btc"), text_update(12, "yes")]
        )
        runner = PollingRunner(telegram, engine, executor, timeout=0)

        fetched = await runner.poll_once()

        assert fetched == 3
        assert runner.offset == 13
        assert (await gateway.load(1001)).state.subscriptions == ["BTC"]

    @pytest.mark.asyncio
    async def test_failed_update_fetched_again(
        self, engine, gateway, executor, monkeypatch
    ) -> None:
        """Test that the offset stops at an update that failed to persist."""
        original = gateway.commit
        failed: set[str] = set()

        async def flaky_commit(user, update_id, *args, **kwargs):
            if update_id == "20" and update_id not in failed:
                failed.add(update_id)
                raise PersistenceError("database unavailable")
            return await original(user, update_id, *args, **kwargs)

        monkeypatch.setattr(gateway, "commit", flaky_commit)
        batch = [text_update(20, "/help", chat_id=1), text_update(21, "/help", chat_id=2)]
        telegram = FakeTelegram(batch, batch)
        runner = PollingRunner(telegram, engine, executor, timeout=0)

        await runner.poll_once()
        assert runner.offset == 20

        await runner.poll_once()
        assert runner.offset == 22
        assert (await gateway.get_update("20")).status == "finalized"
        assert (await gateway.get_update("21")).status == "finalized"

    @pytest.mark.asyncio
    async def test_filtered_updates_skipped(self, engine, executor, transport) -> None:
        bot_update = text_update(30, "hello")
        bot_update["message"]["from"]["is_bot"] = True
        telegram = FakeTelegram([bot_update, {"update_id": 31}])
        runner = PollingRunner(telegram, engine, executor, timeout=0)

        await runner.poll_once()

        assert runner.offset == 32
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_stop_ends_run(self, engine, executor) -> None:
        runner = PollingRunner(FakeTelegram(), engine, executor, timeout=0)
        runner.stop()

        await runner.run()

        assert runner.offset is None
