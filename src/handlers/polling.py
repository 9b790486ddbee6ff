"""Polling Handler - Long-poll Telegram for updates.

Each batch from ``getUpdates`` is fanned out as one task per update. The
offset only moves past updates that were processed or filtered; if any
update failed to persist, the next poll starts from it and the guard
skips the ones that already went through.
"""

import asyncio
from typing import Any

from pydantic import ValidationError

from src.contracts.telegram_update import TelegramUpdate
from src.core.engine import ConversationEngine
from src.core.errors import (
    EngineShuttingDownError,
    PersistenceError,
    RetryCancelledError,
    RetryExhaustedError,
)
from src.core.retry import RetryExecutor
from src.services.telegram import TelegramClient
from src.utils.logger import get_logger

logger = get_logger(__name__)


class PollingRunner:
    """Fetches updates with getUpdates and feeds them to the engine."""

    def __init__(
        self,
        telegram: TelegramClient,
        engine: ConversationEngine,
        executor: RetryExecutor,
        timeout: int = 30,
    ) -> None:
        """Initialize the runner.

        Args:
            telegram: Bot API client.
            engine: Update processing pipeline.
            executor: Retry executor for getUpdates calls.
            timeout: Long polling timeout in seconds.
        """
        self.telegram = telegram
        self.engine = engine
        self.executor = executor
        self.timeout = timeout
        self.offset: int | None = None
        self._stop = asyncio.Event()

    def stop(self) -> None:
        """Ask the loop to exit after the current poll."""
        self._stop.set()

    async def _handle(self, update_id: int, raw: dict[str, Any]) -> bool:
        """Process one raw update.

        Returns:
            False if the update must be fetched again.
        """
        try:
            parsed = TelegramUpdate.model_validate(raw)
        except ValidationError as e:
            logger.warning("telegram_update_invalid", update_id=update_id, error=str(e))
            return True

        update = parsed.to_inbound()
        if update is None:
            return True

        try:
            await self.engine.process(update)
        except EngineShuttingDownError:
            return False
        except PersistenceError as e:
            logger.error("polled_update_failed", update_id=update_id, error=str(e))
            return False
        return True

    async def poll_once(self) -> int:
        """Fetch and process one batch.

        Returns:
            Number of updates fetched.
        """
        raw_updates = await self.executor.run(
            lambda: self.telegram.get_updates(self.offset, self.timeout),
            operation_id="getUpdates",
            cancel_event=self._stop,
        )
        if not raw_updates:
            return 0

        update_ids = [int(raw["update_id"]) for raw in raw_updates]
        # Tasks start in creation order, so a user's updates queue on the
        # lane in the order Telegram sent them
        results = await asyncio.gather(
            *(self._handle(uid, raw) for uid, raw in zip(update_ids, raw_updates))
        )

        failed = [uid for uid, ok in zip(update_ids, results) if not ok]
        self.offset = min(failed) if failed else max(update_ids) + 1

        logger.info(
            "polling_batch_processed",
            fetched=len(raw_updates),
            failed=len(failed),
            next_offset=self.offset,
        )
        return len(raw_updates)

    async def run(self) -> None:
        """Poll until stopped."""
        logger.info("polling_started", timeout=self.timeout)

        while not self._stop.is_set():
            try:
                await self.poll_once()
            except RetryCancelledError:
                break
            except RetryExhaustedError as e:
                # Telegram unreachable for a while; start a fresh retry cycle
                logger.error("polling_unavailable", error=str(e))

        logger.info("polling_stopped", offset=self.offset)
