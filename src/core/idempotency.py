"""Idempotency Guard - Ensures each update is applied only once.

Each update_id gets a reservation row in the update log before any work
happens. A second delivery of the same id finds the row and is skipped.
The reservation is finalized together with the state change, or released
when that commit fails so a redelivery is processed fresh.
"""

from dataclasses import dataclass
from typing import Any

from src.services.persistence import PersistenceGateway
from src.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Reservation:
    """Result of check_and_reserve.

    Attributes:
        update_id: The update identifier.
        duplicate: True if the update was already seen.
        outcome: Recorded outcome of the earlier processing, if finished.
    """

    update_id: str
    duplicate: bool
    outcome: dict[str, Any] | None = None


class IdempotencyGuard:
    """Prevents duplicate update processing using the update log.

    Reservations left behind by a crashed worker expire after
    ``reservation_timeout`` seconds.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        reservation_timeout: float = 300.0,
    ) -> None:
        """Initialize the guard.

        Args:
            gateway: Persistence gateway holding the update log.
            reservation_timeout: Seconds after which a reservation is stale.
        """
        self.gateway = gateway
        self.reservation_timeout = reservation_timeout

    async def check_and_reserve(self, update_id: str, chat_id: int) -> Reservation:
        """Atomically check if duplicate and reserve the id.

        Args:
            update_id: The unique update identifier.
            chat_id: Chat the update belongs to.

        Returns:
            Reservation; processing must be skipped when ``duplicate``.
        """
        reserved, existing = await self.gateway.reserve_update(
            update_id, chat_id, stale_after=self.reservation_timeout
        )
        if reserved:
            logger.debug("idempotency_key_acquired", update_id=update_id)
            return Reservation(update_id=update_id, duplicate=False)

        outcome = existing.outcome if existing is not None else None
        logger.info(
            "duplicate_detected_atomic",
            update_id=update_id,
            has_cached_result=outcome is not None,
        )
        return Reservation(update_id=update_id, duplicate=True, outcome=outcome)

    async def finalize(self, update_id: str, outcome: dict[str, Any]) -> None:
        """Record the outcome of a reserved update.

        Args:
            update_id: The unique update identifier.
            outcome: Result data to store.
        """
        await self.gateway.finalize_update(update_id, outcome)
        logger.info("update_marked_processed", update_id=update_id)

    async def release(self, update_id: str) -> None:
        """Give up a reservation so the update can be processed again."""
        released = await self.gateway.release_update(update_id)
        logger.info("idempotency_key_released", update_id=update_id, released=released)
