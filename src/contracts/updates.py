"""Update Contracts - Inbound updates and outbound send requests."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class InputKind(str, Enum):
    """Abstract classification of an inbound update.

    User-facing kinds are produced by the transport adapter; the
    ``delivery_*`` kinds are produced internally from dispatch outcomes.
    """

    START = "start"
    TEXT = "text"
    CONFIRM = "confirm"
    DENY = "deny"
    CANCEL = "cancel"
    HELP = "help"
    LIST = "list"
    UNSUBSCRIBE = "unsubscribe"
    DELIVERY_SUCCEEDED = "delivery_succeeded"
    DELIVERY_FAILED = "delivery_failed"


class InboundUpdate(BaseModel):
    """Internal Contract: one classified update from the messaging platform."""

    model_config = ConfigDict(frozen=True)

    update_id: str = Field(..., min_length=1)
    chat_id: int
    input_kind: InputKind
    payload: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("update_id", mode="before")
    @classmethod
    def coerce_update_id(cls, v: Any) -> str:
        """Platform ids may be ints; they are keyed as strings."""
        if isinstance(v, int):
            return str(v)
        return v

    @property
    def is_internal(self) -> bool:
        """True for updates derived from dispatch outcomes."""
        return self.input_kind in (
            InputKind.DELIVERY_SUCCEEDED,
            InputKind.DELIVERY_FAILED,
        )


class OutboundRequest(BaseModel):
    """Internal Contract: one message handed to the transport."""

    model_config = ConfigDict(frozen=True)

    chat_id: int
    message_payload: dict[str, Any]
