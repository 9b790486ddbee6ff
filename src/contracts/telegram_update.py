"""Telegram Update Contract - Input validation for Bot API updates.

Parses the raw ``Update`` object delivered by webhook or ``getUpdates``
and classifies it into an ``InboundUpdate`` input kind.
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.contracts.updates import InboundUpdate, InputKind

COMMANDS: dict[str, InputKind] = {
    "start": InputKind.START,
    "subscribe": InputKind.START,
    "unsubscribe": InputKind.UNSUBSCRIBE,
    "list": InputKind.LIST,
    "help": InputKind.HELP,
    "cancel": InputKind.CANCEL,
}

CONFIRM_WORDS = frozenset({"yes", "y", "ok", "confirm"})
DENY_WORDS = frozenset({"no", "n", "nope"})


class TelegramChat(BaseModel):
    """Chat the message belongs to."""

    id: int
    type: str = "private"


class TelegramUser(BaseModel):
    """Sender info."""

    id: int
    is_bot: bool = False
    username: str | None = None


class TelegramMessage(BaseModel):
    """Message content (only text messages are classified)."""

    model_config = ConfigDict(populate_by_name=True)

    message_id: int
    chat: TelegramChat
    from_user: TelegramUser | None = Field(default=None, alias="from")
    date: datetime
    text: str | None = None

    @field_validator("date", mode="before")
    @classmethod
    def validate_date(cls, v: Any) -> Any:
        """Convert unix timestamp to datetime if needed."""
        if isinstance(v, int):
            return datetime.fromtimestamp(v, tz=UTC)
        return v


class TelegramUpdate(BaseModel):
    """Bot API Update payload."""

    update_id: int
    message: TelegramMessage | None = None
    edited_message: TelegramMessage | None = None

    def to_inbound(self) -> InboundUpdate | None:
        """Convert Telegram payload to internal update.

        Returns None if:
        - The update carries no new message (edits, callbacks, etc)
        - The message was sent by a bot
        - The message has no text
        """
        message = self.message
        if message is None:
            return None

        if message.from_user is not None and message.from_user.is_bot:
            return None

        text = (message.text or "").strip()
        if not text:
            return None

        input_kind, payload = classify_text(text)

        return InboundUpdate(
            update_id=str(self.update_id),
            chat_id=message.chat.id,
            input_kind=input_kind,
            payload=payload,
            received_at=message.date,
        )


def classify_text(text: str) -> tuple[InputKind, dict[str, Any]]:
    """Classify a message text into an input kind and payload.

    Args:
        text: Stripped, non-empty message text.

    Returns:
        Tuple of (input_kind, payload).
    """
    if text.startswith("/"):
        head, _, rest = text[1:].partition(" ")
        # "/start@my_bot" in group chats
        command = head.split("@", 1)[0].lower()
        argument = rest.strip()
        kind = COMMANDS.get(command)
        if kind is not None:
            payload: dict[str, Any] = {"command": command}
            if argument:
                payload["coin"] = argument
            return kind, payload
        return InputKind.TEXT, {"text": text}

    lowered = text.lower()
    if lowered in CONFIRM_WORDS:
        return InputKind.CONFIRM, {}
    if lowered in DENY_WORDS:
        return InputKind.DENY, {}
    return InputKind.TEXT, {"text": text}
