"""Contracts package - Pydantic schemas for data validation."""

from src.contracts.side_effects import SendDiagnostic, SendMessage, SideEffect
from src.contracts.telegram_update import TelegramUpdate
from src.contracts.updates import InboundUpdate, InputKind, OutboundRequest

__all__ = [
    "InboundUpdate",
    "InputKind",
    "OutboundRequest",
    "SendMessage",
    "SendDiagnostic",
    "SideEffect",
    "TelegramUpdate",
]
