"""Core package - Conversation state machine, retry and delivery engine."""

from src.core.errors import (
    PersistenceError,
    RetryExhaustedError,
    TerminalError,
    TransientError,
)
from src.core.fsm import ConversationState, StateTag, transition
from src.core.retry import RetryExecutor, RetryPolicy

__all__ = [
    "ConversationState",
    "StateTag",
    "transition",
    "RetryExecutor",
    "RetryPolicy",
    "PersistenceError",
    "RetryExhaustedError",
    "TerminalError",
    "TransientError",
]
