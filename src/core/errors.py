"""Error taxonomy - Exceptions shared by the delivery and state engine."""


class BotError(Exception):
    """Base class for all bot errors."""


class TransientError(BotError):
    """Temporary failure (timeout, rate limit, 5xx). Safe to retry.

    Args:
        message: Human readable description.
        retry_after: Minimum wait in seconds requested by the remote side.
    """

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TerminalError(BotError):
    """Permanent failure (malformed request, rejection). Never retried."""

    def __init__(self, message: str, reason: str = "terminal_error") -> None:
        super().__init__(message)
        self.reason = reason


class RetryExhaustedError(TerminalError):
    """All attempts allowed by the retry policy failed."""

    def __init__(self, operation_id: str, attempts: list, last_error: BaseException) -> None:
        super().__init__(
            f"{operation_id}: gave up after {len(attempts)} attempts ({last_error})",
            reason="max_attempts_exceeded",
        )
        self.operation_id = operation_id
        self.attempts = attempts
        self.last_error = last_error


class RetryCancelledError(BotError):
    """Retry loop aborted by an external cancel signal."""

    def __init__(self, operation_id: str, attempts: list) -> None:
        super().__init__(f"{operation_id}: cancelled after {len(attempts)} attempts")
        self.operation_id = operation_id
        self.attempts = attempts


class PersistenceError(BotError):
    """The relational store failed to commit a unit of work."""


class EngineShuttingDownError(BotError):
    """New updates are not accepted during shutdown."""
