"""Typed domain exceptions for the delivery and cache engine.

Only conditions the caller can act on propagate out of the engine: a full
queue, missing arguments, and (from RetryExecutor) exhausted retries. The
remaining types are raised by collaborators and absorbed internally.

Usage:
    try:
        await coordinator.send_message(chat_id, data, send_fn)
    except QueueFullError:
        # block the composer until the queue drains
        ...
"""

from chatsync.errors.registry import format_error_message, get_error


class DomainError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code

    @property
    def remediation(self) -> str:
        """Remediation text from the error registry, if the code is known."""
        error_def = get_error(self.code) if self.code else None
        return error_def.remediation if error_def else ""


class ValidationError(DomainError):
    """Invalid input that no retry can fix."""


class MissingArgumentError(ValidationError):
    """A required argument (chat id, send function) was not supplied."""

    def __init__(self, argument: str) -> None:
        super().__init__(
            format_error_message("E-4001", argument=argument), code="E-4001"
        )
        self.argument = argument


class QueueFullError(DomainError):
    """The per-chat outbound queue reached its bound."""

    def __init__(self, chat_id: str, max_size: int) -> None:
        super().__init__(format_error_message("E-2001"), code="E-2001")
        self.chat_id = chat_id
        self.max_size = max_size


class StorageQuotaExceededError(DomainError):
    """The durable key-value store refused a write for lack of space."""

    def __init__(self, key: str) -> None:
        super().__init__(format_error_message("E-2002", key=key), code="E-2002")
        self.key = key


class OperationCancelledError(DomainError):
    """An operation observed its cancellation token and aborted."""

    def __init__(self) -> None:
        super().__init__(format_error_message("E-1002"), code="E-1002")
