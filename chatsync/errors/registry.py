"""Error code registry with E-XXXX format codes.

This module defines the error code system for chatsync, organizing errors
into categories:
- E-1xxx: Delivery errors
- E-2xxx: Capacity errors
- E-3xxx: Persistence errors
- E-4xxx: Input errors

Each error includes a code, title, message template, and remediation steps.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    DELIVERY = "delivery"  # E-1xxx: Send/transport failures
    CAPACITY = "capacity"  # E-2xxx: Queue and storage bounds
    PERSISTENCE = "persistence"  # E-3xxx: Malformed persisted state
    INPUT = "input"  # E-4xxx: Missing or invalid arguments


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action user should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str  # E-XXXX format
    category: ErrorCategory
    title: str  # Short title for display
    message_template: str  # Message with {placeholders}
    remediation: str  # Action user should take
    is_retryable: bool = False  # Can be retried without user action


# Error registry - all defined error codes
ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Delivery errors (E-1xxx)
    "E-1001": ErrorCode(
        code="E-1001",
        category=ErrorCategory.DELIVERY,
        title="Delivery Failed",
        message_template="Message could not be delivered after {attempts} attempts: {error}",
        remediation="Check your connection and retry the message manually.",
    ),
    "E-1002": ErrorCode(
        code="E-1002",
        category=ErrorCategory.DELIVERY,
        title="Operation Cancelled",
        message_template="Operation was cancelled before it completed.",
        remediation="No action needed. Start the operation again if it is still wanted.",
    ),
    "E-1003": ErrorCode(
        code="E-1003",
        category=ErrorCategory.DELIVERY,
        title="Transient Delivery Failure",
        message_template="Send attempt failed: {error}",
        remediation="The message will be retried automatically.",
        is_retryable=True,
    ),
    # Capacity errors (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.CAPACITY,
        title="Message Queue Full",
        message_template="Message queue is full",
        remediation="Wait for queued messages to send, or remove failed messages, before sending more.",
    ),
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.CAPACITY,
        title="Storage Quota Exceeded",
        message_template="Storage quota exceeded while writing '{key}'.",
        remediation="Older cached chats are evicted automatically. Clear caches if this persists.",
        is_retryable=True,
    ),
    # Persistence errors (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.PERSISTENCE,
        title="Corrupt Persisted State",
        message_template="Persisted data under '{key}' could not be read: {details}",
        remediation="The damaged entry is ignored and rebuilt empty.",
    ),
    "E-3002": ErrorCode(
        code="E-3002",
        category=ErrorCategory.PERSISTENCE,
        title="Cache Version Mismatch",
        message_template="Cache schema version {found} does not match {expected}.",
        remediation="The cache is rebuilt empty and refilled from the server.",
    ),
    # Input errors (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.INPUT,
        title="Missing Required Argument",
        message_template="{argument} is required",
        remediation="Pass a chat identifier and a send function.",
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Get error definition by code.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all errors in a category.

    Args:
        category: The error category to filter by.

    Returns:
        List of ErrorCode objects in the specified category.
    """
    return [e for e in ERROR_REGISTRY.values() if e.category == category]


def format_error_message(code: str, **context: object) -> str:
    """Render a registry message template with context values.

    Unknown codes render as ``Unknown error: <code>``. Missing placeholders
    leave the template untouched.

    Args:
        code: Error code in E-XXXX format.
        **context: Values substituted into the message template.

    Returns:
        Human-readable message.
    """
    error_def = get_error(code)
    if error_def is None:
        return f"Unknown error: {code}"
    try:
        return error_def.message_template.format(**context)
    except KeyError:
        return error_def.message_template
