"""Error handling framework for chatsync.

This package provides:
- Error code registry with E-XXXX format codes
- Typed domain exceptions carrying registry codes

Error categories:
- E-1xxx: Delivery errors
- E-2xxx: Capacity errors
- E-3xxx: Persistence errors
- E-4xxx: Input errors
"""

from chatsync.errors.domain import (
    DomainError,
    MissingArgumentError,
    OperationCancelledError,
    QueueFullError,
    StorageQuotaExceededError,
    ValidationError,
)
from chatsync.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    format_error_message,
    get_error,
    get_errors_by_category,
)

__all__ = [
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    "format_error_message",
    # Domain exceptions
    "DomainError",
    "ValidationError",
    "MissingArgumentError",
    "QueueFullError",
    "StorageQuotaExceededError",
    "OperationCancelledError",
]
