"""Tests for typed domain exceptions."""

from chatsync.errors import (
    DomainError,
    MissingArgumentError,
    OperationCancelledError,
    QueueFullError,
    StorageQuotaExceededError,
    ValidationError,
)


def test_queue_full_message_and_code():
    error = QueueFullError("chat-1", 100)
    assert str(error) == "Message queue is full"
    assert error.code == "E-2001"
    assert error.chat_id == "chat-1"
    assert error.max_size == 100
    assert "remove failed messages" in error.remediation


def test_missing_argument_is_validation_error():
    error = MissingArgumentError("send_fn")
    assert isinstance(error, ValidationError)
    assert isinstance(error, DomainError)
    assert str(error) == "send_fn is required"
    assert error.argument == "send_fn"


def test_quota_error_names_key():
    error = StorageQuotaExceededError("chatsync:cache:c1")
    assert "chatsync:cache:c1" in str(error)
    assert error.code == "E-2002"


def test_cancelled_error():
    assert OperationCancelledError().code == "E-1002"


def test_remediation_empty_without_code():
    assert DomainError("boom").remediation == ""
