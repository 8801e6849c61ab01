"""Shared test doubles for the delivery engine."""

from tests.helpers.fake_transport import FakeTransport, wait_for

__all__ = [
    "FakeTransport",
    "wait_for",
]
