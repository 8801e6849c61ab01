"""Scriptable send function and polling helper for async engine tests."""

import asyncio
import itertools
from collections.abc import Callable
from typing import Any


class FakeTransport:
    """Records every payload and fails on demand.

    Attributes:
        calls: Payloads in the order send() received them.
        fail: When True every send raises ConnectionError.
        fail_times: Number of upcoming sends that fail before succeeding.
    """

    def __init__(self, fail: bool = False, fail_times: int = 0) -> None:
        self.calls: list[dict[str, Any]] = []
        self.fail = fail
        self.fail_times = fail_times
        self._ids = itertools.count(1)

    async def send(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(payload)
        if self.fail:
            raise ConnectionError("network unreachable")
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionError("transient failure")
        return {
            "id": f"srv_{next(self._ids)}",
            "content": payload.get("content"),
            "temp_id": payload.get("temp_id"),
            "status": "sent",
        }

    @property
    def contents(self) -> list[Any]:
        return [call.get("content") for call in self.calls]


async def wait_for(
    predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005
) -> None:
    """Poll predicate until it holds, failing the test after timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within %.2fs" % timeout)
        await asyncio.sleep(interval)
