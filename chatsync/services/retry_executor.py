"""Generic async retry executor with exponential backoff and jitter.

Wraps a fallible async operation and re-invokes it after a growing delay
until it succeeds, the retry budget is spent, or a retry condition rejects
the error. Cancellation is cooperative through a CancellationToken that the
operation receives as its ``signal`` keyword argument.

Example:
    executor = RetryExecutor(fetch_history, max_retries=3, initial_delay=0.5)
    messages = await executor.execute(chat_id)
"""

import asyncio
import inspect
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from chatsync.errors import OperationCancelledError
from chatsync.utils.timestamps import utc_now_iso

logger = logging.getLogger(__name__)

_CANCELLED = object()


async def _maybe_await(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Invoke a sync or async callback, ignoring a missing one."""
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


@dataclass
class BackoffPolicy:
    """Exponential backoff schedule shared by the executor and the queue.

    delay(n) = min(max_delay, initial_delay * backoff_factor ** n)
               + rng() * max_jitter
    """

    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    max_jitter: float | None = None
    """Upper bound of the random addend; defaults to initial_delay."""
    rng: Callable[[], float] = field(default=random.random, repr=False)

    @property
    def jitter_bound(self) -> float:
        return self.initial_delay if self.max_jitter is None else self.max_jitter

    def base_delay(self, attempt: int) -> float:
        """Jitter-free delay before the retry following ``attempt``."""
        try:
            raw = self.initial_delay * (self.backoff_factor ** attempt)
        except OverflowError:
            return self.max_delay
        return min(self.max_delay, raw)

    def calculate_delay(self, attempt: int) -> float:
        """Delay in seconds before the retry following ``attempt``."""
        return self.base_delay(attempt) + self.rng() * self.jitter_bound


class CancellationToken:
    """One-shot cancellation signal observable by a running operation."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise OperationCancelledError once the token has fired."""
        if self._event.is_set():
            raise OperationCancelledError()

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait for cancellation.

        Returns:
            True if the token fired, False if the timeout elapsed first.
        """
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True


@dataclass
class RetryState:
    """Observable state of a RetryExecutor."""

    is_loading: bool = False
    error: BaseException | None = None
    retry_count: int = 0
    last_attempt: str | None = None
    data: Any = None


class RetryExecutor:
    """Runs an async operation with bounded, backed-off retries.

    Attributes:
        _operation: Async callable invoked as
            ``operation(*args, signal=token, attempt=n, **kwargs)``.
        _max_retries: Retries allowed after the first attempt.
        _policy: Backoff schedule.
        _retry_condition: ``(error, attempt) -> bool``; False surfaces the
            error immediately.
    """

    def __init__(
        self,
        operation: Callable[..., Awaitable[Any]],
        *,
        max_retries: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 10.0,
        backoff_factor: float = 2.0,
        max_jitter: float | None = None,
        retry_condition: Callable[[BaseException, int], bool] | None = None,
        on_retry: Callable[[BaseException, int, float], Any] | None = None,
        on_max_retries_reached: Callable[[BaseException, int], Any] | None = None,
        on_success: Callable[[Any, int], Any] | None = None,
        on_error: Callable[[BaseException, int], Any] | None = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._operation = operation
        self._max_retries = max_retries
        self._policy = BackoffPolicy(
            initial_delay=initial_delay,
            max_delay=max_delay,
            backoff_factor=backoff_factor,
            max_jitter=max_jitter,
            rng=rng,
        )
        self._retry_condition = retry_condition or (lambda error, attempt: True)
        self._on_retry = on_retry
        self._on_max_retries_reached = on_max_retries_reached
        self._on_success = on_success
        self._on_error = on_error
        self._state = RetryState()
        self._token = CancellationToken()

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    @property
    def state(self) -> RetryState:
        return self._state

    @property
    def is_loading(self) -> bool:
        return self._state.is_loading

    @property
    def retry_count(self) -> int:
        return self._state.retry_count

    @property
    def error(self) -> BaseException | None:
        return self._state.error

    @property
    def data(self) -> Any:
        return self._state.data

    @property
    def can_retry(self) -> bool:
        return self._state.retry_count < self._max_retries

    @property
    def next_retry_in(self) -> float | None:
        """Delay the next retry would wait, or None when none remain."""
        if not self.can_retry:
            return None
        return self._policy.calculate_delay(self._state.retry_count)

    def calculate_delay(self, attempt: int) -> float:
        return self._policy.calculate_delay(attempt)

    async def execute(self, *args: Any, **kwargs: Any) -> Any:
        """Run the operation until success, exhaustion, or cancellation.

        Returns:
            The operation's result, or None if the run was cancelled.

        Raises:
            Exception: The last error once retries are exhausted or the
                retry condition rejects it.
        """
        # A new run supersedes the previous one.
        self._token.cancel()
        token = CancellationToken()
        self._token = token
        self._state.is_loading = True
        self._state.error = None
        self._state.retry_count = 0

        attempt = 0
        while True:
            self._state.last_attempt = utc_now_iso()
            try:
                result = await self._run_attempt(token, attempt, args, kwargs)
            except OperationCancelledError:
                return self._finish_cancelled(token, attempt)
            except Exception as e:
                if token.cancelled:
                    return self._finish_cancelled(token, attempt)

                exhausted = attempt >= self._max_retries
                if exhausted or not self._retry_condition(e, attempt):
                    self._state.error = e
                    self._state.is_loading = False
                    if exhausted:
                        logger.warning(
                            "Operation failed after %d attempt(s), giving up: %s",
                            attempt + 1,
                            e,
                        )
                        await _maybe_await(self._on_max_retries_reached, e, attempt)
                    await _maybe_await(self._on_error, e, attempt)
                    raise

                delay = self._policy.calculate_delay(attempt)
                self._state.error = e
                self._state.retry_count = attempt + 1
                logger.warning(
                    "Operation failed (attempt %d/%d), retrying in %.2fs: %s",
                    attempt + 1,
                    self._max_retries + 1,
                    delay,
                    e,
                )
                await _maybe_await(self._on_retry, e, attempt + 1, delay)
                if await token.wait(delay):
                    return self._finish_cancelled(token, attempt)
                attempt += 1
                continue

            if result is _CANCELLED or token.cancelled:
                return self._finish_cancelled(token, attempt)

            self._state.data = result
            self._state.error = None
            self._state.is_loading = False
            await _maybe_await(self._on_success, result, attempt)
            return result

    async def _run_attempt(
        self,
        token: CancellationToken,
        attempt: int,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> Any:
        """Run one attempt, abandoning it as soon as the token fires."""
        op_task = asyncio.ensure_future(
            self._operation(*args, signal=token, attempt=attempt, **kwargs)
        )
        cancel_task = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait(
                {op_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            op_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if op_task.done():
            return op_task.result()

        op_task.cancel()
        try:
            await op_task
        except (asyncio.CancelledError, Exception):
            logger.debug("Abandoned attempt %d after cancellation", attempt)
        return _CANCELLED

    def _finish_cancelled(self, token: CancellationToken, attempt: int) -> None:
        logger.info("Operation cancelled at attempt %d", attempt)
        # A superseded run leaves the newer run's state alone.
        if token is self._token:
            self._state.is_loading = False
        return None

    def cancel(self) -> None:
        """Abort the current run; it returns None and fires no callbacks."""
        self._token.cancel()
        self._state.is_loading = False

    def reset(self) -> None:
        """Clear observable state. Does not cancel an in-flight run."""
        self._state = RetryState()
