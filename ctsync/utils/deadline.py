"""Time budgets for calls into the change-tracking collaborator."""

import contextvars
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, TypeVar

import structlog

from ctsync.errors import CycleTimeoutError

log = structlog.stdlib.get_logger()

T = TypeVar("T")


class Deadline:
    """
    A point in time after which a cycle's work counts as timed out.

    Bounded calls share one worker thread for the life of the deadline;
    ``close`` releases it. A deadline can be used as a context manager.
    """

    def __init__(self, timeout_seconds: float, clock: Callable[[], float] = time.monotonic):
        if timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {timeout_seconds}")
        self._clock = clock
        self.timeout_seconds = timeout_seconds
        self._expires_at = clock() + timeout_seconds
        self._executor: ThreadPoolExecutor | None = None

    def __enter__(self) -> "Deadline":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self._clock() >= self._expires_at

    def check(self, operation: str) -> None:
        """Raise CycleTimeoutError if the deadline has passed."""
        if self.expired:
            log.warning("deadline_exceeded", operation=operation, timeout_seconds=self.timeout_seconds)
            raise CycleTimeoutError(
                f"{operation} exceeded the cycle time budget of {self.timeout_seconds}s"
            )

    def call(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Run a blocking call, giving up once the deadline passes.

        The call runs on the deadline's worker thread, inside a copy of the
        caller's context so bound log context follows it. A worker abandoned
        by a timeout is left to finish on its own; its result is discarded
        and later calls get a fresh worker.

        Raises:
            CycleTimeoutError: If the call does not return in time
        """
        self.check(operation)
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ctsync-call")
        context = contextvars.copy_context()
        future = self._executor.submit(context.run, func, *args, **kwargs)
        try:
            return future.result(timeout=self.remaining())
        except FutureTimeoutError:
            future.cancel()
            self.close()
            log.warning(
                "collaborator_call_timed_out",
                operation=operation,
                timeout_seconds=self.timeout_seconds,
            )
            raise CycleTimeoutError(
                f"{operation} did not complete within the cycle time budget "
                f"of {self.timeout_seconds}s"
            ) from None

    def close(self) -> None:
        """Release the worker thread without waiting for an abandoned call."""
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None


def call_with_deadline(
    deadline: Deadline | None, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Call ``func`` under ``deadline``, or directly when there is none."""
    if deadline is None:
        return func(*args, **kwargs)
    return deadline.call(operation, func, *args, **kwargs)


def check_deadline(deadline: Deadline | None, operation: str) -> None:
    if deadline is not None:
        deadline.check(operation)
