#!/usr/bin/env python3
"""
Parallel upstream calls with per-call results.

gather() runs zero-argument callables on a thread pool and returns one
CallResult per callable, in the order given. It never raises for a failing
call; each call site decides whether a failure degrades the page or aborts
the whole aggregation.
"""

import time
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from typing import Any, Callable, List, Optional, Sequence

logger = logging.getLogger(__name__)


class AggregationError(RuntimeError):
    """The joined results have the wrong shape, or a required call failed."""
    pass


class CallTimeout(TimeoutError):
    """A call did not finish before the gather deadline."""
    pass


class CallResult:
    """Outcome of one call: ok with data, or failed with error."""

    __slots__ = ('ok', 'data', 'error')

    def __init__(self, ok: bool, data: Any = None, error: Optional[BaseException] = None):
        self.ok = ok
        self.data = data
        self.error = error

    @classmethod
    def success(cls, data: Any) -> "CallResult":
        return cls(True, data=data)

    @classmethod
    def failure(cls, error: BaseException) -> "CallResult":
        return cls(False, error=error)

    def unwrap(self) -> Any:
        if not self.ok:
            raise self.error
        return self.data

    def __repr__(self) -> str:
        if self.ok:
            return f"CallResult(ok=True, data={self.data!r})"
        return f"CallResult(ok=False, error={self.error!r})"


def gather(
    calls: Sequence[Callable[[], Any]],
    timeout: Optional[float] = None,
    max_workers: Optional[int] = None,
) -> List[CallResult]:
    """
    Run every call concurrently and wait for all of them.

    Args:
        calls: zero-argument callables
        timeout: overall deadline in seconds; calls still running when it
            passes are reported as CallTimeout failures. The deadline
            bounds the wait, not the work: a call that has started keeps
            its worker thread until it returns, so every call needs its
            own timeout (the upstream clients pass one to requests).
        max_workers: pool size, defaults to one thread per call

    Returns:
        One CallResult per call, same order as ``calls``
    """
    if not calls:
        return []

    pool = ThreadPoolExecutor(max_workers=max_workers or len(calls), thread_name_prefix="fanout")
    deadline = time.monotonic() + timeout if timeout is not None else None
    results: List[CallResult] = []
    try:
        futures = [pool.submit(call) for call in calls]
        for future in futures:
            remaining = None
            if deadline is not None:
                remaining = max(0.0, deadline - time.monotonic())
            try:
                results.append(CallResult.success(future.result(timeout=remaining)))
            except FuturesTimeout:
                future.cancel()
                results.append(CallResult.failure(CallTimeout(f"call exceeded {timeout}s deadline")))
            except Exception as e:
                results.append(CallResult.failure(e))
    finally:
        pool.shutdown(wait=False)

    return results


def first_error(results: Sequence[CallResult]) -> Optional[BaseException]:
    """Error of the first failed result, in call order."""
    for result in results:
        if not result.ok:
            return result.error
    return None
