"""
Timeout-bounded calls and fan-out/fan-in over a thread pool.

A timeout only affects the call it belongs to: sibling calls keep running and
their results are still collected.
"""

import time
from collections.abc import Callable, Hashable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class CallResult:
    """Settled outcome of one call in a fan-out"""

    ok: bool
    value: Any = None
    error: str | None = None
    timed_out: bool = False
    elapsed_sec: float = 0.0


def run_with_timeout(fn: Callable[..., Any], timeout: float, *args, **kwargs) -> Any:
    """Run ``fn`` in a worker thread and wait at most ``timeout`` seconds

    Raises:
        TimeoutError: if the call did not settle in time
        Exception: whatever ``fn`` raised
    """
    executor = ThreadPoolExecutor(max_workers=1)
    try:
        future = executor.submit(fn, *args, **kwargs)
        return future.result(timeout=timeout)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def fan_out(
    calls: dict[Hashable, Callable[[], Any]],
    timeout: float,
    max_workers: int = 16,
) -> dict[Hashable, CallResult]:
    """Invoke every call concurrently and wait until all of them settle

    Each call gets ``timeout`` seconds counted from submission. Failures and
    timeouts are captured per key, never raised.
    """
    if not calls:
        return {}

    results: dict[Hashable, CallResult] = {}
    executor = ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(calls))))
    try:
        submitted = {}
        for key, call in calls.items():
            submitted[key] = (executor.submit(call), time.monotonic())

        for key, (future, started) in submitted.items():
            remaining = max(0.0, started + timeout - time.monotonic())
            try:
                value = future.result(timeout=remaining)
                results[key] = CallResult(
                    ok=True, value=value, elapsed_sec=time.monotonic() - started
                )
            except TimeoutError:
                future.cancel()
                results[key] = CallResult(
                    ok=False,
                    error=f"timed out after {timeout}s",
                    timed_out=True,
                    elapsed_sec=time.monotonic() - started,
                )
                logger.warning("Call timed out", key=str(key), timeout_sec=timeout)
            except Exception as e:
                results[key] = CallResult(
                    ok=False, error=str(e) or type(e).__name__, elapsed_sec=time.monotonic() - started
                )
                logger.warning("Call failed", key=str(key), error=str(e))
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    return results
