# ╔══════════════════════════════════════════════════════════════════════╗
# ║ RESILIENCE UTILS                                                     ║
# ╠══════════════════════════════════════════════════════════════════════╣
# ║ Module Name:  resilience_utils.py                                    ║
# ║ Layer:        Resilience / Retry                                     ║
# ║ Test Suite:   webp_backend/tests/test_resilience_utils.py            ║
# ║ Coverage Scope:                                                      ║
# ║   • is_transient_error heuristic                                     ║
# ║   • retry_async (fixed / exponential delay, retryable predicate)     ║
# ║   • argument validation                                              ║
# ╚══════════════════════════════════════════════════════════════════════╝


from __future__ import annotations

import asyncio
import logging
import socket
from typing import Any, Awaitable, Callable, Optional

from webp_backend.services import observability_utils as obs
from webp_backend.services.errors import (
    RecordUpdateError,
    StorageError,
    TransientIOError,
    ValidationError,
)

_logger = obs.get_logger(__name__)


def _safe_log(level: int, msg: str, *args, **kwargs) -> None:
    try:
        _logger.log(level, msg, *args, **kwargs)
    except ValueError:
        # Handles "I/O on closed file" during pytest shutdown.
        pass


# ---------------------------
# Transient error heuristic
# ---------------------------
_TRANSIENT_KEYWORDS = (
    "timeout", "timed out", "temporar", "unavailable", "throttl", "reset", "refused",
    "503", "502", "504", "rate limit", "slowdown", "econnreset", "econnrefused",
)
_TRANSIENT_CODES = {
    "RequestTimeout", "RequestTimeoutException", "SlowDown", "Throttling", "ThrottlingException",
    "ServiceUnavailable", "InternalError", "503", "500", "502", "504",
}


def is_transient_error(exc: Optional[BaseException]) -> bool:
    """
    Heuristic to detect transient (retryable) errors.
    - Pipeline errors answer for themselves (validation never retries).
    - botocore ClientError codes and common connection/timeouts are recognised.
    - Falls back to keywords in the class name and message.
    """
    if exc is None:
        return False
    if isinstance(exc, ValidationError):
        return False
    if isinstance(exc, TransientIOError):
        return True
    if isinstance(exc, RecordUpdateError):
        return exc.transient
    if isinstance(exc, StorageError):
        return False
    if isinstance(exc, (TimeoutError, ConnectionError, socket.timeout, asyncio.TimeoutError)):
        return True
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        code = str(response.get("Error", {}).get("Code", ""))
        status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if code in _TRANSIENT_CODES or (isinstance(status, int) and status >= 500):
            return True
    exc_class_name = type(exc).__name__.lower()
    if any(k in exc_class_name for k in ("ratelimit", "rate_limit", "throttle", "timeout", "connect")):
        return True
    msg = str(exc).lower()
    return any(k in msg for k in _TRANSIENT_KEYWORDS)


# ---------------------------
# Async retry
# ---------------------------
async def retry_async(
    coro_fn: Callable[[], Awaitable[Any]],
    attempts: int = 3,
    delay: float = 1.0,
    exponential: bool = False,
    max_delay: Optional[float] = None,
    is_retryable: Callable[[BaseException], bool] = is_transient_error,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "operation",
) -> Any:
    """
    Await `coro_fn()` up to `attempts` times.

    Only errors for which `is_retryable` is true are retried; anything else is
    re-raised immediately. The delay between attempts is fixed unless
    `exponential` is set. After the last attempt the final error propagates.
    """
    if not isinstance(attempts, int) or attempts < 1:
        raise ValueError("attempts must be a positive integer")
    if not isinstance(delay, (int, float)) or delay < 0:
        raise ValueError("delay must be a non-negative number")
    if max_delay is not None and (not isinstance(max_delay, (int, float)) or max_delay < 0):
        raise ValueError("max_delay must be a non-negative number or None")

    for attempt in range(1, attempts + 1):
        try:
            return await coro_fn()
        except Exception as exc:
            if not is_retryable(exc):
                _safe_log(logging.DEBUG, "retry_async[%s]: non-retryable error, failing fast: %s", label, exc)
                raise
            if attempt >= attempts:
                _safe_log(logging.ERROR, "retry_async[%s]: giving up after %d attempts: %s", label, attempts, exc)
                obs.metrics_inc("resilience.retry.exhausted", 1)
                raise
            _safe_log(logging.WARNING, "retry_async[%s]: transient error attempt %d/%d: %s", label, attempt, attempts, exc)
            obs.metrics_inc("resilience.retry.attempt", 1)
            sleep_for = delay * (2 ** (attempt - 1)) if exponential else delay
            if max_delay is not None:
                sleep_for = min(sleep_for, max_delay)
            if sleep_for > 0:
                await sleep(sleep_for)

    # unreachable: the loop either returns or raises
    raise RuntimeError("Retry loop exhausted")


__all__ = ["is_transient_error", "retry_async"]
