"""
retry.py — bounded retry with exponential backoff for external calls.

Every attempt runs under asyncio.wait_for, so a hung provider cannot stall a
turn past attempts * timeout (+ backoff). Cancellation of the caller is never
swallowed: CancelledError is a BaseException and passes straight through.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from brain.errors import NON_RETRYABLE, UpstreamError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    failure: type[UpstreamError],
    label: str,
    attempts: int = 3,
    timeout: float = 10.0,
    base_delay: float = 0.5,
    context: Optional[dict] = None,
) -> T:
    """
    Await operation() up to `attempts` times.

    Backoff between attempts is base_delay * 2**(attempt-1).
    InvalidArgument / Unauthorized / NotFound propagate immediately.
    On exhaustion raises `failure`, flagged timed_out when the last attempt
    timed out (surfaces as 504 instead of 502).
    """
    ctx = context or {}
    last_exc: Optional[BaseException] = None
    timed_out = False

    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            last_exc, timed_out = exc, True
        except NON_RETRYABLE:
            raise
        except Exception as exc:
            last_exc, timed_out = exc, False

        logger.warning(
            "%s attempt %d/%d failed (%s) %s",
            label,
            attempt,
            attempts,
            "timeout" if timed_out else type(last_exc).__name__,
            " ".join(f"{k}={v}" for k, v in ctx.items()),
        )
        if attempt < attempts:
            await asyncio.sleep(base_delay * 2 ** (attempt - 1))

    logger.error(
        "%s failed after %d attempts timed_out=%s %s",
        label,
        attempts,
        timed_out,
        " ".join(f"{k}={v}" for k, v in ctx.items()),
    )
    raise failure(f"{label} failed after {attempts} attempts", timed_out=timed_out) from last_exc
