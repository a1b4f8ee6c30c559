
import asyncio
import functools
import random
from typing import Callable, Optional
import httpx
from storefront.common.logging_setup import get_logger

logger = get_logger("storefront.common.retries")

TRANSIENT_EXCEPTIONS = (httpx.ConnectError, httpx.ReadTimeout, httpx.WriteTimeout,
                        httpx.PoolTimeout, httpx.RemoteProtocolError, httpx.NetworkError)


def is_transient_gateway_error(exc: BaseException) -> bool:
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, TRANSIENT_EXCEPTIONS):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        # provider side 5xx and rate limiting are worth another try, 4xx are answers
        status_code = exc.response.status_code if exc.response is not None else None
        return status_code is not None and (status_code >= 500 or status_code == 429)
    return False


async def _sleep_with_jitter(delay: float, jitter: float) -> None:
    jitter_val = random.uniform(-jitter * delay, jitter * delay)
    await asyncio.sleep(max(0.0, delay + jitter_val))


def retry_async(
    *,
    attempts: int = 3,
    base_delay: float = 0.5,
    factor: float = 2.0,
    max_delay: float = 8.0,
    jitter: float = 0.15,
    if_retryable: Optional[Callable[[BaseException], bool]] = None,
):
    """Retry an idempotent coroutine on transient failures with exponential backoff.

    Only wrap read-style calls (e.g. fetching a payment). Money moving calls are
    not retried blindly, the refund strategy chain decides what happens next.
    """

    if if_retryable is None:
        if_retryable = is_transient_gateway_error

    def deco(fn: Callable):
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            for attempt in range(1, attempts + 1):
                try:
                    return await fn(*args, **kwargs)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    if not if_retryable(exc) or attempt == attempts:
                        raise

                    delay = min(max_delay, base_delay * (factor ** (attempt - 1)))
                    logger.warning("gateway.retry", extra={
                        "call": fn.__name__,
                        "attempt": attempt,
                        "retry_in": round(delay, 3),
                        "error": repr(exc),
                    })
                    await _sleep_with_jitter(delay, jitter)
        return wrapper
    return deco
