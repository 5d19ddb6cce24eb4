"""
Bounded retry with per-attempt timeout and exponential backoff.

Used at the transport layer for internal RPC calls so call sites never need
to fire the same request twice to survive a flaky hop.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

import structlog


logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def retry_with_timeout(
    operation: Callable[[], Awaitable[T]],
    *,
    name: str,
    attempts: int = 3,
    timeout: Optional[float] = 30.0,
    backoff_base: float = 1.0,
    max_backoff: float = 30.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    no_retry: Tuple[Type[BaseException], ...] = (),
) -> T:
    """
    Run ``operation`` until it succeeds or ``attempts`` are used up.

    Each attempt is bounded by ``timeout`` seconds. Between attempts the
    caller sleeps ``backoff_base * 2 ** attempt`` seconds, capped at
    ``max_backoff``. Exceptions listed in ``no_retry`` propagate immediately.
    The last failure is re-raised.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    attempt = 0
    while True:
        try:
            if timeout is None:
                result = await operation()
            else:
                result = await asyncio.wait_for(operation(), timeout=timeout)

            if attempt > 0:
                logger.info("Call succeeded after retries", call=name, attempt=attempt + 1)
            return result

        except no_retry:
            raise
        except (asyncio.TimeoutError, *retry_on) as e:
            logger.warning(
                "Call failed",
                call=name,
                attempt=attempt + 1,
                attempts=attempts,
                error=str(e) or type(e).__name__,
            )
            if attempt + 1 >= attempts:
                logger.error("All attempts failed", call=name, attempts=attempts)
                raise
            await asyncio.sleep(min(backoff_base * (2 ** attempt), max_backoff))
            attempt += 1
