"""
簡易リトライ & 指数バックオフデコレータ
    @retry_async(max_attempts=3, base_delay=0.5, retry_on=(httpx.HTTPError,))
    async def fetch(...):
        ...
"""

import asyncio
import functools
import logging
from typing import Callable, TypeVar

_T = TypeVar("_T")

logger = logging.getLogger("pm_core.retry")


def retry_async(
    max_attempts: int = 5,
    base_delay: float = 0.5,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> Callable[[_T], _T]:
    def decorator(func: _T) -> _T:  # type: ignore[valid-type]
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for n in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if n == max_attempts:
                        raise
                    delay = base_delay * 2 ** (n - 1)
                    logger.debug(
                        "%s failed (%s); retry %d/%d in %.2fs",
                        getattr(func, "__name__", "call"),
                        exc,
                        n,
                        max_attempts,
                        delay,
                    )
                    await asyncio.sleep(delay)

        return wrapper  # type: ignore[return-value]

    return decorator
