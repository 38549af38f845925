from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

import httpx

T = TypeVar("T")

log = logging.getLogger(__name__)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    attempts: int = 2,
    delay: float = 2.0,
    retry_on: Tuple[Type[BaseException], ...] = (httpx.TransportError,),
) -> T:
    """Await ``fn`` up to ``attempts`` times, sleeping ``delay`` seconds between tries."""
    last_exc: BaseException | None = None

    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except retry_on as e:
            last_exc = e
            if attempt < attempts:
                log.debug("retry attempt=%d error=%s", attempt, e)
                await asyncio.sleep(delay)

    assert last_exc is not None
    raise last_exc
