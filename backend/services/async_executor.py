"""
Thread pool for blocking SDK calls.

The Stripe SDK and smtplib are synchronous. Stripe calls sit on the checkout
request path and SMTP on the dispatcher loop, so both are pushed onto a
shared pool sized by settings.blocking_io_workers.
"""
import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, TypeVar

from config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_executor: ThreadPoolExecutor | None = None


def get_executor() -> ThreadPoolExecutor:
    global _executor
    if _executor is None:
        workers = max(1, settings.blocking_io_workers)
        _executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="stripe_smtp_")
        logger.info(f"Blocking I/O pool started ({workers} workers)")
    return _executor


async def run_blocking(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Await func(*args, **kwargs) without stalling the event loop."""
    return await asyncio.get_running_loop().run_in_executor(
        get_executor(), functools.partial(func, *args, **kwargs)
    )


def shutdown_executor(wait: bool = True) -> None:
    """Drain in-flight Stripe/SMTP calls at app shutdown."""
    global _executor
    if _executor is None:
        return
    _executor.shutdown(wait=wait)
    _executor = None
    logger.info("Blocking I/O pool stopped")
