"""
Fire-and-forget work that must not hold the webhook response open.

Work is submitted from request handlers or worker threads, runs on the
application event loop, and every failure is logged and counted.
"""

import asyncio
import concurrent.futures
import logging
from typing import Any, Awaitable, Callable, Optional

from wa_ingest.metrics import record_background_task

logger = logging.getLogger(__name__)


class BackgroundDispatcher:
    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._pending: set[concurrent.futures.Future] = set()

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        """Attach to the running application loop (called at startup)."""
        self._loop = loop

    @property
    def pending(self) -> int:
        return len(self._pending)

    def submit(self, name: str, func: Callable[..., Awaitable[Any]], *args: Any) -> concurrent.futures.Future:
        """
        Schedule func(*args) on the application loop without waiting for it.

        Safe to call from the loop thread or from a worker thread.
        """
        if self._loop is None or self._loop.is_closed():
            raise RuntimeError("BackgroundDispatcher is not bound to a running event loop")

        future = asyncio.run_coroutine_threadsafe(func(*args), self._loop)
        self._pending.add(future)
        future.add_done_callback(lambda f: self._on_done(name, f))
        return future

    def _on_done(self, name: str, future: concurrent.futures.Future) -> None:
        self._pending.discard(future)
        if future.cancelled():
            logger.warning(f"Background task cancelled: {name}")
            record_background_task(name, "cancelled")
            return
        error = future.exception()
        if error is not None:
            logger.error(
                f"Background task failed: {name}: {error}",
                exc_info=(type(error), error, error.__traceback__),
            )
            record_background_task(name, "failed")
            return
        record_background_task(name, "ok")

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait up to timeout seconds for pending tasks, cancelling stragglers."""
        if not self._pending:
            return
        waiting = [asyncio.wrap_future(future) for future in list(self._pending)]
        done, not_done = await asyncio.wait(waiting, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            logger.warning(f"Cancelled {len(not_done)} background task(s) at shutdown")
