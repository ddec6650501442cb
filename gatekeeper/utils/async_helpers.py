"""Async-to-sync bridge for Flask route handlers.

The service runs one long-lived event loop on a daemon thread. Route
handlers submit coroutines to it and block for the result, while
background tasks started by those coroutines keep running on the same
loop after the request has returned.
"""

import asyncio
import logging
import threading
from typing import Any, Awaitable, Optional

logger = logging.getLogger(__name__)


class BackgroundLoop:
    """An asyncio event loop running forever on its own thread."""

    def __init__(self, name: str = "gatekeeper-loop"):
        self.name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._loop = asyncio.new_event_loop()
            self._thread = threading.Thread(target=self._run_forever, name=self.name, daemon=True)
            self._thread.start()
        logger.debug(f"Started event loop thread {self.name}")

    def _run_forever(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def run(self, coro: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        """Run ``coro`` on the loop and block until it returns or raises."""
        if not self.running:
            self.start()
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result(timeout)

    def stop(self, timeout: float = 5) -> None:
        """Cancel outstanding tasks, stop the loop and join its thread."""
        with self._lock:
            if not self.running:
                return
            loop, thread = self._loop, self._thread

        async def _cancel_all():
            tasks = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        try:
            asyncio.run_coroutine_threadsafe(_cancel_all(), loop).result(timeout)
        except Exception as e:
            logger.warning(f"Failed to cancel background tasks cleanly: {e}")

        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout)
        if not thread.is_alive():
            loop.close()
        logger.debug(f"Stopped event loop thread {self.name}")
