"""A single event loop, on its own thread, that owns every broker coroutine.

The broker's per-key locks, the rate limiter and the in-memory store are all
asyncio primitives and only work among coroutines of one loop. Flask serves
each request on its own thread, so views submit their work here instead of
running it on a loop of their own.
"""

import asyncio
import logging
import threading
from concurrent.futures import Future
from typing import Any, Awaitable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ServiceLoop:
    """Daemon thread running one event loop until stopped."""

    def __init__(self, name: str = "payer-broker-loop"):
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
            loop = asyncio.new_event_loop()
            ready = threading.Event()

            def _run() -> None:
                asyncio.set_event_loop(loop)
                loop.call_soon(ready.set)
                loop.run_forever()

            self._loop = loop
            self._thread = threading.Thread(target=_run, name=self.name, daemon=True)
            self._thread.start()
            ready.wait()
            logger.info(f"Service loop {self.name} started")

    def submit(self, coro: Awaitable[T]) -> "Future[T]":
        """Schedule `coro` on the owned loop, starting it on first use."""
        self.start()
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def run(self, coro: Awaitable[T], timeout: Optional[float] = None) -> T:
        """Block the calling thread until `coro` finishes on the owned loop.

        Must not be called from the loop's own thread.
        """
        if threading.current_thread() is self._thread:
            raise RuntimeError("ServiceLoop.run() called from the service loop thread")
        return self.submit(coro).result(timeout)

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            if self._loop is None:
                return
            loop, thread = self._loop, self._thread
            self._loop = self._thread = None

        async def _shutdown() -> None:
            tasks = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            loop.stop()

        if thread is not None and thread.is_alive():
            asyncio.run_coroutine_threadsafe(_shutdown(), loop)
            thread.join(timeout)
        if not loop.is_running():
            loop.close()
        logger.info(f"Service loop {self.name} stopped")

    def __enter__(self) -> "ServiceLoop":
        self.start()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.stop()
