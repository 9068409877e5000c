"""
Core runtime: one asyncio event loop, on its own thread, that owns the store.

Flask handlers run on worker threads. They never touch the store directly;
they hand work to the loop with call() (synchronous functions) or submit()
(coroutines), so every mutation happens on a single thread and generation
results are applied between, never during, other mutations.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Optional, TypeVar

if TYPE_CHECKING:
    from .services.persistence import AutoSaveScheduler, PersistenceGateway
    from .services.session_store import NoteSessionStore
    from .services.weekly import WeeklySummaryScheduler

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CoreRuntime:
    def __init__(
        self,
        store: "NoteSessionStore",
        gateway: "PersistenceGateway",
        autosave: "AutoSaveScheduler",
        weekly_scheduler: Optional["WeeklySummaryScheduler"] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.autosave = autosave
        self.weekly_scheduler = weekly_scheduler
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, run_scheduler: bool = True) -> None:
        """Start the loop thread, load persisted sessions and hook up auto-save."""
        with self._lock:
            if self.running:
                return
            self._loop = asyncio.new_event_loop()
            self._thread = threading.Thread(target=self._run_loop, name="smartnote-core", daemon=True)
            self._thread.start()
        self.submit(self._bootstrap(run_scheduler)).result()
        logger.info("Core runtime started with %d sessions", len(self.store.sessions))

    def stop(self) -> None:
        """Flush pending saves, stop background work and shut the loop down."""
        with self._lock:
            if not self.running:
                return
            self.submit(self._shutdown()).result()
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join()
            self._loop.close()
            self._thread = None
            self._loop = None
        logger.info("Core runtime stopped")

    def submit(self, coro: Coroutine[Any, Any, T]) -> "Future[T]":
        """Schedule a coroutine on the core loop from any thread."""
        if self._loop is None:
            coro.close()
            raise RuntimeError("Core runtime is not running")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def call(self, fn: Callable[..., T], *args: Any, timeout: Optional[float] = None, **kwargs: Any) -> T:
        """Run ``fn`` on the core loop and wait for its result (exceptions propagate)."""

        async def _invoke() -> T:
            return fn(*args, **kwargs)

        return self.submit(_invoke()).result(timeout)

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    async def _bootstrap(self, run_scheduler: bool) -> None:
        loaded = await asyncio.to_thread(self.gateway.load_all)
        if self.store.init(loaded):
            # First run (or nothing left): persist the default session right away
            await self.autosave.save_now()
        self.store.subscribe(self.autosave.trigger)
        if run_scheduler and self.weekly_scheduler is not None:
            self.weekly_scheduler.start()

    async def _shutdown(self) -> None:
        if self.weekly_scheduler is not None:
            self.weekly_scheduler.stop()
        await self.autosave.save_now()
        self.store.dispose()
