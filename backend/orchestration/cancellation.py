"""
Cooperative cancellation tokens.

A token is handed to every suspension point that may outlive a task: provider
HTTP calls, thread-run tools and shell subprocesses. Cancelling it flips a
flag that worker threads poll and runs callbacks that abort what cannot poll
(asyncio tasks, child processes).
"""

import asyncio
import logging
import threading
from typing import Awaitable, Callable, Optional, TypeVar

from errors import OperationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    def __init__(self, parent: Optional["CancelToken"] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self.reason = ""
        if parent is not None:
            parent.add_callback(lambda: self.cancel(parent.reason))

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled"):
        """Fire the token. Idempotent; callbacks run once, in registration order."""
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.exception("Cancellation callback failed")

    def add_callback(self, cb: Callable[[], None]):
        """Register cb to run on cancel. Runs immediately if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(cb)
                return
        cb()

    def remove_callback(self, cb: Callable[[], None]):
        with self._lock:
            if cb in self._callbacks:
                self._callbacks.remove(cb)

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise OperationCancelled(self.reason)

    def child(self) -> "CancelToken":
        return CancelToken(parent=self)

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable` as a task that is cancelled when this token fires."""
        self.raise_if_cancelled()
        loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(awaitable)

        def _abort():
            loop.call_soon_threadsafe(task.cancel)

        self.add_callback(_abort)
        try:
            return await task
        except asyncio.CancelledError:
            if self.cancelled:
                raise OperationCancelled(self.reason)
            raise
        finally:
            self.remove_callback(_abort)
