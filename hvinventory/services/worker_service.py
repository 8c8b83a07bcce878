"""Single logical lane for blocking connection work."""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WorkerLane:
    """Runs submitted callables one at a time on a dedicated thread.

    Every orchestration call goes through the lane, which keeps the connected
    host registry, the VM collection and the config document single-writer.
    """

    def __init__(self, name: str = "hvinventory-worker") -> None:
        self._name = name
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()
        self._pending = 0

    def _ensure_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=self._name)
                logger.debug("Started worker lane %s", self._name)
            return self._executor

    @property
    def pending(self) -> int:
        with self._lock:
            return self._pending

    def submit(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> "Future[T]":
        """Queue ``func`` behind any work already on the lane."""

        executor = self._ensure_executor()
        with self._lock:
            self._pending += 1

        future = executor.submit(func, *args, **kwargs)
        future.add_done_callback(self._on_done)
        return future

    def _on_done(self, future: "Future[Any]") -> None:
        with self._lock:
            self._pending -= 1
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Work item on lane %s raised: %s", self._name, exc)

    async def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Await ``func`` on the lane from asyncio code without blocking the loop."""

        return await asyncio.wrap_future(self.submit(func, *args, **kwargs))

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
            logger.debug("Stopped worker lane %s", self._name)


worker_lane = WorkerLane()
