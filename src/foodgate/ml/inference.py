"""Inference concurrency layer.

Architecture:
    routes / FoodGate (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> FoodClassifier

A request that cannot get a slot within ``queue_timeout`` is turned away with
``InferenceBusyError``. That is a ``ClassificationError``, so the gate and the
classify endpoint fail open on it instead of stalling the caller.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

from foodgate.errors import InferenceBusyError

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_QUEUE_TIMEOUT_SECONDS: float = 5.0


class InferencePool:
    """Bounds how many classifications run at once."""

    def __init__(self, max_concurrent: int, queue_timeout: float = DEFAULT_QUEUE_TIMEOUT_SECONDS) -> None:
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be at least 1, got {max_concurrent}")
        self._max_concurrent = max_concurrent
        self._queue_timeout = queue_timeout
        self._slots = asyncio.Semaphore(max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent,
            thread_name_prefix="food-classifier",
        )
        self._counter_lock = threading.Lock()
        self._running = 0
        self._waiting = 0
        self._rejected = 0

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run ``func(*args)`` on a classifier worker thread.

        Raises:
            InferenceBusyError: If every slot stays taken for ``queue_timeout`` seconds.
        """
        await self._acquire_slot()
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._slots.release()
            with self._counter_lock:
                self._running -= 1

    async def _acquire_slot(self) -> None:
        with self._counter_lock:
            self._waiting += 1
        acquired = False
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=self._queue_timeout)
            acquired = True
        except TimeoutError as exc:
            with self._counter_lock:
                self._rejected += 1
            logger.warning(
                "All %d classifier slots busy for %.1fs; letting the request through",
                self._max_concurrent,
                self._queue_timeout,
            )
            raise InferenceBusyError(
                f"Inference queue full: no slot free within {self._queue_timeout:.1f}s"
            ) from exc
        finally:
            with self._counter_lock:
                self._waiting -= 1
                if acquired:
                    self._running += 1

    @property
    def active_count(self) -> int:
        """Classifications currently running."""
        with self._counter_lock:
            return self._running

    @property
    def queue_depth(self) -> int:
        """Requests waiting for a slot."""
        with self._counter_lock:
            return self._waiting

    @property
    def rejected_count(self) -> int:
        """Requests turned away because no slot freed up in time."""
        with self._counter_lock:
            return self._rejected

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
