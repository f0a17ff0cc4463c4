"""Bounded execution of blocking model work.

    Visualizer -> InferencePool.slot (asyncio.Semaphore) -> worker thread -> ONNX Runtime

Downloaded model bytes become sessions and tensors become scores on the same
worker threads, so a slow load and a burst of classifications share one limit.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from functools import partial
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from interviz.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferencePool:
    """Runs blocking callables on at most ``max_concurrent`` worker threads.

    Counters are only touched from the event loop, never from the workers.
    """

    def __init__(self, settings: Settings) -> None:
        self._capacity = settings.max_concurrent
        self._slot_timeout = settings.inference_slot_timeout
        self._slots = asyncio.Semaphore(self._capacity)
        self._executor = ThreadPoolExecutor(
            max_workers=self._capacity,
            thread_name_prefix="interviz-model",
        )
        self._waiting = 0
        self._running = 0
        self._rejected = 0

    @asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        self._waiting += 1
        try:
            async with asyncio.timeout(self._slot_timeout):
                await self._slots.acquire()
        except TimeoutError:
            self._rejected += 1
            logger.warning(
                "No model slot free after %.1fs (%d running, %d waiting)",
                self._slot_timeout,
                self._running,
                self._waiting - 1,
            )
            raise TimeoutError(f"All {self._capacity} model slots busy for {self._slot_timeout:.1f}s") from None
        finally:
            self._waiting -= 1

        self._running += 1
        try:
            yield
        finally:
            self._running -= 1
            self._slots.release()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Call ``func(*args)`` on a worker thread once a slot is free.

        Raises:
            TimeoutError: If every slot stays busy for the configured timeout.
        """
        async with self._slot():
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, partial(func, *args))

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def active_count(self) -> int:
        """Jobs currently on a worker thread."""
        return self._running

    @property
    def queue_depth(self) -> int:
        """Jobs waiting for a slot."""
        return self._waiting

    @property
    def rejected_count(self) -> int:
        """Jobs that gave up waiting since startup."""
        return self._rejected

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
