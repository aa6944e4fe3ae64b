"""
Bounded worker pool for per-address work (probes, name lookups).

A fixed number of workers drain a shared queue of targets, so the number of
in-flight operations never exceeds the pool size no matter how large the
subnet is. When the cancel token fires, in-flight work is cancelled and the
pool returns whatever results it already has.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Generic, Iterable, Optional, TypeVar

from ..cancellation import CancelToken

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WorkerPool(Generic[T]):
    """Runs an async function over many targets with bounded concurrency."""

    def __init__(self, size: int, name: str = "pool"):
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self.size = size
        self.name = name
        self.peak_in_flight = 0
        self._in_flight = 0

    async def run(
        self,
        targets: Iterable[str],
        func: Callable[[str], Awaitable[Optional[T]]],
        token: Optional[CancelToken] = None,
        on_result: Optional[Callable[[str, Optional[T]], None]] = None,
    ) -> dict[str, Optional[T]]:
        """
        Apply func to every target.

        Exceptions raised by func count as a None result for that target.

        Returns:
            Mapping of target to result for every target that finished
        """
        queue: asyncio.Queue[str] = asyncio.Queue()
        for target in targets:
            queue.put_nowait(target)
        results: dict[str, Optional[T]] = {}

        async def worker() -> None:
            while not queue.empty():
                if token is not None and token.cancelled:
                    return
                target = queue.get_nowait()
                self._in_flight += 1
                self.peak_in_flight = max(self.peak_in_flight, self._in_flight)
                try:
                    result = await func(target)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.debug(f"[{self.name}] {target} failed: {e}")
                    result = None
                finally:
                    self._in_flight -= 1
                results[target] = result
                if on_result is not None:
                    on_result(target, result)

        worker_count = min(self.size, queue.qsize())
        if worker_count == 0:
            return results

        workers = [asyncio.create_task(worker()) for _ in range(worker_count)]
        all_done = asyncio.gather(*workers)
        waiters: set[asyncio.Future] = {all_done}
        cancel_waiter: Optional[asyncio.Task] = None
        if token is not None:
            cancel_waiter = asyncio.create_task(token.wait())
            waiters.add(cancel_waiter)

        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in workers:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            if not all_done.done():
                all_done.cancel()
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()

        if token is not None and token.cancelled:
            logger.info(f"[{self.name}] cancelled after {len(results)} results")
        return results
