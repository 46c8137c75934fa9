"""
Bounded batch processor

A fixed pool of asyncio worker tasks drains one bounded queue of server
addresses. Batches can be added while the pool is already working, so
master server pagination overlaps with the server queries themselves.

Every address added produces exactly one outcome at the sink, unless the
processor is terminated before the address was started.
"""

import asyncio
import inspect
import logging
from typing import Iterable

from mastersteam.errors import QueryError
from mastersteam.models import QueryOutcome

DEFAULT_WORKERS = 20
DEFAULT_QUEUE_SIZE = 1000

logger = logging.getLogger(__name__)


class BatchProcessor:
    """
    Worker pool turning addresses into QueryOutcomes.

    Args:
        handler: Coroutine function, handler(address) -> QueryOutcome
        sink: Called once per outcome (plain or coroutine function); calls
            are serialized
        workers: Number of concurrent workers
        queue_size: Bound of the work queue, 0 for unbounded

    add_batch() calls made while finish() is waiting extend that same wait:
    addresses are counted as pending before they are queued, and finish()
    returns only when the pending count drops to zero.
    """

    def __init__(self, handler, sink, workers: int = DEFAULT_WORKERS,
                 queue_size: int = DEFAULT_QUEUE_SIZE):
        if workers < 1:
            raise ValueError(f"workers must be at least 1, got {workers}")

        self.handler = handler
        self.sink = sink
        self.worker_count = workers
        self.queue = asyncio.Queue(maxsize=queue_size)

        self.in_flight = 0
        self.max_in_flight = 0
        self.completed = 0

        self._workers = []
        self._busy = set()
        self._pending = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._sink_lock = asyncio.Lock()
        self._terminated = False

    @property
    def pending(self) -> int:
        return self._pending

    @property
    def terminated(self) -> bool:
        return self._terminated

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def add_batch(self, addresses: Iterable):
        """
        Queue one task per address.

        Only waits when the queue is full.

        Raises:
            RuntimeError: The processor was terminated
        """
        if self._terminated:
            raise RuntimeError("BatchProcessor has been terminated")

        addresses = list(addresses)
        if not addresses:
            return

        self._start_workers()

        self._pending += len(addresses)
        self._idle.clear()
        logger.debug(f"[BATCH] Queued {len(addresses)} address(es), {self._pending} pending")

        for index, address in enumerate(addresses):
            if self._terminated:
                self._release(len(addresses) - index)
                break
            await self.queue.put(address)

        if self._terminated:
            self._abandon_queued()

    async def finish(self):
        """Wait until every address added so far has produced an outcome."""
        await self._idle.wait()

    async def terminate(self):
        """
        Stop the pool.

        Queued addresses that no worker has started are dropped without an
        outcome. Idle workers are cancelled; busy workers finish their
        current address and exit.
        """
        if self._terminated and not self._workers:
            return

        self._terminated = True
        abandoned = self._abandon_queued()
        if abandoned:
            logger.info(f"[BATCH] Terminated with {abandoned} queued address(es) abandoned")

        for task in self._workers:
            if task not in self._busy:
                task.cancel()

        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.terminate()
        return False

    # -------------------------------------------------------------------------
    # Workers
    # -------------------------------------------------------------------------

    def _start_workers(self):
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(number), name=f"batch-worker-{number}")
            for number in range(self.worker_count)
        ]

    async def _worker(self, number: int):
        task = asyncio.current_task()

        while not self._terminated:
            address = await self.queue.get()

            self._busy.add(task)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                outcome = await self._run(address)
                await self._deliver(outcome)
            finally:
                self.in_flight -= 1
                self._busy.discard(task)
                self.queue.task_done()
                self.completed += 1
                self._release(1)

    async def _run(self, address) -> QueryOutcome:
        try:
            return await self.handler(address)
        except QueryError as e:
            logger.debug(f"[BATCH] {address}: {e}")
            return QueryOutcome.failure(address, e)
        except Exception as e:
            logger.error(f"[BATCH] Unexpected error querying {address}: {e}", exc_info=True)
            return QueryOutcome.failure(address, e)

    async def _deliver(self, outcome: QueryOutcome):
        async with self._sink_lock:
            try:
                result = self.sink(outcome)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"[BATCH] Sink failed for {outcome.address}: {e}", exc_info=True)

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------

    def _release(self, count: int):
        self._pending = max(0, self._pending - count)
        if self._pending == 0:
            self._idle.set()

    def _abandon_queued(self) -> int:
        abandoned = 0
        while True:
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self.queue.task_done()
            abandoned += 1

        self._release(abandoned)
        return abandoned
