"""Worker pools: a fixed number of asyncio workers per task type."""

import asyncio
from typing import Optional

import structlog

from worker.executor import TaskExecutor
from worker.task_queue import TaskQueue

logger = structlog.get_logger(__name__)


class WorkerPool:
    """Bounded set of workers consuming one task type's queue."""

    def __init__(self, task_type: str, queue: TaskQueue, executor: TaskExecutor, concurrency: int):
        self.task_type = task_type
        self.concurrency = concurrency
        self._queue = queue
        self._executor = executor
        self._workers: list[asyncio.Task] = []
        # Workers dropped by a shrink that are still finishing a task
        self._retiring: list[asyncio.Task] = []
        self._busy: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return any(not w.done() for w in self._workers + self._retiring)

    def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"worker-{self.task_type}-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("Worker pool started", task_type=self.task_type, concurrency=self.concurrency)

    def resize(self, concurrency: int) -> None:
        """Grow or shrink the pool.

        Idle surplus workers are cancelled. A surplus worker in the middle
        of a task finishes it and then exits.
        """
        if concurrency == self.concurrency:
            return
        self.concurrency = concurrency
        if not self.running:
            return
        while len(self._workers) < concurrency:
            i = len(self._workers)
            self._workers.append(asyncio.create_task(self._worker_loop(i), name=f"worker-{self.task_type}-{i}"))
        surplus = self._workers[concurrency:]
        self._workers = self._workers[:concurrency]
        self._retiring = [w for w in self._retiring if not w.done()]
        for worker in surplus:
            if worker in self._busy:
                self._retiring.append(worker)
            else:
                worker.cancel()
        logger.info("Worker pool resized", task_type=self.task_type, concurrency=concurrency)

    async def _worker_loop(self, worker_index: int) -> None:
        log = logger.bind(task_type=self.task_type, worker=worker_index)
        me = asyncio.current_task()
        while me in self._workers:
            task_id = await self._queue.claim(self.task_type)
            self._busy.add(me)
            try:
                await self._executor.execute(task_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # The executor records every step failure itself; reaching
                # this point means bookkeeping failed (e.g. the store is down)
                log.exception("Worker failed to process task", task_id=task_id, error=str(e))
            finally:
                self._busy.discard(me)
        log.info("Worker retired")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Cancel all workers; running steps are interrupted and their tasks cancelled."""
        workers = self._workers + self._retiring
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.wait(workers, timeout=timeout)
        self._workers = []
        self._retiring = []
        logger.info("Worker pool stopped", task_type=self.task_type)
