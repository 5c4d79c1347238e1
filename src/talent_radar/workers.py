from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping

from .task_queue import Task, TaskQueue

logger = logging.getLogger(__name__)

TaskHandler = Callable[[Task], Awaitable[Any]]


class WorkerPool:
    """Fixed number of asyncio workers draining one task queue."""

    def __init__(
        self,
        queue: TaskQueue,
        handlers: Mapping[str, TaskHandler],
        concurrency: int = 2,
        handler_timeout: float = 300.0,
        poll_interval: float = 0.5,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.handlers = dict(handlers)
        self.concurrency = concurrency
        self.handler_timeout = handler_timeout
        self.poll_interval = poll_interval
        self._workers: list[asyncio.Task] = []
        self._stopping = False

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        if self._workers:
            return
        self._stopping = False
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"worker-{index}") for index in range(self.concurrency)
        ]
        logger.info("started %s worker(s)", self.concurrency)

    async def stop(self) -> None:
        self._stopping = True
        workers, self._workers = self._workers, []
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
            logger.info("stopped %s worker(s)", len(workers))

    async def drain(self) -> None:
        """Run workers until no waiting, delayed or active task remains."""
        self.start()
        try:
            while self.queue.has_pending():
                await asyncio.sleep(self.poll_interval)
        finally:
            await self.stop()

    async def _worker(self, index: int) -> None:
        while not self._stopping:
            task = self.queue.dequeue()
            if task is None:
                due = self.queue.next_due_in()
                await asyncio.sleep(self.poll_interval if due is None else min(max(due, 0.01), self.poll_interval))
                continue
            await self.run_task(task)

    async def run_task(self, task: Task) -> None:
        handler = self.handlers.get(task.kind)
        if handler is None:
            self.queue.fail(task.id, f"no handler registered for {task.kind}", retryable=False)
            return

        logger.info("running %s task %s (attempt %s/%s)", task.kind, task.id, task.attempts, task.max_attempts)
        try:
            result = await asyncio.wait_for(handler(task), timeout=self.handler_timeout)
        except asyncio.TimeoutError:
            self.queue.fail(task.id, f"handler timed out after {self.handler_timeout:g}s")
        except Exception as exc:
            logger.warning("%s task %s raised %s: %s", task.kind, task.id, type(exc).__name__, exc)
            self.queue.fail(task.id, f"{type(exc).__name__}: {exc}")
        else:
            self.queue.ack(task.id, result)
