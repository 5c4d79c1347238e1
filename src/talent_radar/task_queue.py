from __future__ import annotations

import heapq
import itertools
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol

from .errors import ExhaustedRetriesError
from .models import TASK_KINDS
from .retry import RetryPolicy
from .utils import utc_now

logger = logging.getLogger(__name__)

WAITING = "waiting"
DELAYED = "delayed"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"

TASK_STATES = (WAITING, DELAYED, ACTIVE, COMPLETED, FAILED)
TERMINAL_STATES = (COMPLETED, FAILED)


@dataclass
class Task:
    id: str
    kind: str
    payload: dict[str, Any]
    priority: int
    retry_policy: RetryPolicy
    scheduled_at: datetime
    created_at: datetime
    batch_id: str | None = None
    state: str = WAITING
    attempts: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    failed_reason: str | None = None
    last_error: str | None = None
    result: Any = None
    history: list[str] = field(default_factory=list)

    @property
    def max_attempts(self) -> int:
        return self.retry_policy.max_attempts

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "state": self.state,
            "priority": self.priority,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "batch_id": self.batch_id,
            "scheduled_at": self.scheduled_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "failed_reason": self.failed_reason,
        }


class TaskQueue(Protocol):
    def enqueue(
        self,
        kind: str,
        payload: dict[str, Any],
        priority: int = 0,
        retry_policy: RetryPolicy | None = None,
        delay: float = 0.0,
        batch_id: str | None = None,
    ) -> str:
        ...

    def dequeue(self) -> Task | None:
        ...

    def next_due_in(self) -> float | None:
        ...

    def ack(self, task_id: str, result: Any = None) -> None:
        ...

    def fail(self, task_id: str, error: str, retryable: bool = True) -> str:
        ...

    def retry(self, task_id: str) -> bool:
        ...

    def cancel(self, task_id: str) -> bool:
        ...

    def get(self, task_id: str) -> Task | None:
        ...

    def counts(self) -> dict[str, int]:
        ...

    def counts_by_kind(self, states: tuple[str, ...] = ...) -> dict[str, int]:
        ...

    def has_pending(self) -> bool:
        ...

    def tasks(self, state: str | None = None) -> list[Task]:
        ...

    def tasks_for_batch(self, batch_id: str) -> list[Task]:
        ...

    def pause(self) -> None:
        ...

    def resume(self) -> None:
        ...

    def is_paused(self) -> bool:
        ...

    def purge(self, older_than: datetime) -> int:
        ...


class InMemoryTaskQueue:
    """Priority queue of tasks held in process memory.

    Ready tasks are ordered by priority (higher first), then scheduled time,
    then enqueue order. Delayed tasks sit in a second heap keyed by due time
    and are promoted to waiting on the next dequeue or count after they fall
    due. Terminal tasks are retained (last ``keep_completed`` completed and
    last ``keep_failed`` failed) until trimmed or purged.
    """

    def __init__(
        self,
        keep_completed: int = 50,
        keep_failed: int = 25,
        default_retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.default_retry_policy = default_retry_policy or RetryPolicy()
        self.clock = clock
        self._tasks: dict[str, Task] = {}
        self._ready: list[tuple[int, datetime, int, str]] = []
        self._delayed: list[tuple[datetime, int, str]] = []
        self._seq = itertools.count()
        self._terminal: dict[str, deque[str]] = {COMPLETED: deque(), FAILED: deque()}
        self._paused = False

    def enqueue(
        self,
        kind: str,
        payload: dict[str, Any],
        priority: int = 0,
        retry_policy: RetryPolicy | None = None,
        delay: float = 0.0,
        batch_id: str | None = None,
    ) -> str:
        if kind not in TASK_KINDS:
            raise ValueError(f"unknown task kind: {kind}")
        now = self.clock()
        task = Task(
            id=uuid.uuid4().hex,
            kind=kind,
            payload=dict(payload),
            priority=priority,
            retry_policy=retry_policy or self.default_retry_policy,
            scheduled_at=now + timedelta(seconds=max(delay, 0.0)),
            created_at=now,
            batch_id=batch_id,
        )
        self._tasks[task.id] = task
        self._schedule(task, now)
        logger.debug("enqueued %s task %s (priority %s, delay %.2fs)", kind, task.id, priority, delay)
        return task.id

    def _schedule(self, task: Task, now: datetime) -> None:
        if task.scheduled_at > now:
            task.state = DELAYED
            heapq.heappush(self._delayed, (task.scheduled_at, next(self._seq), task.id))
        else:
            task.state = WAITING
            heapq.heappush(self._ready, (-task.priority, task.scheduled_at, next(self._seq), task.id))
        task.history.append(task.state)

    def _promote_due(self) -> None:
        now = self.clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, task_id = heapq.heappop(self._delayed)
            task = self._tasks.get(task_id)
            if task is None or task.state != DELAYED:
                continue
            self._schedule(task, now)

    def dequeue(self) -> Task | None:
        if self._paused:
            return None
        self._promote_due()
        while self._ready:
            _, _, _, task_id = heapq.heappop(self._ready)
            task = self._tasks.get(task_id)
            if task is None or task.state != WAITING:
                continue
            task.state = ACTIVE
            task.attempts += 1
            task.started_at = self.clock()
            task.history.append(ACTIVE)
            return task
        return None

    def next_due_in(self) -> float | None:
        """Seconds until the earliest delayed task falls due."""
        for due, _, task_id in sorted(self._delayed):
            task = self._tasks.get(task_id)
            if task is not None and task.state == DELAYED:
                return max((due - self.clock()).total_seconds(), 0.0)
        return None

    def _active(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise KeyError(task_id)
        if task.state != ACTIVE:
            raise ValueError(f"task {task_id} is {task.state}, not active")
        return task

    def ack(self, task_id: str, result: Any = None) -> None:
        task = self._active(task_id)
        task.result = result
        self._finish(task, COMPLETED)

    def fail(self, task_id: str, error: str, retryable: bool = True) -> str:
        task = self._active(task_id)
        task.last_error = error
        if retryable and task.retry_policy.should_retry(task.attempts):
            delay = task.retry_policy.delay_for(task.attempts)
            now = self.clock()
            task.scheduled_at = now + timedelta(seconds=delay)
            self._schedule(task, now)
            logger.info(
                "task %s (%s) attempt %s/%s failed, retrying in %.1fs: %s",
                task.id,
                task.kind,
                task.attempts,
                task.max_attempts,
                delay,
                error,
            )
            return task.state

        task.failed_reason = str(ExhaustedRetriesError(task.id, task.attempts, error))
        self._finish(task, FAILED)
        logger.warning("task %s (%s) failed: %s", task.id, task.kind, task.failed_reason)
        return FAILED

    def _finish(self, task: Task, state: str) -> None:
        task.state = state
        task.finished_at = self.clock()
        task.history.append(state)
        retained = self._terminal[state]
        retained.append(task.id)
        limit = self.keep_completed if state == COMPLETED else self.keep_failed
        while len(retained) > max(limit, 0):
            self._tasks.pop(retained.popleft(), None)

    def retry(self, task_id: str) -> bool:
        """Requeue a failed task with a fresh attempt budget."""
        task = self._tasks.get(task_id)
        if task is None or task.state != FAILED:
            return False
        self._terminal[FAILED].remove(task_id)
        task.attempts = 0
        task.failed_reason = None
        task.finished_at = None
        now = self.clock()
        task.scheduled_at = now
        self._schedule(task, now)
        return True

    def cancel(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None or task.state not in (WAITING, DELAYED):
            return False
        del self._tasks[task_id]
        logger.info("cancelled task %s (%s)", task_id, task.kind)
        return True

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def counts(self) -> dict[str, int]:
        self._promote_due()
        result = {state: 0 for state in TASK_STATES}
        for task in self._tasks.values():
            result[task.state] += 1
        result["total"] = len(self._tasks)
        return result

    def counts_by_kind(self, states: tuple[str, ...] = (WAITING, ACTIVE, DELAYED)) -> dict[str, int]:
        result = {kind: 0 for kind in TASK_KINDS}
        for task in self._tasks.values():
            if task.state in states:
                result[task.kind] += 1
        return result

    def has_pending(self) -> bool:
        return any(task.state in (WAITING, DELAYED, ACTIVE) for task in self._tasks.values())

    def tasks(self, state: str | None = None) -> list[Task]:
        self._promote_due()
        return [task for task in self._tasks.values() if state is None or task.state == state]

    def tasks_for_batch(self, batch_id: str) -> list[Task]:
        return [task for task in self._tasks.values() if task.batch_id == batch_id]

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    def is_paused(self) -> bool:
        return self._paused

    def purge(self, older_than: datetime) -> int:
        removed = 0
        for state, retained in self._terminal.items():
            keep: deque[str] = deque()
            for task_id in retained:
                task = self._tasks.get(task_id)
                if task is None:
                    continue
                if task.finished_at is not None and task.finished_at < older_than:
                    del self._tasks[task_id]
                    removed += 1
                else:
                    keep.append(task_id)
            self._terminal[state] = keep
        return removed
