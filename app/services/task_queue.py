"""Background task queue using Redis lists.

PRODUCER / CONSUMER
-------------------
  Producer (after-commit outbox flush):  LPUSH onto tasks:{queue}
  Consumer (app/worker.py):               BRPOP from tasks:{queue}

LPUSH adds at the head, BRPOP takes from the tail: FIFO.  BRPOP blocks
inside Redis until a task arrives or the timeout passes, so an idle
worker costs nothing.

Nothing in the request path enqueues directly.  Every enqueue is an
after-commit effect, which is what lets a job assume the enrollment it
names is already visible to its own reads.

RETRIES
-------
A Task carries an ``attempts`` counter.  When a handler fails the worker
calls ``requeue`` (attempts + 1) until MAX_ATTEMPTS, then logs the task
as dead.  Delivery is at-most-once per attempt: a worker crash mid-task
loses that attempt.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, replace
from typing import Protocol, runtime_checkable

from app.db.redis import redis_pool

MAX_ATTEMPTS = 3


@dataclass(frozen=True, slots=True)
class Task:
    """A unit of background work.

    id:       Unique identifier for tracking and logging.
    queue:    Which queue this task belongs to ("emails", "course_access",
              "events").
    payload:  JSON-serializable data the handler needs.
    attempts: How many times a handler has already failed on it.
    """

    id: str
    queue: str
    payload: dict
    attempts: int = 0


@runtime_checkable
class TaskQueue(Protocol):
    async def enqueue(self, queue: str, payload: dict) -> Task: ...
    async def requeue(self, task: Task) -> Task: ...
    async def dequeue(self, queue: str, timeout: int = 0) -> Task | None: ...
    async def queue_length(self, queue: str) -> int: ...


class InMemoryTaskQueue:
    """In-memory task queue for local dev and tests."""

    def __init__(self) -> None:
        self._queues: dict[str, list[Task]] = {}

    async def enqueue(self, queue: str, payload: dict) -> Task:
        task = Task(id=str(uuid.uuid4()), queue=queue, payload=payload)
        self._queues.setdefault(queue, []).append(task)
        return task

    async def requeue(self, task: Task) -> Task:
        retried = replace(task, attempts=task.attempts + 1)
        self._queues.setdefault(task.queue, []).append(retried)
        return retried

    async def dequeue(self, queue: str, timeout: int = 0) -> Task | None:
        tasks = self._queues.get(queue, [])
        if tasks:
            return tasks.pop(0)
        return None

    async def queue_length(self, queue: str) -> int:
        return len(self._queues.get(queue, []))


class RedisTaskQueue:
    """Redis-backed task queue using LPUSH/BRPOP."""

    _PREFIX = "tasks:"

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    async def _push(self, task: Task) -> Task:
        await self._redis.lpush(f"{self._PREFIX}{task.queue}", json.dumps(asdict(task)))
        return task

    async def enqueue(self, queue: str, payload: dict) -> Task:
        return await self._push(Task(id=str(uuid.uuid4()), queue=queue, payload=payload))

    async def requeue(self, task: Task) -> Task:
        return await self._push(replace(task, attempts=task.attempts + 1))

    async def dequeue(self, queue: str, timeout: int = 5) -> Task | None:
        result = await self._redis.brpop(f"{self._PREFIX}{queue}", timeout=timeout)
        if result is None:
            return None
        _, task_json = result
        return Task(**json.loads(task_json))

    async def queue_length(self, queue: str) -> int:
        return await self._redis.llen(f"{self._PREFIX}{queue}")


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

if redis_pool is not None:
    task_queue: TaskQueue = RedisTaskQueue(redis_pool)
else:
    task_queue = InMemoryTaskQueue()
