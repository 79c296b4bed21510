"""Background worker process.

RUN:  python -m app.worker

Same image as the API, different command:
  api:    uvicorn app.main:app --host 0.0.0.0 --port 8000
  worker: python -m app.worker

Queues:
  emails         welcome email after enrollment
  course_access  activation, lesson tracking, learning path
  events         domain events fanned out to listeners

Every task is enqueued by an outbox flush, after the enrollment it names
has committed.  A failing task is requeued up to MAX_ATTEMPTS times and
then logged as dead.  The loop also runs the enrollment expiry sweep
every EXPIRY_SWEEP_SECONDS.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine
from typing import Any

from app.core.config import SETTINGS
from app.core.logging import setup_logging
from app.core.metrics import QUEUE_DEPTH, WORKER_TASKS
from app.services import jobs
from app.services.enrollment_service import (
    COURSE_ACCESS_QUEUE,
    EMAILS_QUEUE,
    enrollment_service,
)
from app.services.events import EVENTS_QUEUE, dispatch
from app.services.task_queue import MAX_ATTEMPTS, Task, TaskQueue, task_queue

TaskHandler = Callable[[dict], Coroutine[Any, Any, Any]]

logger = logging.getLogger(__name__)


HANDLERS: dict[str, TaskHandler] = {}


def register_handler(queue: str, handler: TaskHandler) -> None:
    HANDLERS[queue] = handler


register_handler(EMAILS_QUEUE, jobs.send_welcome_email)
register_handler(COURSE_ACCESS_QUEUE, jobs.process_course_access)
register_handler(EVENTS_QUEUE, dispatch)


async def run_task(queue: TaskQueue, task: Task) -> str:
    """Run one task; returns the outcome label ("ok", "retried" or "dead")."""
    handler = HANDLERS[task.queue]
    extra = {"task_id": task.id, "queue": task.queue, "attempt": task.attempts + 1}
    try:
        await handler(task.payload)
    except Exception:
        if task.attempts + 1 < MAX_ATTEMPTS:
            logger.warning("Task failed, requeueing", exc_info=True, extra=extra)
            await queue.requeue(task)
            outcome = "retried"
        else:
            logger.exception("Task failed permanently", extra=extra)
            outcome = "dead"
    else:
        logger.info("Task completed", extra=extra)
        outcome = "ok"
    WORKER_TASKS.labels(queue_name=task.queue, result=outcome).inc()
    return outcome


async def poll_once(queue: TaskQueue, timeout: int = 1) -> int:
    """One round-robin pass over every registered queue."""
    processed = 0
    for queue_name in HANDLERS:
        task = await queue.dequeue(queue_name, timeout=timeout)
        QUEUE_DEPTH.labels(queue_name=queue_name).set(await queue.queue_length(queue_name))
        if task is None:
            continue
        await run_task(queue, task)
        processed += 1
    return processed


async def run_worker() -> None:
    logger.info("Worker started, listening on queues: %s", list(HANDLERS))
    next_sweep = time.monotonic()
    while True:
        if time.monotonic() >= next_sweep:
            try:
                await enrollment_service.expire_overdue()
            except Exception:
                logger.exception("Expiry sweep failed")
            next_sweep = time.monotonic() + SETTINGS.expiry_sweep_seconds
        await poll_once(task_queue)


if __name__ == "__main__":
    setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
    asyncio.run(run_worker())
