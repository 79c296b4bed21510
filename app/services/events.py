"""Domain events.

Events are published onto the "events" task queue as
``{"name": ..., "data": {...}}`` and fanned out by the worker to every
listener registered for that name.  Publishing happens only from an
outbox flush, i.e. after the transaction that produced the event has
committed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Coroutine
from typing import Any

from app.services.task_queue import Task, TaskQueue

logger = logging.getLogger(__name__)

EVENTS_QUEUE = "events"
STUDENT_ENROLLED = "student_enrolled"

EventListener = Callable[[dict], Coroutine[Any, Any, None]]

LISTENERS: dict[str, list[EventListener]] = {}


def listens_to(name: str):
    """Decorator: register a coroutine as a listener for an event name."""

    def decorator(func: EventListener) -> EventListener:
        LISTENERS.setdefault(name, []).append(func)
        return func

    return decorator


class EventBus:
    def __init__(self, queue: TaskQueue) -> None:
        self._queue = queue

    async def publish(self, name: str, data: dict) -> Task:
        task = await self._queue.enqueue(EVENTS_QUEUE, {"name": name, "data": data})
        logger.info("Published event %s", name, extra={"task_id": task.id})
        return task


async def dispatch(payload: dict) -> int:
    """Run every listener for the event in ``payload``.  Returns the count.

    A failing listener propagates, so the worker retries the whole event.
    """
    name = payload["name"]
    listeners = LISTENERS.get(name, [])
    if not listeners:
        logger.debug("No listeners for event %s", name)
    for listener in listeners:
        await listener(payload["data"])
    return len(listeners)
