from __future__ import annotations

import asyncio

import pytest

from app.services import events
from app.services.events import EVENTS_QUEUE, STUDENT_ENROLLED, EventBus, dispatch
from app.services.jobs import notify_instructors
from app.services.task_queue import InMemoryTaskQueue


def test_publish_enqueues_on_events_queue() -> None:
    queue = InMemoryTaskQueue()
    task = asyncio.run(EventBus(queue).publish("course_updated", {"course_id": 7}))

    assert task.queue == EVENTS_QUEUE
    assert task.payload == {"name": "course_updated", "data": {"course_id": 7}}
    assert asyncio.run(queue.queue_length(EVENTS_QUEUE)) == 1


def test_dispatch_runs_every_listener(monkeypatch) -> None:
    received: list[tuple[str, dict]] = []

    async def first(data: dict) -> None:
        received.append(("first", data))

    async def second(data: dict) -> None:
        received.append(("second", data))

    monkeypatch.setitem(events.LISTENERS, "course_updated", [first, second])

    count = asyncio.run(dispatch({"name": "course_updated", "data": {"course_id": 7}}))

    assert count == 2
    assert [name for name, _ in received] == ["first", "second"]


def test_dispatch_without_listeners_is_a_noop() -> None:
    assert asyncio.run(dispatch({"name": "nobody_listens", "data": {}})) == 0


def test_failing_listener_propagates(monkeypatch) -> None:
    async def broken(data: dict) -> None:
        raise RuntimeError("listener down")

    monkeypatch.setitem(events.LISTENERS, "course_updated", [broken])

    with pytest.raises(RuntimeError):
        asyncio.run(dispatch({"name": "course_updated", "data": {}}))


def test_instructors_are_notified_of_enrollments(caplog) -> None:
    assert notify_instructors in events.LISTENERS[STUDENT_ENROLLED]
    data = {
        "enrollment_id": 1,
        "student": {"id": 1, "name": "Ada Lovelace", "email": "ada@example.com"},
        "course": {"id": 3, "code": "PY-101", "title": "Python"},
    }

    with caplog.at_level("INFO", logger="app.services.jobs"):
        asyncio.run(dispatch({"name": STUDENT_ENROLLED, "data": data}))

    assert "Ada Lovelace has enrolled in Python" in caplog.text
