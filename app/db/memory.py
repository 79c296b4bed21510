"""In-memory tables used when DATABASE_URL is not configured.

One InMemoryDatabase instance is shared by the in-memory course repo and
the in-memory enrollment store, the same way both Pg implementations
share one PostgreSQL database.  Values are frozen domain dataclasses, so
a reader can never observe a half-applied update: a transaction stages
its writes and swaps whole objects in at commit.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import replace

from app.models.course import Course, Lesson, Module
from app.models.enrollment import Enrollment, LessonProgress, Payment
from app.models.student import Student


class InMemoryDatabase:
    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.courses: dict[int, Course] = {}
        self.modules: dict[int, Module] = {}
        self.lessons: dict[int, Lesson] = {}
        self.students: dict[int, Student] = {}
        self.enrollments: dict[int, Enrollment] = {}
        self.payments: dict[int, Payment] = {}
        self.lesson_progress: dict[int, LessonProgress] = {}
        self._sequences: dict[str, itertools.count] = {}
        self._row_locks: dict[tuple[str, int], asyncio.Lock] = {}

    def next_id(self, table: str) -> int:
        """Allocate a primary key.  Like a database sequence, ids handed
        out to a transaction that later rolls back are not reused."""
        seq = self._sequences.setdefault(table, itertools.count(1))
        return next(seq)

    def row_lock(self, table: str, row_id: int) -> asyncio.Lock:
        """The in-memory stand-in for SELECT ... FOR UPDATE on one row."""
        key = (table, row_id)
        lock = self._row_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._row_locks[key] = lock
        return lock

    # --- Catalog setup (seed data and tests) ---

    def add_course(self, course: Course) -> Course:
        if course.id == 0:
            course = replace(course, id=self.next_id("courses"))
        self.courses[course.id] = course
        return course

    def add_module(self, module: Module) -> Module:
        if module.id == 0:
            module = replace(module, id=self.next_id("modules"))
        self.modules[module.id] = module
        return module

    def add_lesson(self, lesson: Lesson) -> Lesson:
        if lesson.id == 0:
            lesson = replace(lesson, id=self.next_id("lessons"))
        self.lessons[lesson.id] = lesson
        return lesson


memory_db = InMemoryDatabase()
