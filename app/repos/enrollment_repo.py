"""Enrollment store: transactional writes plus committed-state reads.

WRITES go through a unit of work::

    async with enrollment_store.transaction() as uow:
        course = await uow.lock_course(course_id)      # SELECT ... FOR UPDATE
        student = await uow.add_student(student)
        ...
        uow.after_commit("cache", invalidate)

Leaving the block normally commits; an exception rolls everything back.
Effects registered with ``after_commit`` run only once the commit has
succeeded (see app/services/outbox.py).

Both implementations raise the same two store-level errors so the
service can stay backend-agnostic:

  TransientStoreError   lock timeout, deadlock, serialization failure.
                        Safe to retry the whole unit of work.
  UniqueViolationError  a unique key rejected the write; ``constraint``
                        says which one.

READS (get_detail, list_enrollments, ...) always see committed state
only.  They are what the cache loaders call.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Protocol

from app.core.errors import TransientStoreError, UniqueViolationError
from app.db.memory import InMemoryDatabase
from app.models.course import Course
from app.models.enrollment import Enrollment, EnrollmentDetail, LessonProgress, Payment
from app.models.student import Student
from app.services.outbox import AfterCommitEffect, TransactionOutbox


class EnrollmentUnitOfWork(Protocol):
    def after_commit(self, kind: str, effect: AfterCommitEffect) -> None: ...

    async def lock_course(self, course_id: int) -> Course | None: ...
    async def lock_enrollment(self, enrollment_id: int) -> Enrollment | None: ...

    async def add_student(self, student: Student) -> Student: ...
    async def add_enrollment(self, enrollment: Enrollment) -> Enrollment: ...
    async def add_payment(self, payment: Payment) -> Payment: ...
    async def add_lesson_progress(self, progress: LessonProgress) -> LessonProgress: ...

    async def save_course(self, course: Course) -> None: ...
    async def save_enrollment(self, enrollment: Enrollment) -> None: ...
    async def save_payment(self, payment: Payment) -> None: ...
    async def save_lesson_progress(self, progress: LessonProgress) -> None: ...

    async def get_payment(self, enrollment_id: int) -> Payment | None: ...
    async def list_lesson_progress(self, enrollment_id: int) -> list[LessonProgress]: ...


class EnrollmentStore(Protocol):
    def transaction(self) -> Any: ...  # async context manager -> EnrollmentUnitOfWork

    async def get_detail(self, enrollment_id: int) -> EnrollmentDetail | None: ...
    async def list_enrollments(
        self, status: str | None, page: int, per_page: int
    ) -> tuple[list[EnrollmentDetail], int]: ...
    async def find_student_by_email(self, email: str) -> Student | None: ...
    async def find_enrollment(self, student_id: int, course_id: int) -> Enrollment | None: ...
    async def list_overdue(self, now: datetime, limit: int = 100) -> list[Enrollment]: ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

# (table, constraint name, key function)
_UNIQUE_KEYS: tuple[tuple[str, str, Callable[[Any], object]], ...] = (
    ("students", "student_email", lambda s: s.email),
    ("enrollments", "student_course", lambda e: (e.student_id, e.course_id)),
    ("enrollments", "enrollment_number", lambda e: e.enrollment_number),
    ("payments", "payment_enrollment", lambda p: p.enrollment_id),
    ("lesson_progress", "enrollment_lesson", lambda p: (p.enrollment_id, p.lesson_id)),
)

_TABLES = ("students", "courses", "enrollments", "payments", "lesson_progress")


class InMemoryEnrollmentUnitOfWork:
    """Stages writes and applies them all at once in ``commit()``.

    ``commit()`` never awaits, so no other coroutine can interleave with
    it: readers see either none or all of a transaction's writes.
    """

    def __init__(
        self,
        db: InMemoryDatabase,
        outbox: TransactionOutbox,
        lock_timeout: float,
    ) -> None:
        self._db = db
        self._outbox = outbox
        self._lock_timeout = lock_timeout
        self._held: list[asyncio.Lock] = []
        self._staged: dict[str, dict[int, Any]] = {t: {} for t in _TABLES}

    def after_commit(self, kind: str, effect: AfterCommitEffect) -> None:
        self._outbox.add(kind, effect)

    # --- locking ---

    async def _acquire(self, table: str, row_id: int) -> None:
        lock = self._db.row_lock(table, row_id)
        if lock in self._held:
            return
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self._lock_timeout)
        except TimeoutError:
            raise TransientStoreError(
                f"lock wait timeout on {table} id={row_id}"
            ) from None
        self._held.append(lock)

    def release(self) -> None:
        while self._held:
            self._held.pop().release()

    async def lock_course(self, course_id: int) -> Course | None:
        await self._acquire("courses", course_id)
        return self._read("courses", course_id)

    async def lock_enrollment(self, enrollment_id: int) -> Enrollment | None:
        await self._acquire("enrollments", enrollment_id)
        return self._read("enrollments", enrollment_id)

    # --- reads through the staged view ---

    def _merged(self, table: str) -> dict[int, Any]:
        return {**getattr(self._db, table), **self._staged[table]}

    def _read(self, table: str, row_id: int) -> Any:
        staged = self._staged[table].get(row_id)
        if staged is not None:
            return staged
        return getattr(self._db, table).get(row_id)

    async def get_payment(self, enrollment_id: int) -> Payment | None:
        for payment in self._merged("payments").values():
            if payment.enrollment_id == enrollment_id:
                return payment
        return None

    async def list_lesson_progress(self, enrollment_id: int) -> list[LessonProgress]:
        rows = [
            p
            for p in self._merged("lesson_progress").values()
            if p.enrollment_id == enrollment_id
        ]
        return sorted(rows, key=lambda p: p.id)

    # --- writes ---

    def _insert(self, table: str, obj: Any) -> Any:
        obj = replace(obj, id=self._db.next_id(table))
        self._staged[table][obj.id] = obj
        return obj

    async def add_student(self, student: Student) -> Student:
        return self._insert("students", student)

    async def add_enrollment(self, enrollment: Enrollment) -> Enrollment:
        return self._insert("enrollments", enrollment)

    async def add_payment(self, payment: Payment) -> Payment:
        return self._insert("payments", payment)

    async def add_lesson_progress(self, progress: LessonProgress) -> LessonProgress:
        return self._insert("lesson_progress", progress)

    async def save_course(self, course: Course) -> None:
        self._staged["courses"][course.id] = course

    async def save_enrollment(self, enrollment: Enrollment) -> None:
        self._staged["enrollments"][enrollment.id] = enrollment

    async def save_payment(self, payment: Payment) -> None:
        self._staged["payments"][payment.id] = payment

    async def save_lesson_progress(self, progress: LessonProgress) -> None:
        self._staged["lesson_progress"][progress.id] = progress

    # --- commit ---

    def _check_unique(self) -> None:
        for table, constraint, key in _UNIQUE_KEYS:
            if not self._staged[table]:
                continue
            seen: set[object] = set()
            for row in self._merged(table).values():
                value = key(row)
                if value in seen:
                    raise UniqueViolationError(constraint)
                seen.add(value)

    def commit(self) -> None:
        self._check_unique()
        for table, rows in self._staged.items():
            getattr(self._db, table).update(rows)
            rows.clear()


class InMemoryEnrollmentStore:
    def __init__(self, db: InMemoryDatabase, lock_timeout: float = 5.0) -> None:
        self._db = db
        self._lock_timeout = lock_timeout

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryEnrollmentUnitOfWork]:
        outbox = TransactionOutbox()
        uow = InMemoryEnrollmentUnitOfWork(self._db, outbox, self._lock_timeout)
        try:
            yield uow
            uow.commit()
        except BaseException:
            outbox.discard()
            raise
        finally:
            uow.release()
        await outbox.flush()

    def _detail(self, enrollment: Enrollment, *, with_progress: bool) -> EnrollmentDetail:
        payment = next(
            (p for p in self._db.payments.values() if p.enrollment_id == enrollment.id),
            None,
        )
        progress: tuple[LessonProgress, ...] = ()
        if with_progress:
            progress = tuple(
                sorted(
                    (
                        p
                        for p in self._db.lesson_progress.values()
                        if p.enrollment_id == enrollment.id
                    ),
                    key=lambda p: p.id,
                )
            )
        return EnrollmentDetail(
            enrollment=enrollment,
            student=self._db.students[enrollment.student_id],
            course=self._db.courses[enrollment.course_id],
            payment=payment,
            lesson_progress=progress,
        )

    async def get_detail(self, enrollment_id: int) -> EnrollmentDetail | None:
        enrollment = self._db.enrollments.get(enrollment_id)
        if enrollment is None:
            return None
        return self._detail(enrollment, with_progress=True)

    async def list_enrollments(
        self, status: str | None, page: int, per_page: int
    ) -> tuple[list[EnrollmentDetail], int]:
        rows = [
            e
            for e in self._db.enrollments.values()
            if status is None or e.status == status
        ]
        rows.sort(key=lambda e: e.id, reverse=True)
        start = (page - 1) * per_page
        items = [
            self._detail(e, with_progress=False) for e in rows[start : start + per_page]
        ]
        return items, len(rows)

    async def find_student_by_email(self, email: str) -> Student | None:
        for student in self._db.students.values():
            if student.email == email:
                return student
        return None

    async def find_enrollment(self, student_id: int, course_id: int) -> Enrollment | None:
        for enrollment in self._db.enrollments.values():
            if enrollment.student_id == student_id and enrollment.course_id == course_id:
                return enrollment
        return None

    async def list_overdue(self, now: datetime, limit: int = 100) -> list[Enrollment]:
        overdue = [e for e in self._db.enrollments.values() if e.is_expired_at(now)]
        overdue.sort(key=lambda e: e.id)
        return overdue[:limit]
