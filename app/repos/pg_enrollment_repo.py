"""PostgreSQL implementation of EnrollmentStore."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import UTC, datetime

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import TransientStoreError, UniqueViolationError
from app.db.tables import (
    CourseRow,
    EnrollmentRow,
    LessonProgressRow,
    PaymentRow,
    StudentRow,
)
from app.models.course import Course
from app.models.enrollment import ACTIVE, Enrollment, EnrollmentDetail, LessonProgress, Payment
from app.models.student import Student
from app.repos.pg_course_repo import _row_to_course
from app.services.outbox import AfterCommitEffect, TransactionOutbox

logger = logging.getLogger(__name__)

# serialization_failure, deadlock_detected, lock_not_available
_TRANSIENT_SQLSTATES = frozenset({"40001", "40P01", "55P03"})

# Substrings of the driver's error message -> constraint name.  Postgres
# reports the constraint name, SQLite the column list.
_CONSTRAINT_HINTS = (
    ("students_email_key", "student_email"),
    ("students.email", "student_email"),
    ("student_course_unique", "student_course"),
    ("enrollments.student_id, enrollments.course_id", "student_course"),
    ("enrollments_enrollment_number_key", "enrollment_number"),
    ("enrollments.enrollment_number", "enrollment_number"),
    ("payments_enrollment_id_key", "payment_enrollment"),
    ("payments.enrollment_id", "payment_enrollment"),
    ("enrollment_lesson_unique", "enrollment_lesson"),
    ("lesson_progress.enrollment_id, lesson_progress.lesson_id", "enrollment_lesson"),
)


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    state = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if state is None:
        # asyncpg's own exception is chained behind the DBAPI adapter
        state = getattr(getattr(orig, "__cause__", None), "sqlstate", None)
    return state


def _is_transient(exc: DBAPIError) -> bool:
    if _sqlstate(exc) in _TRANSIENT_SQLSTATES:
        return True
    return "database is locked" in str(exc.orig)


def _constraint_name(exc: IntegrityError) -> str:
    message = str(exc.orig)
    for needle, constraint in _CONSTRAINT_HINTS:
        if needle in message:
            return constraint
    return "unknown"


def _aware(moment: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for DateTime(timezone=True)
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment


class PgEnrollmentUnitOfWork:
    """Satisfies EnrollmentUnitOfWork on one session inside BEGIN/COMMIT."""

    def __init__(self, session: AsyncSession, outbox: TransactionOutbox) -> None:
        self._session = session
        self._outbox = outbox

    def after_commit(self, kind: str, effect: AfterCommitEffect) -> None:
        self._outbox.add(kind, effect)

    async def lock_course(self, course_id: int) -> Course | None:
        stmt = select(CourseRow).where(CourseRow.id == course_id).with_for_update()
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return _row_to_course(row) if row is not None else None

    async def lock_enrollment(self, enrollment_id: int) -> Enrollment | None:
        stmt = (
            select(EnrollmentRow)
            .where(EnrollmentRow.id == enrollment_id)
            .with_for_update()
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return _row_to_enrollment(row) if row is not None else None

    async def add_student(self, student: Student) -> Student:
        row = StudentRow(
            email=student.email,
            first_name=student.first_name,
            last_name=student.last_name,
            phone=student.phone,
            date_of_birth=student.date_of_birth,
            address=student.address,
            city=student.city,
            country=student.country,
            postal_code=student.postal_code,
            status=student.status,
            preferences=student.preferences,
            created_at=student.created_at,
        )
        self._session.add(row)
        await self._session.flush()
        return replace(student, id=row.id)

    async def add_enrollment(self, enrollment: Enrollment) -> Enrollment:
        row = EnrollmentRow(
            enrollment_number=enrollment.enrollment_number,
            student_id=enrollment.student_id,
            course_id=enrollment.course_id,
            **_enrollment_values(enrollment),
        )
        self._session.add(row)
        await self._session.flush()
        return replace(enrollment, id=row.id)

    async def add_payment(self, payment: Payment) -> Payment:
        row = PaymentRow(
            transaction_id=payment.transaction_id,
            enrollment_id=payment.enrollment_id,
            amount=payment.amount,
            currency=payment.currency,
            method=payment.method,
            gateway=payment.gateway,
            payment_metadata=payment.metadata,
            **_payment_values(payment),
        )
        self._session.add(row)
        await self._session.flush()
        return replace(payment, id=row.id)

    async def add_lesson_progress(self, progress: LessonProgress) -> LessonProgress:
        row = LessonProgressRow(
            enrollment_id=progress.enrollment_id,
            lesson_id=progress.lesson_id,
            **_progress_values(progress),
        )
        self._session.add(row)
        await self._session.flush()
        return replace(progress, id=row.id)

    async def save_course(self, course: Course) -> None:
        stmt = (
            update(CourseRow)
            .where(CourseRow.id == course.id)
            .values(
                available_slots=course.available_slots,
                enrolled_count=course.enrolled_count,
            )
        )
        await self._session.execute(stmt)

    async def save_enrollment(self, enrollment: Enrollment) -> None:
        stmt = (
            update(EnrollmentRow)
            .where(EnrollmentRow.id == enrollment.id)
            .values(**_enrollment_values(enrollment))
        )
        await self._session.execute(stmt)

    async def save_payment(self, payment: Payment) -> None:
        stmt = (
            update(PaymentRow)
            .where(PaymentRow.id == payment.id)
            .values(**_payment_values(payment))
        )
        await self._session.execute(stmt)

    async def save_lesson_progress(self, progress: LessonProgress) -> None:
        stmt = (
            update(LessonProgressRow)
            .where(LessonProgressRow.id == progress.id)
            .values(**_progress_values(progress))
        )
        await self._session.execute(stmt)

    async def get_payment(self, enrollment_id: int) -> Payment | None:
        stmt = select(PaymentRow).where(PaymentRow.enrollment_id == enrollment_id)
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return _row_to_payment(row) if row is not None else None

    async def list_lesson_progress(self, enrollment_id: int) -> list[LessonProgress]:
        stmt = (
            select(LessonProgressRow)
            .where(LessonProgressRow.enrollment_id == enrollment_id)
            .order_by(LessonProgressRow.id)
        )
        rows = (await self._session.execute(stmt)).scalars().all()
        return [_row_to_progress(row) for row in rows]


class PgEnrollmentStore:
    """Satisfies the EnrollmentStore Protocol using PostgreSQL via SQLAlchemy."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock_timeout: float = 5.0,
    ) -> None:
        self._session_factory = session_factory
        self._lock_timeout_ms = int(lock_timeout * 1000)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PgEnrollmentUnitOfWork]:
        outbox = TransactionOutbox()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    if session.bind.dialect.name == "postgresql":
                        # lock_not_available (55P03) instead of waiting forever
                        await session.execute(
                            text(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
                        )
                    yield PgEnrollmentUnitOfWork(session, outbox)
        except IntegrityError as exc:
            outbox.discard()
            raise UniqueViolationError(_constraint_name(exc)) from exc
        except DBAPIError as exc:
            outbox.discard()
            if _is_transient(exc):
                raise TransientStoreError(str(exc.orig)) from exc
            raise
        except BaseException:
            outbox.discard()
            raise
        await outbox.flush()

    # --- committed-state reads ---

    async def get_detail(self, enrollment_id: int) -> EnrollmentDetail | None:
        async with self._session_factory() as session:
            stmt = (
                select(EnrollmentRow, StudentRow, CourseRow, PaymentRow)
                .join(StudentRow, EnrollmentRow.student_id == StudentRow.id)
                .join(CourseRow, EnrollmentRow.course_id == CourseRow.id)
                .outerjoin(PaymentRow, PaymentRow.enrollment_id == EnrollmentRow.id)
                .where(EnrollmentRow.id == enrollment_id)
            )
            result = (await session.execute(stmt)).first()
            if result is None:
                return None
            progress_stmt = (
                select(LessonProgressRow)
                .where(LessonProgressRow.enrollment_id == enrollment_id)
                .order_by(LessonProgressRow.id)
            )
            progress_rows = (await session.execute(progress_stmt)).scalars().all()

        enrollment_row, student_row, course_row, payment_row = result
        return EnrollmentDetail(
            enrollment=_row_to_enrollment(enrollment_row),
            student=_row_to_student(student_row),
            course=_row_to_course(course_row),
            payment=_row_to_payment(payment_row) if payment_row is not None else None,
            lesson_progress=tuple(_row_to_progress(row) for row in progress_rows),
        )

    async def list_enrollments(
        self, status: str | None, page: int, per_page: int
    ) -> tuple[list[EnrollmentDetail], int]:
        conditions = [EnrollmentRow.status == status] if status else []
        count_stmt = select(func.count()).select_from(EnrollmentRow).where(*conditions)
        page_stmt = (
            select(EnrollmentRow, StudentRow, CourseRow, PaymentRow)
            .join(StudentRow, EnrollmentRow.student_id == StudentRow.id)
            .join(CourseRow, EnrollmentRow.course_id == CourseRow.id)
            .outerjoin(PaymentRow, PaymentRow.enrollment_id == EnrollmentRow.id)
            .where(*conditions)
            .order_by(EnrollmentRow.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        async with self._session_factory() as session:
            total = (await session.execute(count_stmt)).scalar_one()
            rows = (await session.execute(page_stmt)).all()

        items = [
            EnrollmentDetail(
                enrollment=_row_to_enrollment(e),
                student=_row_to_student(s),
                course=_row_to_course(c),
                payment=_row_to_payment(p) if p is not None else None,
            )
            for e, s, c, p in rows
        ]
        return items, total

    async def find_student_by_email(self, email: str) -> Student | None:
        stmt = select(StudentRow).where(StudentRow.email == email)
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _row_to_student(row) if row is not None else None

    async def find_enrollment(self, student_id: int, course_id: int) -> Enrollment | None:
        stmt = select(EnrollmentRow).where(
            EnrollmentRow.student_id == student_id,
            EnrollmentRow.course_id == course_id,
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _row_to_enrollment(row) if row is not None else None

    async def list_overdue(self, now: datetime, limit: int = 100) -> list[Enrollment]:
        stmt = (
            select(EnrollmentRow)
            .where(EnrollmentRow.status == ACTIVE, EnrollmentRow.expires_at <= now)
            .order_by(EnrollmentRow.id)
            .limit(limit)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_row_to_enrollment(row) for row in rows]


# ---------------------------------------------------------------------------
# Row <-> dataclass
# ---------------------------------------------------------------------------


def _enrollment_values(enrollment: Enrollment) -> dict:
    return {
        "status": enrollment.status,
        "amount_paid": enrollment.amount_paid,
        "discount_applied": enrollment.discount_applied,
        "coupon_code": enrollment.coupon_code,
        "enrolled_at": enrollment.enrolled_at,
        "started_at": enrollment.started_at,
        "completed_at": enrollment.completed_at,
        "expires_at": enrollment.expires_at,
        "progress_percentage": enrollment.progress_percentage,
        "custom_fields": enrollment.custom_fields,
        "notes": enrollment.notes,
    }


def _payment_values(payment: Payment) -> dict:
    return {
        "status": payment.status,
        "gateway_transaction_id": payment.gateway_transaction_id,
        "paid_at": payment.paid_at,
    }


def _progress_values(progress: LessonProgress) -> dict:
    return {
        "is_completed": progress.is_completed,
        "time_spent_minutes": progress.time_spent_minutes,
        "attempts": progress.attempts,
        "score": progress.score,
        "started_at": progress.started_at,
        "completed_at": progress.completed_at,
        "data": progress.data,
    }


def _row_to_student(row: StudentRow) -> Student:
    return Student(
        id=row.id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        phone=row.phone,
        date_of_birth=row.date_of_birth,
        address=row.address,
        city=row.city,
        country=row.country,
        postal_code=row.postal_code,
        status=row.status,
        preferences=row.preferences,
        created_at=_aware(row.created_at),
    )


def _row_to_enrollment(row: EnrollmentRow) -> Enrollment:
    return Enrollment(
        id=row.id,
        enrollment_number=row.enrollment_number,
        student_id=row.student_id,
        course_id=row.course_id,
        amount_paid=row.amount_paid,
        status=row.status,
        discount_applied=row.discount_applied,
        coupon_code=row.coupon_code,
        enrolled_at=_aware(row.enrolled_at),
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        expires_at=_aware(row.expires_at),
        progress_percentage=row.progress_percentage,
        custom_fields=row.custom_fields,
        notes=row.notes,
    )


def _row_to_payment(row: PaymentRow) -> Payment:
    return Payment(
        id=row.id,
        transaction_id=row.transaction_id,
        amount=row.amount,
        currency=row.currency,
        method=row.method,
        status=row.status,
        enrollment_id=row.enrollment_id,
        gateway=row.gateway,
        gateway_transaction_id=row.gateway_transaction_id,
        metadata=row.payment_metadata,
        paid_at=_aware(row.paid_at),
    )


def _row_to_progress(row: LessonProgressRow) -> LessonProgress:
    return LessonProgress(
        id=row.id,
        enrollment_id=row.enrollment_id,
        lesson_id=row.lesson_id,
        is_completed=row.is_completed,
        time_spent_minutes=row.time_spent_minutes,
        attempts=row.attempts,
        score=row.score,
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        data=row.data,
    )
