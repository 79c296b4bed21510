"""Enrollment orchestration.

ENROLL
------
  1. Preconditions against committed state, before any transaction:
     course exists / published / has a seat, coupon known, amount matches
     the quote, unlock plan belongs to the course, email not taken.
  2. One unit of work:
       insert student
       lock course row  (SELECT ... FOR UPDATE)
       re-check published + seat under the lock
       charge the gateway; a decline rolls everything back
       insert enrollment, payment, seeded lesson progress
       take the seat
       register after-commit effects
     COMMIT
  3. After commit (outbox flush): cache invalidation, "emails" and
     "course_access" jobs, student_enrolled event.

The lock in step 2 is the only thing standing between two requests and
the last seat.  The re-check under the lock is what makes the step-1
check safe to do without it: a stale "1 seat left" read simply fails
later with COURSE_FULL.

Transient store failures (lock timeout, deadlock, serialization failure)
retry the whole unit of work up to ``max_attempts`` times.  Every
attempt starts from scratch, so a retried attempt cannot leave rows from
an earlier one behind.  Every attempt charges under the same transaction
id, which the gateway treats as an idempotency key; an enroll that fails
for good after a capture refunds it.  Cancellation and lesson progress
retry the same way.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from functools import partial
from typing import TypeVar

from app.core.config import SETTINGS
from app.core.errors import (
    AlreadyEnrolledError,
    CourseFullError,
    CourseNotAvailableError,
    CourseNotFoundError,
    EnrollmentError,
    EnrollmentNotFoundError,
    InvalidCouponError,
    InvalidTransitionError,
    InvalidUnlockPlanError,
    PaymentFailedError,
    PriceMismatchError,
    StudentExistsError,
    TransientEnrollmentError,
    TransientStoreError,
    UniqueViolationError,
)
from app.core.metrics import ENROLLMENT_DURATION, ENROLLMENT_OUTCOMES, TRANSACTION_RETRIES
from app.db.stores import course_repo, enrollment_store
from app.models.course import Course
from app.models.enrollment import (
    ACTIVE,
    CANCELLED,
    COMPLETED,
    EXPIRED,
    Enrollment,
    LessonProgress,
    Payment,
    generate_enrollment_number,
    generate_transaction_id,
)
from app.models.student import Student
from app.repos.course_repo import CourseRepo
from app.repos.enrollment_repo import EnrollmentStore, EnrollmentUnitOfWork
from app.schemas.enrollment import EnrollmentRequest, ModuleUnlockIn, StudentIn
from app.services import cache as cache_keys
from app.services.cache import CacheService, cache_service
from app.services.events import STUDENT_ENROLLED, EventBus
from app.services.payment_gateway import (
    Charge,
    PaymentDeclined,
    PaymentGateway,
    payment_gateway,
)
from app.services.pricing import (
    CouponPercentagePolicy,
    DiscountPolicy,
    Quote,
    UnknownCoupon,
    quote,
    to_money,
)
from app.services.task_queue import TaskQueue, task_queue

logger = logging.getLogger(__name__)

EMAILS_QUEUE = "emails"
COURSE_ACCESS_QUEUE = "course_access"

_RETRY_BACKOFF_SECONDS = 0.01

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class EnrollmentResult:
    enrollment: Enrollment
    student: Student
    course: Course  # post-commit seat counts
    payment: Payment
    lesson_progress: tuple[LessonProgress, ...]
    processing_time_ms: float
    attempts: int


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_student(data: StudentIn, now: datetime) -> Student:
    address = data.address
    prefs = data.preferences
    return Student(
        id=0,
        email=data.email,
        first_name=data.first_name,
        last_name=data.last_name,
        phone=data.phone,
        date_of_birth=data.date_of_birth,
        address=address.one_line() if address else None,
        city=address.city if address else None,
        country=address.country if address else None,
        postal_code=address.postal_code if address else None,
        preferences=prefs.model_dump(exclude_none=True) if prefs else None,
        created_at=now,
    )


def _unique_violation_error(exc: UniqueViolationError) -> EnrollmentError:
    if exc.constraint == "student_email":
        return StudentExistsError(errors={"student.email": [StudentExistsError.default_message]})
    if exc.constraint == "student_course":
        return AlreadyEnrolledError()
    return EnrollmentError()


class EnrollmentService:
    def __init__(
        self,
        *,
        store: EnrollmentStore,
        courses: CourseRepo,
        cache: CacheService,
        queue: TaskQueue,
        gateway: PaymentGateway,
        discounts: DiscountPolicy,
        max_attempts: int = 5,
        expose_errors: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._courses = courses
        self._cache = cache
        self._queue = queue
        self._events = EventBus(queue)
        self._gateway = gateway
        self._discounts = discounts
        self._max_attempts = max_attempts
        self._expose_errors = expose_errors
        self._clock = clock

    # ------------------------------------------------------------------
    # Enroll
    # ------------------------------------------------------------------

    async def enroll(self, request: EnrollmentRequest) -> EnrollmentResult:
        started = time.perf_counter()
        try:
            result = await self._enroll(request, started)
        except EnrollmentError as exc:
            ENROLLMENT_OUTCOMES.labels(outcome=exc.error_code.lower()).inc()
            logger.info(
                "Enrollment rejected: %s",
                exc.message,
                extra={"error_code": exc.error_code},
            )
            raise
        except Exception as exc:
            ENROLLMENT_OUTCOMES.labels(outcome="enrollment_failed").inc()
            logger.exception("Enrollment failed unexpectedly")
            message = f"Enrollment failed: {exc}" if self._expose_errors else None
            raise EnrollmentError(message) from exc

        ENROLLMENT_OUTCOMES.labels(outcome="created").inc()
        ENROLLMENT_DURATION.observe(time.perf_counter() - started)
        logger.info(
            "Enrollment %s created",
            result.enrollment.enrollment_number,
            extra={
                "enrollment_id": result.enrollment.id,
                "course_id": result.course.id,
                "student_id": result.student.id,
                "attempt": result.attempts,
            },
        )
        return result

    async def _enroll(self, request: EnrollmentRequest, started: float) -> EnrollmentResult:
        course = await self._courses.get_by_code(request.course.code)
        if course is None:
            raise CourseNotFoundError(
                errors={"course.code": ["The specified course code does not exist."]}
            )
        _check_bookable(course)
        price = self._quote(course, request)
        seeds = await self._unlock_plan(course, request.enrollment.modules or [])
        await self._check_student(request.student.email, course.id)

        # one id for every attempt: the gateway's idempotency key
        transaction_id = generate_transaction_id(self._clock())
        try:
            return await self._with_retries(
                "enrollment",
                lambda attempt: self._enroll_once(
                    request,
                    course.id,
                    price,
                    seeds,
                    transaction_id=transaction_id,
                    started=started,
                    attempt=attempt,
                ),
                course_id=course.id,
            )
        except UniqueViolationError as exc:
            await self._refund_uncommitted(transaction_id)
            raise _unique_violation_error(exc) from exc
        except Exception:
            await self._refund_uncommitted(transaction_id)
            raise

    async def _with_retries(
        self,
        operation: str,
        attempt_once: Callable[[int], Awaitable[T]],
        **context: int,
    ) -> T:
        """Run one unit of work, retrying it on transient store failures.

        Exhausted retries surface as TransientEnrollmentError (503).
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await attempt_once(attempt)
            except TransientStoreError as exc:
                if attempt >= self._max_attempts:
                    logger.error(
                        "%s gave up after %d attempts: %s",
                        operation.capitalize(),
                        attempt,
                        exc,
                        extra={**context, "attempt": attempt},
                    )
                    raise TransientEnrollmentError() from exc
                TRANSACTION_RETRIES.inc()
                logger.warning(
                    "Transient store failure, retrying %s: %s",
                    operation,
                    exc,
                    extra={**context, "attempt": attempt},
                )
                await asyncio.sleep(_RETRY_BACKOFF_SECONDS * attempt)

    async def _refund_uncommitted(self, transaction_id: str) -> None:
        """Give back a capture whose enrollment never committed.

        Called on the way out of a failed enroll; the caller re-raises the
        original error, so a refund failure is logged rather than raised.
        """
        try:
            refunded = await self._gateway.refund(transaction_id)
        except Exception:
            logger.exception("Refund of uncommitted transaction %s failed", transaction_id)
            return
        if refunded:
            logger.warning(
                "Refunded transaction %s: its enrollment did not commit", transaction_id
            )

    def _quote(self, course: Course, request: EnrollmentRequest) -> Quote:
        payment = request.payment
        try:
            price = quote(course.effective_price, self._discounts, payment.coupon_code)
        except UnknownCoupon:
            raise InvalidCouponError(
                errors={"payment.coupon_code": ["The coupon code is not valid."]}
            ) from None
        if not price.matches(payment.amount):
            raise PriceMismatchError(
                errors={
                    "payment.amount": [
                        "Payment amount does not match the course price. "
                        f"Expected: {price.amount_due} {payment.currency}"
                    ]
                }
            )
        return price

    async def _unlock_plan(
        self, course: Course, modules: list[ModuleUnlockIn]
    ) -> dict[int, dict]:
        """Map lesson_id -> progress ``data`` for every lesson the plan names.

        A lesson named twice is seeded once, with the first entry's settings.
        """
        if not modules:
            return {}
        outline = await self._courses.outline(course.id)
        lessons_by_module = {o.module.id: {les.id for les in o.lessons} for o in outline}

        errors: dict[str, list[str]] = {}
        seeds: dict[int, dict] = {}
        for i, module in enumerate(modules):
            course_lessons = lessons_by_module.get(module.module_id)
            if course_lessons is None:
                errors[f"enrollment.modules.{i}.module_id"] = [
                    "Module does not belong to this course."
                ]
                continue
            for j, lesson in enumerate(module.lessons or []):
                if lesson.lesson_id not in course_lessons:
                    errors[f"enrollment.modules.{i}.lessons.{j}.lesson_id"] = [
                        "Lesson does not belong to this module."
                    ]
                    continue
                seeds.setdefault(
                    lesson.lesson_id,
                    {
                        "is_mandatory": lesson.is_mandatory is not False,
                        "unlock_immediately": module.unlock_immediately is not False,
                        "unlock_date": (
                            module.unlock_date.isoformat() if module.unlock_date else None
                        ),
                    },
                )
        if errors:
            raise InvalidUnlockPlanError(errors=errors)
        return seeds

    async def _check_student(self, email: str, course_id: int) -> None:
        existing = await self._store.find_student_by_email(email)
        if existing is None:
            return
        enrollment = await self._store.find_enrollment(existing.id, course_id)
        if enrollment is not None and enrollment.status != CANCELLED:
            raise AlreadyEnrolledError()
        raise StudentExistsError(errors={"student.email": [StudentExistsError.default_message]})

    async def _enroll_once(
        self,
        request: EnrollmentRequest,
        course_id: int,
        price: Quote,
        seeds: dict[int, dict],
        *,
        transaction_id: str,
        started: float,
        attempt: int,
    ) -> EnrollmentResult:
        now = self._clock()
        options = request.enrollment
        pay = request.payment

        async with self._store.transaction() as uow:
            student = await uow.add_student(_new_student(request.student, now))

            course = await uow.lock_course(course_id)
            if course is None:
                raise CourseNotFoundError()
            _check_bookable(course)

            payment = Payment(
                id=0,
                transaction_id=transaction_id,
                amount=to_money(pay.amount),
                currency=pay.currency,
                method=pay.method,
                metadata=_payment_metadata(request),
            )
            try:
                charged = await self._gateway.charge(
                    Charge(
                        amount=payment.amount,
                        currency=payment.currency,
                        method=payment.method,
                        transaction_id=payment.transaction_id,
                        card_last_four=pay.card.last_four if pay.card else None,
                    )
                )
            except PaymentDeclined as exc:
                raise PaymentFailedError(
                    errors={"payment": [f"Payment was declined: {exc}"]}
                ) from exc
            payment = replace(
                payment.mark_completed(
                    gateway_transaction_id=charged.gateway_transaction_id, now=now
                ),
                gateway=charged.gateway,
            )

            enrollment = Enrollment(
                id=0,
                enrollment_number=generate_enrollment_number(now),
                student_id=student.id,
                course_id=course.id,
                amount_paid=payment.amount,
                discount_applied=price.discount,
                coupon_code=pay.coupon_code.upper() if pay.coupon_code else None,
                enrolled_at=now,
                custom_fields=(
                    [f.model_dump() for f in request.course.custom_fields]
                    if request.course.custom_fields
                    else None
                ),
                notes=options.notes,
            )
            if options.start_immediately:
                enrollment = enrollment.transition(ACTIVE, now=now)
            enrollment = await uow.add_enrollment(enrollment)
            payment = await uow.add_payment(replace(payment, enrollment_id=enrollment.id))

            progress = []
            for lesson_id, data in seeds.items():
                progress.append(
                    await uow.add_lesson_progress(
                        LessonProgress(
                            id=0,
                            enrollment_id=enrollment.id,
                            lesson_id=lesson_id,
                            data=data,
                        )
                    )
                )

            course = course.with_seat_taken()
            await uow.save_course(course)

            self._invalidate_after_commit(uow, course.id)
            if options.send_welcome_email:
                uow.after_commit(
                    "job",
                    partial(self._queue.enqueue, EMAILS_QUEUE, {"enrollment_id": enrollment.id}),
                )
            uow.after_commit(
                "job",
                partial(
                    self._queue.enqueue,
                    COURSE_ACCESS_QUEUE,
                    {"enrollment_id": enrollment.id},
                ),
            )
            uow.after_commit(
                "event",
                partial(
                    self._events.publish,
                    STUDENT_ENROLLED,
                    _enrolled_event(enrollment, student, course),
                ),
            )

        return EnrollmentResult(
            enrollment=enrollment,
            student=student,
            course=course,
            payment=payment,
            lesson_progress=tuple(progress),
            processing_time_ms=round((time.perf_counter() - started) * 1000, 2),
            attempts=attempt,
        )

    def _invalidate_after_commit(self, uow: EnrollmentUnitOfWork, course_id: int) -> None:
        uow.after_commit(
            "cache", partial(self._cache.delete, cache_keys.course_availability_key(course_id))
        )
        uow.after_commit(
            "cache", partial(self._cache.delete, cache_keys.course_details_key(course_id))
        )
        uow.after_commit(
            "cache", partial(self._cache.delete_pattern, cache_keys.COURSE_SEARCH_PATTERN)
        )
        uow.after_commit(
            "cache", partial(self._cache.delete_pattern, cache_keys.ENROLLMENT_LISTS_PATTERN)
        )

    # ------------------------------------------------------------------
    # Lifecycle after enrollment
    # ------------------------------------------------------------------

    async def cancel(self, enrollment_id: int) -> Enrollment:
        """Cancel a pending or active enrollment, refund it and free the seat."""
        cancelled = await self._with_retries(
            "cancellation",
            lambda _attempt: self._cancel_once(enrollment_id),
            enrollment_id=enrollment_id,
        )
        logger.info(
            "Enrollment %s cancelled",
            cancelled.enrollment_number,
            extra={"enrollment_id": cancelled.id, "course_id": cancelled.course_id},
        )
        return cancelled

    async def _cancel_once(self, enrollment_id: int) -> Enrollment:
        now = self._clock()
        async with self._store.transaction() as uow:
            enrollment = await uow.lock_enrollment(enrollment_id)
            if enrollment is None:
                raise EnrollmentNotFoundError()
            try:
                cancelled = enrollment.transition(CANCELLED, now=now)
            except ValueError as exc:
                raise InvalidTransitionError(str(exc)) from exc

            course = await uow.lock_course(enrollment.course_id)
            if course is None:
                raise CourseNotFoundError()
            await uow.save_enrollment(cancelled)
            await uow.save_course(course.with_seat_released())

            payment = await uow.get_payment(enrollment_id)
            if payment is not None and payment.status == "completed":
                # refunds are idempotent per transaction id, so a retried
                # attempt does not refund twice
                await self._gateway.refund(payment.transaction_id)
                await uow.save_payment(replace(payment, status="refunded"))

            self._invalidate_after_commit(uow, course.id)
        return cancelled

    async def record_lesson_progress(
        self,
        enrollment_id: int,
        lesson_id: int,
        *,
        time_spent_minutes: int = 0,
        score: Decimal | None = None,
        completed: bool = False,
    ) -> tuple[Enrollment, LessonProgress]:
        """Upsert one lesson's progress and roll it up into the enrollment.

        Completing the last outstanding lesson completes the enrollment.
        """
        enrollment, progress = await self._with_retries(
            "lesson progress",
            lambda _attempt: self._record_progress_once(
                enrollment_id,
                lesson_id,
                time_spent_minutes=time_spent_minutes,
                score=score,
                completed=completed,
            ),
            enrollment_id=enrollment_id,
        )
        if enrollment.status == COMPLETED:
            logger.info(
                "Enrollment %s completed",
                enrollment.enrollment_number,
                extra={"enrollment_id": enrollment.id},
            )
        return enrollment, progress

    async def _record_progress_once(
        self,
        enrollment_id: int,
        lesson_id: int,
        *,
        time_spent_minutes: int,
        score: Decimal | None,
        completed: bool,
    ) -> tuple[Enrollment, LessonProgress]:
        now = self._clock()
        async with self._store.transaction() as uow:
            enrollment = await uow.lock_enrollment(enrollment_id)
            if enrollment is None:
                raise EnrollmentNotFoundError()
            if enrollment.status != ACTIVE:
                raise InvalidTransitionError(
                    f"Progress can only be recorded for active enrollments "
                    f"(this one is {enrollment.status})."
                )

            course_lessons = {
                les.id
                for o in await self._courses.outline(enrollment.course_id)
                for les in o.lessons
            }
            if lesson_id not in course_lessons:
                raise InvalidUnlockPlanError(
                    errors={"lesson_id": ["Lesson does not belong to this course."]}
                )

            rows = {p.lesson_id: p for p in await uow.list_lesson_progress(enrollment_id)}
            current = rows.get(lesson_id)
            if current is None:
                current = await uow.add_lesson_progress(
                    LessonProgress(
                        id=0,
                        enrollment_id=enrollment_id,
                        lesson_id=lesson_id,
                        started_at=now,
                    )
                )
            updated = replace(
                current,
                attempts=current.attempts + 1,
                time_spent_minutes=current.time_spent_minutes + time_spent_minutes,
                score=score if score is not None else current.score,
                started_at=current.started_at or now,
            )
            if completed and not updated.is_completed:
                updated = replace(updated, is_completed=True, completed_at=now)
            await uow.save_lesson_progress(updated)
            rows[lesson_id] = updated

            done = sum(
                1 for lid, p in rows.items() if p.is_completed and lid in course_lessons
            )
            percentage = int(done * 100 / len(course_lessons))
            enrollment = replace(enrollment, progress_percentage=percentage)
            if done == len(course_lessons):
                enrollment = enrollment.transition(COMPLETED, now=now)
            await uow.save_enrollment(enrollment)

            uow.after_commit(
                "cache",
                partial(self._cache.delete_pattern, cache_keys.ENROLLMENT_LISTS_PATTERN),
            )
        return enrollment, updated

    async def expire_overdue(self, now: datetime | None = None) -> int:
        """Move active enrollments past ``expires_at`` to expired."""
        now = now or self._clock()
        expired = 0
        for candidate in await self._store.list_overdue(now):
            async with self._store.transaction() as uow:
                enrollment = await uow.lock_enrollment(candidate.id)
                # re-check under the lock; it may have been cancelled meanwhile
                if enrollment is None or not enrollment.is_expired_at(now):
                    continue
                await uow.save_enrollment(enrollment.transition(EXPIRED, now=now))
                uow.after_commit(
                    "cache",
                    partial(self._cache.delete_pattern, cache_keys.ENROLLMENT_LISTS_PATTERN),
                )
            expired += 1
        if expired:
            logger.info("Expired %d enrollments", expired)
        return expired


def _check_bookable(course: Course) -> None:
    if not course.is_published():
        raise CourseNotAvailableError(
            errors={"course.code": [CourseNotAvailableError.default_message]}
        )
    if not course.has_available_slots():
        raise CourseFullError(errors={"course.code": [CourseFullError.default_message]})


def _payment_metadata(request: EnrollmentRequest) -> dict:
    pay = request.payment
    meta = request.metadata
    billing = pay.billing_address
    return {
        "card_last_four": pay.card.last_four if pay.card else None,
        "billing_address": billing.model_dump(exclude_none=True) if billing else None,
        "ip_address": str(meta.ip_address) if meta and meta.ip_address else None,
        "user_agent": meta.user_agent if meta else None,
    }


def _enrolled_event(enrollment: Enrollment, student: Student, course: Course) -> dict:
    return {
        "enrollment_id": enrollment.id,
        "enrollment_number": enrollment.enrollment_number,
        "student": {"id": student.id, "name": student.full_name, "email": student.email},
        "course": {"id": course.id, "code": course.code, "title": course.title},
        "enrolled_at": enrollment.enrolled_at.isoformat() if enrollment.enrolled_at else None,
    }


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

enrollment_service = EnrollmentService(
    store=enrollment_store,
    courses=course_repo,
    cache=cache_service,
    queue=task_queue,
    gateway=payment_gateway,
    discounts=CouponPercentagePolicy(SETTINGS.coupon_codes),
    max_attempts=SETTINGS.enrollment_max_attempts,
    expose_errors=SETTINGS.is_dev,
)
