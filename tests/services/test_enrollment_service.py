"""EnrollmentService tests against the in-memory store.

Every test builds its own service from the fixtures in conftest.py, so
the queue, cache and gateway seen here are private to the test.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal

import pytest
from prometheus_client import REGISTRY

from app.core.errors import (
    AlreadyEnrolledError,
    CourseFullError,
    CourseNotAvailableError,
    CourseNotFoundError,
    EnrollmentError,
    InvalidCouponError,
    InvalidUnlockPlanError,
    PaymentFailedError,
    PriceMismatchError,
    StudentExistsError,
    TransientEnrollmentError,
    TransientStoreError,
    UniqueViolationError,
)
from app.db.memory import memory_db
from app.models.enrollment import ACTIVE, CANCELLED, PENDING
from app.repos.enrollment_repo import InMemoryEnrollmentStore
from app.schemas.enrollment import EnrollmentRequest
from app.services import cache as cache_keys
from app.services.enrollment_service import (
    COURSE_ACCESS_QUEUE,
    EMAILS_QUEUE,
    EnrollmentResult,
    EnrollmentService,
)
from app.services.events import EVENTS_QUEUE
from app.services.payment_gateway import SimulatedPaymentGateway
from app.services.pricing import CouponPercentagePolicy
from app.services.task_queue import Task
from tests.conftest import add_course, course_lessons, course_modules, enrollment_body


def _request(**overrides: dict) -> EnrollmentRequest:
    return EnrollmentRequest.model_validate(enrollment_body(**overrides))


def _nothing_written() -> bool:
    return not (memory_db.students or memory_db.enrollments or memory_db.payments)


# ---- happy path ----


def test_enroll_commits_student_enrollment_payment_and_seat(service, queue) -> None:
    course = add_course(max_students=10)

    result = asyncio.run(service.enroll(_request()))

    assert result.enrollment.status == ACTIVE
    assert result.enrollment.expires_at is not None
    assert result.payment.status == "completed"
    assert result.payment.amount == Decimal("100.00")
    assert result.attempts == 1

    assert memory_db.students[result.student.id].email == "ada@example.com"
    assert memory_db.enrollments[result.enrollment.id].course_id == course.id
    assert memory_db.payments[result.payment.id].enrollment_id == result.enrollment.id

    committed = memory_db.courses[course.id]
    assert committed.available_slots == 9
    assert committed.enrolled_count == 1
    assert result.course == committed

    assert asyncio.run(queue.queue_length(EMAILS_QUEUE)) == 1
    assert asyncio.run(queue.queue_length(COURSE_ACCESS_QUEUE)) == 1
    assert asyncio.run(queue.queue_length(EVENTS_QUEUE)) == 1


def test_enroll_keeps_card_details_out_of_payment_metadata(service) -> None:
    add_course()
    result = asyncio.run(service.enroll(_request()))
    meta = result.payment.metadata
    assert meta["card_last_four"] == "4242"
    assert "4242424242424242" not in str(meta)
    assert meta["ip_address"] == "203.0.113.7"


def test_enroll_without_start_immediately_stays_pending(service) -> None:
    add_course()
    result = asyncio.run(
        service.enroll(_request(enrollment={"start_immediately": False}))
    )
    assert result.enrollment.status == PENDING
    assert result.enrollment.started_at is None


def test_enroll_skips_welcome_email_when_not_requested(service, queue) -> None:
    add_course()
    asyncio.run(service.enroll(_request(enrollment={"send_welcome_email": False})))
    assert asyncio.run(queue.queue_length(EMAILS_QUEUE)) == 0
    assert asyncio.run(queue.queue_length(COURSE_ACCESS_QUEUE)) == 1


def test_enroll_invalidates_course_and_listing_caches(service, cache) -> None:
    course = add_course()
    keys = [
        cache_keys.course_availability_key(course.id),
        cache_keys.course_details_key(course.id),
        "courses:search:abc",
        cache_keys.enrollment_list_key(None, 1, 15),
    ]
    for key in keys:
        asyncio.run(cache.set(key, "{}", 60))
    unrelated = cache_keys.course_details_key(course.id + 1000)
    asyncio.run(cache.set(unrelated, "{}", 60))

    asyncio.run(service.enroll(_request()))

    for key in keys:
        assert asyncio.run(cache.get(key)) is None
    assert asyncio.run(cache.get(unrelated)) == "{}"


# ---- pricing ----


def test_uses_discount_price_when_set(service) -> None:
    add_course(price="149.00", discount_price="99.00")
    result = asyncio.run(service.enroll(_request(payment={"amount": "99.00"})))
    assert result.enrollment.amount_paid == Decimal("99.00")


def test_price_mismatch_is_rejected_before_any_write(service, gateway) -> None:
    add_course(price="150.00")

    with pytest.raises(PriceMismatchError) as exc_info:
        asyncio.run(service.enroll(_request(payment={"amount": "100.00"})))

    assert exc_info.value.status_code == 422
    assert "150.00" in exc_info.value.errors["payment.amount"][0]
    assert _nothing_written()
    assert gateway.charges == []


def test_amount_within_one_cent_is_accepted(service) -> None:
    add_course(price="100.00")
    result = asyncio.run(service.enroll(_request(payment={"amount": "99.99"})))
    assert result.enrollment.id > 0


def test_coupon_discount_is_applied_and_recorded(service) -> None:
    add_course(price="100.00")
    result = asyncio.run(
        service.enroll(
            _request(payment={"amount": "90.00", "coupon_code": "welcome10"})
        )
    )
    assert result.enrollment.discount_applied == Decimal("10.00")
    assert result.enrollment.coupon_code == "WELCOME10"


def test_unknown_coupon_is_rejected(service) -> None:
    add_course()
    with pytest.raises(InvalidCouponError):
        asyncio.run(
            service.enroll(_request(payment={"amount": "100.00", "coupon_code": "NOPE"}))
        )
    assert _nothing_written()


# ---- preconditions ----


def test_unknown_course_code(service) -> None:
    with pytest.raises(CourseNotFoundError) as exc_info:
        asyncio.run(service.enroll(_request(course={"code": "MISSING-1"})))
    assert exc_info.value.error_code == "RESOURCE_NOT_FOUND"


def test_draft_course_is_not_available(service) -> None:
    add_course(status="draft")
    with pytest.raises(CourseNotAvailableError):
        asyncio.run(service.enroll(_request()))
    assert _nothing_written()


def test_full_course_is_rejected(service) -> None:
    course = add_course(max_students=1)
    memory_db.courses[course.id] = memory_db.courses[course.id].with_seat_taken()
    with pytest.raises(CourseFullError):
        asyncio.run(service.enroll(_request()))


def test_existing_email_is_rejected(service) -> None:
    add_course("TEST-101")
    add_course("TEST-202")
    asyncio.run(service.enroll(_request()))

    with pytest.raises(StudentExistsError) as exc_info:
        asyncio.run(service.enroll(_request(course={"code": "TEST-202"})))
    assert "student.email" in exc_info.value.errors


def test_same_student_same_course_is_already_enrolled(service) -> None:
    add_course()
    asyncio.run(service.enroll(_request()))
    with pytest.raises(AlreadyEnrolledError):
        asyncio.run(service.enroll(_request()))
    assert len(memory_db.enrollments) == 1


# ---- unlock plan ----


def test_unlock_plan_seeds_exactly_the_named_lessons(service) -> None:
    course = add_course(lessons_per_module=(3, 2))
    module = course_modules(course.id)[0]
    first, second = course_lessons(course.id)[:2]
    plan = [
        {
            "module_id": module.id,
            "unlock_immediately": True,
            "lessons": [
                {"lesson_id": first.id, "is_mandatory": True},
                {"lesson_id": second.id, "is_mandatory": False},
            ],
        }
    ]

    result = asyncio.run(service.enroll(_request(enrollment={"modules": plan})))

    rows = [
        p
        for p in memory_db.lesson_progress.values()
        if p.enrollment_id == result.enrollment.id
    ]
    assert sorted(p.lesson_id for p in rows) == [first.id, second.id]
    by_lesson = {p.lesson_id: p for p in rows}
    assert by_lesson[first.id].data["is_mandatory"] is True
    assert by_lesson[second.id].data["is_mandatory"] is False
    assert len(result.lesson_progress) == 2


def test_unlock_plan_lesson_named_twice_is_seeded_once(service) -> None:
    course = add_course(lessons_per_module=(2,))
    module = course_modules(course.id)[0]
    lesson = course_lessons(course.id)[0]
    plan = [
        {"module_id": module.id, "lessons": [{"lesson_id": lesson.id}]},
        {"module_id": module.id, "lessons": [{"lesson_id": lesson.id}]},
    ]
    result = asyncio.run(service.enroll(_request(enrollment={"modules": plan})))
    assert len(result.lesson_progress) == 1


def test_unlock_plan_with_foreign_module_is_rejected(service) -> None:
    add_course("TEST-101")
    other = add_course("OTHER-1")
    foreign_module = course_modules(other.id)[0]
    plan = [{"module_id": foreign_module.id}]

    with pytest.raises(InvalidUnlockPlanError) as exc_info:
        asyncio.run(service.enroll(_request(enrollment={"modules": plan})))

    assert "enrollment.modules.0.module_id" in exc_info.value.errors
    assert _nothing_written()


def test_unlock_plan_with_lesson_from_another_module_is_rejected(service) -> None:
    course = add_course(lessons_per_module=(1, 1))
    first_module, _ = course_modules(course.id)
    _, second_module_lesson = course_lessons(course.id)
    plan = [
        {"module_id": first_module.id, "lessons": [{"lesson_id": second_module_lesson.id}]}
    ]
    with pytest.raises(InvalidUnlockPlanError) as exc_info:
        asyncio.run(service.enroll(_request(enrollment={"modules": plan})))
    assert "enrollment.modules.0.lessons.0.lesson_id" in exc_info.value.errors


# ---- payment ----


def test_declined_payment_rolls_everything_back(service, gateway, queue, cache) -> None:
    course = add_course(max_students=5)
    gateway.decline = True
    details_key = cache_keys.course_details_key(course.id)
    asyncio.run(cache.set(details_key, "{}", 60))

    with pytest.raises(PaymentFailedError) as exc_info:
        asyncio.run(service.enroll(_request()))

    assert exc_info.value.status_code == 402
    assert _nothing_written()
    assert memory_db.courses[course.id].available_slots == 5
    assert asyncio.run(queue.queue_length(EMAILS_QUEUE)) == 0
    assert asyncio.run(queue.queue_length(EVENTS_QUEUE)) == 0
    # no commit, so nothing was invalidated either
    assert asyncio.run(cache.get(details_key)) == "{}"


# ---- concurrency ----


def test_last_seat_goes_to_exactly_one_of_two_concurrent_requests(
    store, courses, cache, queue
) -> None:
    course = add_course(max_students=1)
    # latency keeps the first request inside its transaction while the
    # second one passes its pre-checks and waits on the course lock
    service = EnrollmentService(
        store=store,
        courses=courses,
        cache=cache,
        queue=queue,
        gateway=SimulatedPaymentGateway(latency=0.02),
        discounts=CouponPercentagePolicy({}),
    )
    first = _request()
    second = _request(student={"email": "grace@example.com"})

    async def race():
        return await asyncio.gather(
            service.enroll(first), service.enroll(second), return_exceptions=True
        )

    outcomes = asyncio.run(race())

    successes = [o for o in outcomes if isinstance(o, EnrollmentResult)]
    failures = [o for o in outcomes if isinstance(o, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], CourseFullError)

    committed = memory_db.courses[course.id]
    assert committed.available_slots == 0
    assert committed.enrolled_count == 1
    assert len(memory_db.enrollments) == 1
    assert len(memory_db.students) == 1
    assert len(memory_db.payments) == 1


def test_many_concurrent_requests_never_oversell(store, courses, cache, queue) -> None:
    course = add_course(max_students=3)
    service = EnrollmentService(
        store=store,
        courses=courses,
        cache=cache,
        queue=queue,
        gateway=SimulatedPaymentGateway(latency=0.005),
        discounts=CouponPercentagePolicy({}),
    )
    requests = [_request(student={"email": f"student{i}@example.com"}) for i in range(8)]

    async def race():
        return await asyncio.gather(
            *(service.enroll(r) for r in requests), return_exceptions=True
        )

    outcomes = asyncio.run(race())

    assert sum(isinstance(o, EnrollmentResult) for o in outcomes) == 3
    assert all(
        isinstance(o, (EnrollmentResult, CourseFullError)) for o in outcomes
    )
    committed = memory_db.courses[course.id]
    assert committed.available_slots == 0
    assert committed.enrolled_count == 3
    assert len(memory_db.enrollments) == 3


# ---- retries ----


class _FlakyStore:
    """Wraps a store; the first ``failures`` transactions fail after their body.

    The failure is raised where a commit would fail: every write of the
    body (and the gateway charge) has already happened.
    """

    def __init__(self, inner, failures: int, error: Exception | None = None) -> None:
        self._inner = inner
        self.failures = failures
        self.error = error or TransientStoreError("deadlock detected")
        self.calls = 0

    def __getattr__(self, name):
        return getattr(self._inner, name)

    @asynccontextmanager
    async def transaction(self):
        self.calls += 1
        async with self._inner.transaction() as uow:
            yield uow
            if self.calls <= self.failures:
                raise self.error


def _retries() -> float:
    return REGISTRY.get_sample_value("enrollment_transaction_retries_total") or 0.0


def test_transient_failure_is_retried_without_leftovers(store, courses, cache, queue, gateway):
    add_course(max_students=10)
    flaky = _FlakyStore(store, failures=1)
    service = EnrollmentService(
        store=flaky,
        courses=courses,
        cache=cache,
        queue=queue,
        gateway=gateway,
        discounts=CouponPercentagePolicy({}),
        max_attempts=3,
    )
    before = _retries()

    result = asyncio.run(service.enroll(_request()))

    assert result.attempts == 2
    assert flaky.calls == 2
    assert _retries() - before == 1
    # the failed attempt rolled back completely
    assert len(memory_db.students) == 1
    assert len(memory_db.enrollments) == 1
    assert memory_db.courses[result.course.id].available_slots == 9
    # and its after-commit effects were discarded
    assert asyncio.run(queue.queue_length(COURSE_ACCESS_QUEUE)) == 1


def test_retries_exhausted_returns_transient_failure(store, courses, cache, queue, gateway):
    add_course()
    flaky = _FlakyStore(store, failures=10)
    service = EnrollmentService(
        store=flaky,
        courses=courses,
        cache=cache,
        queue=queue,
        gateway=gateway,
        discounts=CouponPercentagePolicy({}),
        max_attempts=2,
    )

    with pytest.raises(TransientEnrollmentError) as exc_info:
        asyncio.run(service.enroll(_request()))

    assert exc_info.value.status_code == 503
    assert flaky.calls == 2
    assert _nothing_written()


# ---- after-commit ordering ----


class _CommittedStateQueue:
    """Records, at enqueue time, whether the enrollment is already committed."""

    def __init__(self) -> None:
        self.seen: list[tuple[str, bool]] = []

    async def enqueue(self, queue: str, payload: dict):
        enrollment_id = payload.get("enrollment_id") or payload["data"]["enrollment_id"]
        self.seen.append((queue, enrollment_id in memory_db.enrollments))
        return Task(id=f"spy-{len(self.seen)}", queue=queue, payload=payload)

    async def requeue(self, task):
        return task

    async def dequeue(self, queue: str, timeout: int = 0):
        return None

    async def queue_length(self, queue: str) -> int:
        return 0


class _CommittedStateCache:
    """Records the committed seat count whenever a course key is deleted."""

    def __init__(self, course_id: int) -> None:
        self.course_id = course_id
        self.slots_at_delete: list[int] = []

    async def get(self, key):
        return None

    async def set(self, key, value, ttl_seconds):
        return None

    async def delete(self, key):
        self.slots_at_delete.append(memory_db.courses[self.course_id].available_slots)

    async def delete_pattern(self, pattern):
        return None


def test_jobs_and_invalidation_run_only_after_commit(store, courses, gateway) -> None:
    course = add_course(max_students=4)
    spy_queue = _CommittedStateQueue()
    spy_cache = _CommittedStateCache(course.id)
    service = EnrollmentService(
        store=store,
        courses=courses,
        cache=spy_cache,
        queue=spy_queue,
        gateway=gateway,
        discounts=CouponPercentagePolicy({}),
    )

    asyncio.run(service.enroll(_request()))

    assert [q for q, _ in spy_queue.seen] == [EMAILS_QUEUE, COURSE_ACCESS_QUEUE, EVENTS_QUEUE]
    assert all(committed for _, committed in spy_queue.seen)
    # availability and details keys, both deleted after the seat was committed
    assert spy_cache.slots_at_delete == [3, 3]


# ---- unexpected errors ----


class _BrokenGateway:
    async def charge(self, charge):
        raise RuntimeError("gateway exploded")

    async def refund(self, transaction_id):
        return False


def test_unexpected_error_becomes_generic_enrollment_failure(store, courses, cache, queue):
    add_course()
    service = EnrollmentService(
        store=store,
        courses=courses,
        cache=cache,
        queue=queue,
        gateway=_BrokenGateway(),
        discounts=CouponPercentagePolicy({}),
        expose_errors=False,
    )
    with pytest.raises(EnrollmentError) as exc_info:
        asyncio.run(service.enroll(_request()))

    err = exc_info.value
    assert err.error_code == "ENROLLMENT_FAILED"
    assert err.status_code == 500
    assert "exploded" not in err.message
    assert _nothing_written()


# ---- retries: payments and lifecycle operations ----


def _service_over(store, courses, cache, queue, gateway, *, max_attempts: int = 3):
    return EnrollmentService(
        store=store,
        courses=courses,
        cache=cache,
        queue=queue,
        gateway=gateway,
        discounts=CouponPercentagePolicy({}),
        max_attempts=max_attempts,
    )


def test_retried_enrollment_charges_once(store, courses, cache, queue, gateway) -> None:
    add_course()
    service = _service_over(_FlakyStore(store, failures=1), courses, cache, queue, gateway)

    result = asyncio.run(service.enroll(_request()))

    assert result.attempts == 2
    assert [c.transaction_id for c in gateway.charges] == [result.payment.transaction_id]
    assert gateway.refunds == []


def test_exhausted_retries_refund_the_capture(store, courses, cache, queue, gateway) -> None:
    add_course()
    service = _service_over(
        _FlakyStore(store, failures=10), courses, cache, queue, gateway, max_attempts=3
    )

    with pytest.raises(TransientEnrollmentError):
        asyncio.run(service.enroll(_request()))

    assert len(gateway.charges) == 1
    assert gateway.refunds == [gateway.charges[0].transaction_id]
    assert _nothing_written()


def test_commit_time_duplicate_email_refunds_the_capture(
    store, courses, cache, queue, gateway
) -> None:
    add_course()
    racing = _FlakyStore(store, failures=1, error=UniqueViolationError("student_email"))
    service = _service_over(racing, courses, cache, queue, gateway)

    with pytest.raises(StudentExistsError):
        asyncio.run(service.enroll(_request()))

    assert racing.calls == 1
    assert gateway.refunds == [gateway.charges[0].transaction_id]
    assert _nothing_written()


def test_declined_charge_has_nothing_to_refund(store, courses, cache, queue) -> None:
    add_course()
    declining = SimulatedPaymentGateway(decline=True)
    service = _service_over(store, courses, cache, queue, declining)

    with pytest.raises(PaymentFailedError):
        asyncio.run(service.enroll(_request()))

    assert declining.charges == []
    assert declining.refunds == []


def test_cancel_refunds_through_the_gateway_once_across_retries(
    service, store, courses, cache, queue, gateway
) -> None:
    add_course()
    result = asyncio.run(service.enroll(_request()))
    flaky = _FlakyStore(store, failures=1)
    retrying = _service_over(flaky, courses, cache, queue, gateway)

    cancelled = asyncio.run(retrying.cancel(result.enrollment.id))

    assert cancelled.status == CANCELLED
    assert flaky.calls == 2
    assert gateway.refunds == [result.payment.transaction_id]
    assert memory_db.payments[result.payment.id].status == "refunded"
    assert memory_db.courses[result.course.id].available_slots == 9


def test_cancel_behind_a_held_course_lock_is_a_transient_failure(
    service, courses, cache, queue, gateway
) -> None:
    course = add_course()
    result = asyncio.run(service.enroll(_request()))
    impatient = _service_over(
        InMemoryEnrollmentStore(memory_db, lock_timeout=0.05),
        courses,
        cache,
        queue,
        gateway,
        max_attempts=2,
    )
    before = _retries()

    async def scenario() -> None:
        holding = asyncio.Event()
        done = asyncio.Event()

        async def holder() -> None:
            lock = memory_db.row_lock("courses", course.id)
            async with lock:
                holding.set()
                await done.wait()

        task = asyncio.create_task(holder())
        await holding.wait()
        try:
            await impatient.cancel(result.enrollment.id)
        finally:
            done.set()
            await task

    with pytest.raises(TransientEnrollmentError) as exc_info:
        asyncio.run(scenario())

    assert exc_info.value.error_code == "TRANSIENT_FAILURE"
    assert _retries() - before == 1
    assert memory_db.enrollments[result.enrollment.id].status == ACTIVE
    assert memory_db.courses[course.id].available_slots == 9
    assert gateway.refunds == []


def test_progress_behind_a_held_enrollment_lock_is_a_transient_failure(
    service, courses, cache, queue, gateway
) -> None:
    course = add_course()
    lesson = course_lessons(course.id)[0]
    result = asyncio.run(service.enroll(_request()))
    impatient = _service_over(
        InMemoryEnrollmentStore(memory_db, lock_timeout=0.05),
        courses,
        cache,
        queue,
        gateway,
        max_attempts=2,
    )

    async def scenario() -> None:
        holding = asyncio.Event()
        done = asyncio.Event()

        async def holder() -> None:
            async with memory_db.row_lock("enrollments", result.enrollment.id):
                holding.set()
                await done.wait()

        task = asyncio.create_task(holder())
        await holding.wait()
        try:
            await impatient.record_lesson_progress(
                result.enrollment.id, lesson.id, completed=True
            )
        finally:
            done.set()
            await task

    with pytest.raises(TransientEnrollmentError):
        asyncio.run(scenario())

    assert memory_db.enrollments[result.enrollment.id].progress_percentage == 0
