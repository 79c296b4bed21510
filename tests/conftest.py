from __future__ import annotations

import copy
from datetime import UTC, datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from app.api.ratelimit import _rate_limiter
from app.db.memory import memory_db
from app.main import app
from app.models.course import Course, Lesson, Module
from app.repos.course_repo import InMemoryCourseRepo
from app.repos.enrollment_repo import InMemoryEnrollmentStore
from app.services.cache import InMemoryCacheService, cache_service
from app.services.enrollment_service import EnrollmentService
from app.services.payment_gateway import SimulatedPaymentGateway
from app.services.pricing import CouponPercentagePolicy
from app.services.task_queue import InMemoryTaskQueue, task_queue


@pytest.fixture(autouse=True)
def reset_memory_db() -> None:
    """Start every test with an empty catalog and no enrollments."""
    memory_db.reset()


@pytest.fixture(autouse=True)
def reset_rate_limiter() -> None:
    """Clear rate limit buckets between tests so limits don't bleed."""
    if hasattr(_rate_limiter, "_buckets"):
        _rate_limiter._buckets.clear()  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def reset_cache() -> None:
    if hasattr(cache_service, "_store"):
        cache_service._store.clear()  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def reset_task_queue() -> None:
    if hasattr(task_queue, "_queues"):
        task_queue._queues.clear()  # type: ignore[union-attr]


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


# ---------------------------------------------------------------------------
# Catalog helpers
# ---------------------------------------------------------------------------


def add_course(
    code: str = "TEST-101",
    *,
    price: str = "100.00",
    discount_price: str | None = None,
    status: str = "published",
    max_students: int | None = 10,
    lessons_per_module: tuple[int, ...] = (2,),
) -> Course:
    """Add a course with modules and lessons to ``memory_db``."""
    slots = max_students if max_students is not None else 1_000_000
    course = memory_db.add_course(
        Course(
            id=0,
            code=code,
            slug=code.lower(),
            title=f"Course {code}",
            description=f"Description of {code}",
            price=Decimal(price),
            discount_price=Decimal(discount_price) if discount_price else None,
            status=status,
            duration_hours=24,
            max_students=max_students,
            available_slots=slots,
        )
    )
    for m_index, lesson_count in enumerate(lessons_per_module, start=1):
        module = memory_db.add_module(
            Module(
                id=0,
                course_id=course.id,
                title=f"Module {m_index}",
                position=m_index,
                duration_minutes=90,
            )
        )
        for l_index in range(1, lesson_count + 1):
            memory_db.add_lesson(
                Lesson(
                    id=0,
                    module_id=module.id,
                    title=f"Lesson {m_index}.{l_index}",
                    position=l_index,
                    duration_minutes=15,
                )
            )
    return course


def course_lessons(course_id: int) -> list[Lesson]:
    module_ids = {m.id for m in memory_db.modules.values() if m.course_id == course_id}
    return sorted(
        (les for les in memory_db.lessons.values() if les.module_id in module_ids),
        key=lambda les: les.id,
    )


def course_modules(course_id: int) -> list[Module]:
    return sorted(
        (m for m in memory_db.modules.values() if m.course_id == course_id),
        key=lambda m: m.id,
    )


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

_NEXT_YEAR = datetime.now(UTC).year + 1

_BASE_BODY = {
    "student": {
        "email": "ada@example.com",
        "first_name": "Ada",
        "last_name": "Lovelace",
        "phone": "+1-555-0100123",
        "address": {
            "street": "12 St James's Square",
            "city": "London",
            "country": "gb",
            "postal_code": "SW1Y 4JH",
        },
        "preferences": {"language": "en", "notifications": {"sms": True}},
    },
    "course": {"code": "TEST-101"},
    "payment": {
        "amount": "100.00",
        "currency": "USD",
        "method": "credit_card",
        "card": {
            "number": "4242424242424242",
            "holder_name": "Ada Lovelace",
            "expiry_month": 12,
            "expiry_year": _NEXT_YEAR,
            "cvv": "123",
        },
        "billing_address": {"same_as_student": True},
    },
    "enrollment": {"start_immediately": True, "send_welcome_email": True},
    "metadata": {"source": "web", "ip_address": "203.0.113.7", "user_agent": "pytest"},
}


def enrollment_body(**overrides: dict) -> dict:
    """A valid POST /v1/enrollments body; ``overrides`` merge into sections."""
    body = copy.deepcopy(_BASE_BODY)
    for section, values in overrides.items():
        body[section].update(values)
    return body


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


@pytest.fixture
def queue() -> InMemoryTaskQueue:
    return InMemoryTaskQueue()


@pytest.fixture
def cache() -> InMemoryCacheService:
    return InMemoryCacheService()


@pytest.fixture
def gateway() -> SimulatedPaymentGateway:
    return SimulatedPaymentGateway()


@pytest.fixture
def store() -> InMemoryEnrollmentStore:
    return InMemoryEnrollmentStore(memory_db, lock_timeout=1.0)


@pytest.fixture
def courses() -> InMemoryCourseRepo:
    return InMemoryCourseRepo(memory_db)


@pytest.fixture
def service(store, courses, cache, queue, gateway) -> EnrollmentService:
    return EnrollmentService(
        store=store,
        courses=courses,
        cache=cache,
        queue=queue,
        gateway=gateway,
        discounts=CouponPercentagePolicy({"WELCOME10": Decimal("10")}),
        max_attempts=3,
    )
