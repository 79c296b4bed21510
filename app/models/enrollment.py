from __future__ import annotations

import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal

from app.models.course import Course
from app.models.student import Student

# --- Enrollment lifecycle ---

PENDING = "pending"
ACTIVE = "active"
COMPLETED = "completed"
CANCELLED = "cancelled"
EXPIRED = "expired"

ENROLLMENT_STATUSES = (PENDING, ACTIVE, COMPLETED, CANCELLED, EXPIRED)

_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({ACTIVE, CANCELLED}),
    ACTIVE: frozenset({COMPLETED, CANCELLED, EXPIRED}),
    COMPLETED: frozenset(),
    CANCELLED: frozenset(),
    EXPIRED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in _TRANSITIONS.get(current, frozenset())


def is_terminal(status: str) -> bool:
    return not _TRANSITIONS.get(status)


def add_one_year(moment: datetime) -> datetime:
    try:
        return moment.replace(year=moment.year + 1)
    except ValueError:
        # Feb 29 -> Feb 28
        return moment.replace(year=moment.year + 1, day=28)


def generate_enrollment_number(now: datetime) -> str:
    return f"ENR-{now:%Y}-{secrets.token_hex(4).upper()}"


def generate_transaction_id(now: datetime) -> str:
    return f"TXN-{now:%Y%m%d}-{secrets.token_hex(5).upper()}"


@dataclass(frozen=True, slots=True)
class Enrollment:
    id: int  # 0 until persisted
    enrollment_number: str
    student_id: int
    course_id: int
    amount_paid: Decimal
    status: str = PENDING
    discount_applied: Decimal = Decimal("0.00")
    coupon_code: str | None = None
    enrolled_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    expires_at: datetime | None = None
    progress_percentage: int = 0
    custom_fields: list[dict] | None = None
    notes: str | None = None

    def transition(self, target: str, *, now: datetime) -> Enrollment:
        """Return a copy in ``target`` status, stamping the lifecycle dates.

        Raises ValueError if the lifecycle does not allow the move.
        """
        if not can_transition(self.status, target):
            raise ValueError(f"cannot move enrollment from {self.status} to {target}")
        if target == ACTIVE:
            return replace(
                self,
                status=ACTIVE,
                started_at=now,
                expires_at=add_one_year(now),
            )
        if target == COMPLETED:
            return replace(
                self, status=COMPLETED, completed_at=now, progress_percentage=100
            )
        return replace(self, status=target)

    def is_expired_at(self, now: datetime) -> bool:
        return (
            self.status == ACTIVE
            and self.expires_at is not None
            and self.expires_at <= now
        )


@dataclass(frozen=True, slots=True)
class Payment:
    id: int  # 0 until persisted
    transaction_id: str
    amount: Decimal
    currency: str
    method: str  # credit_card|debit_card|paypal|bank_transfer
    status: str = "pending"  # pending|completed|failed|refunded
    enrollment_id: int = 0
    gateway: str | None = None
    gateway_transaction_id: str | None = None
    metadata: dict | None = None
    paid_at: datetime | None = None

    def mark_completed(self, *, gateway_transaction_id: str, now: datetime) -> Payment:
        return replace(
            self,
            status="completed",
            gateway_transaction_id=gateway_transaction_id,
            paid_at=now,
        )


@dataclass(frozen=True, slots=True)
class LessonProgress:
    id: int  # 0 until persisted
    enrollment_id: int
    lesson_id: int
    is_completed: bool = False
    time_spent_minutes: int = 0
    attempts: int = 0
    score: Decimal | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    data: dict | None = None


@dataclass(frozen=True, slots=True)
class EnrollmentDetail:
    """An enrollment with the records it references and owns."""

    enrollment: Enrollment
    student: Student
    course: Course
    payment: Payment | None
    lesson_progress: tuple[LessonProgress, ...] = field(default=())
