"""Response envelopes and the JSON shapes of domain objects.

Every /v1 response uses one of two envelopes:

    {"success": true,  "message": ..., "data": ..., "meta": ...}
    {"success": false, "message": ..., "errors": {...}, "error_code": ...}

The ``*_out`` functions return plain JSON-ready dicts rather than pydantic
models: the same dicts are what read-through caching stores, so a cache
hit and a cache miss return byte-identical bodies.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from app.models.course import Course, ModuleOutline
from app.models.enrollment import EnrollmentDetail, LessonProgress, Payment
from app.models.student import Student


def success(
    data: Any, message: str = "OK", meta: dict[str, Any] | None = None
) -> dict[str, Any]:
    return {"success": True, "message": message, "data": data, "meta": meta or {}}


def failure(
    message: str, errors: dict[str, list[str]], error_code: str
) -> dict[str, Any]:
    return {
        "success": False,
        "message": message,
        "errors": errors,
        "error_code": error_code,
    }


def pagination(page: int, per_page: int, total: int) -> dict[str, int]:
    last_page = max((total + per_page - 1) // per_page, 1)
    return {
        "current_page": page,
        "per_page": per_page,
        "total": total,
        "last_page": last_page,
    }


def _money(value: Decimal | None) -> str | None:
    return None if value is None else f"{value:.2f}"


def _iso(value: date | datetime | None) -> str | None:
    return None if value is None else value.isoformat()


def course_out(course: Course) -> dict[str, Any]:
    return {
        "id": course.id,
        "code": course.code,
        "slug": course.slug,
        "title": course.title,
        "description": course.description,
        "level": course.level,
        "status": course.status,
        "price": _money(course.price),
        "discount_price": _money(course.discount_price),
        "effective_price": _money(course.effective_price),
        "duration_hours": course.duration_hours,
        "max_students": course.max_students,
        "enrolled_count": course.enrolled_count,
        "available_slots": course.available_slots,
        "tags": list(course.tags),
    }


def outline_out(outline: list[ModuleOutline]) -> list[dict[str, Any]]:
    return [
        {
            "id": entry.module.id,
            "title": entry.module.title,
            "position": entry.module.position,
            "duration_minutes": entry.module.duration_minutes,
            "lessons": [
                {
                    "id": lesson.id,
                    "title": lesson.title,
                    "position": lesson.position,
                    "type": lesson.type,
                    "duration_minutes": lesson.duration_minutes,
                }
                for lesson in entry.lessons
            ],
        }
        for entry in outline
    ]


def availability_out(course: Course) -> dict[str, Any]:
    return {
        "course_id": course.id,
        "available_slots": course.available_slots,
        "enrolled_count": course.enrolled_count,
        "max_students": course.max_students,
        "is_full": not course.has_available_slots(),
    }


def student_out(student: Student) -> dict[str, Any]:
    return {
        "id": student.id,
        "email": student.email,
        "first_name": student.first_name,
        "last_name": student.last_name,
        "full_name": student.full_name,
        "phone": student.phone,
        "country": student.country,
        "status": student.status,
    }


def payment_out(payment: Payment | None) -> dict[str, Any] | None:
    if payment is None:
        return None
    # metadata stays server-side: it holds the billing address and client IP
    return {
        "id": payment.id,
        "transaction_id": payment.transaction_id,
        "amount": _money(payment.amount),
        "currency": payment.currency,
        "method": payment.method,
        "status": payment.status,
        "gateway": payment.gateway,
        "paid_at": _iso(payment.paid_at),
    }


def progress_out(progress: LessonProgress) -> dict[str, Any]:
    return {
        "id": progress.id,
        "lesson_id": progress.lesson_id,
        "is_completed": progress.is_completed,
        "time_spent_minutes": progress.time_spent_minutes,
        "attempts": progress.attempts,
        "score": _money(progress.score),
        "started_at": _iso(progress.started_at),
        "completed_at": _iso(progress.completed_at),
        "data": progress.data,
    }


def enrollment_out(detail: EnrollmentDetail) -> dict[str, Any]:
    e = detail.enrollment
    return {
        "id": e.id,
        "enrollment_number": e.enrollment_number,
        "status": e.status,
        "amount_paid": _money(e.amount_paid),
        "discount_applied": _money(e.discount_applied),
        "coupon_code": e.coupon_code,
        "progress_percentage": e.progress_percentage,
        "enrolled_at": _iso(e.enrolled_at),
        "started_at": _iso(e.started_at),
        "completed_at": _iso(e.completed_at),
        "expires_at": _iso(e.expires_at),
        "custom_fields": e.custom_fields,
        "notes": e.notes,
        "student": student_out(detail.student),
        "course": course_out(detail.course),
        "payment": payment_out(detail.payment),
        "lesson_progress": [progress_out(p) for p in detail.lesson_progress],
    }
