"""Enrollment endpoints.

  POST /v1/enrollments                                   -> 201 enroll
  GET  /v1/enrollments?status=&page=&per_page=           -> list (cached)
  GET  /v1/enrollments/{id}                              -> detail
  POST /v1/enrollments/{id}/cancel                       -> cancel + refund
  POST /v1/enrollments/{id}/lessons/{lesson_id}/progress -> lesson progress

Handlers stay thin: EnrollmentService raises EnrollmentError subclasses
and the exception handlers in app/main.py render them.
"""

from __future__ import annotations

from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Query, status

from app.api.ratelimit import API_LIMIT, ENROLLMENT_LIMIT, require_rate_limit
from app.core.errors import EnrollmentNotFoundError
from app.db.stores import enrollment_store
from app.models.enrollment import EnrollmentDetail
from app.schemas.enrollment import EnrollmentRequest, LessonProgressIn
from app.schemas.responses import enrollment_out, pagination, progress_out, success
from app.services.cache import (
    ENROLLMENT_LIST_TTL,
    cache_service,
    enrollment_list_key,
    read_through,
)
from app.services.enrollment_service import enrollment_service

router = APIRouter(prefix="/v1/enrollments", tags=["enrollments"])

StatusFilter = Literal["pending", "active", "completed", "cancelled", "expired"]


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_rate_limit(ENROLLMENT_LIMIT))],
)
async def create_enrollment(body: EnrollmentRequest) -> dict:
    result = await enrollment_service.enroll(body)
    detail = EnrollmentDetail(
        enrollment=result.enrollment,
        student=result.student,
        course=result.course,
        payment=result.payment,
        lesson_progress=result.lesson_progress,
    )
    return success(
        enrollment_out(detail),
        message="Student enrolled successfully",
        meta={
            "enrollment_number": result.enrollment.enrollment_number,
            "transaction_id": result.payment.transaction_id,
            "processing_time_ms": result.processing_time_ms,
        },
    )


@router.get("", dependencies=[Depends(require_rate_limit(API_LIMIT))])
async def list_enrollments(
    status_filter: Annotated[StatusFilter | None, Query(alias="status")] = None,
    page: Annotated[int, Query(ge=1)] = 1,
    per_page: Annotated[int, Query(ge=1, le=100)] = 15,
) -> dict:
    async def load() -> dict:
        items, total = await enrollment_store.list_enrollments(status_filter, page, per_page)
        return {
            "items": [enrollment_out(d) for d in items],
            "meta": pagination(page, per_page, total),
        }

    page_data = await read_through(
        cache_service,
        enrollment_list_key(status_filter, page, per_page),
        ENROLLMENT_LIST_TTL,
        load,
    )
    return success(page_data["items"], meta=page_data["meta"])


@router.get("/{enrollment_id}", dependencies=[Depends(require_rate_limit(API_LIMIT))])
async def get_enrollment(enrollment_id: int) -> dict:
    detail = await enrollment_store.get_detail(enrollment_id)
    if detail is None:
        raise EnrollmentNotFoundError()
    return success(enrollment_out(detail))


@router.post(
    "/{enrollment_id}/cancel", dependencies=[Depends(require_rate_limit(API_LIMIT))]
)
async def cancel_enrollment(enrollment_id: int) -> dict:
    await enrollment_service.cancel(enrollment_id)
    detail = await enrollment_store.get_detail(enrollment_id)
    if detail is None:
        raise EnrollmentNotFoundError()
    return success(enrollment_out(detail), message="Enrollment cancelled")


@router.post(
    "/{enrollment_id}/lessons/{lesson_id}/progress",
    dependencies=[Depends(require_rate_limit(API_LIMIT))],
)
async def record_progress(
    enrollment_id: int, lesson_id: int, body: LessonProgressIn
) -> dict:
    enrollment, progress = await enrollment_service.record_lesson_progress(
        enrollment_id,
        lesson_id,
        time_spent_minutes=body.time_spent_minutes,
        score=body.score,
        completed=body.completed,
    )
    return success(
        {
            "lesson_progress": progress_out(progress),
            "enrollment_status": enrollment.status,
            "progress_percentage": enrollment.progress_percentage,
        },
        message="Progress recorded",
    )
