"""Course catalog reads.

Both endpoints are read-through cached.  Enrollment and cancellation
delete these keys after commit, so a cached "1 seat left" never outlives
the transaction that took the seat by more than the outbox flush.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from app.api.ratelimit import API_LIMIT, require_rate_limit
from app.core.errors import CourseNotFoundError
from app.db.stores import course_repo
from app.schemas.responses import availability_out, course_out, outline_out, success
from app.services.cache import (
    AVAILABILITY_TTL,
    DETAILS_TTL,
    cache_service,
    course_availability_key,
    course_details_key,
    read_through,
)

router = APIRouter(
    prefix="/v1/courses",
    tags=["courses"],
    dependencies=[Depends(require_rate_limit(API_LIMIT))],
)


@router.get("/{course_id}")
async def get_course(course_id: int) -> dict:
    async def load() -> dict | None:
        course = await course_repo.get_by_id(course_id)
        if course is None:
            return None
        data = course_out(course)
        data["modules"] = outline_out(await course_repo.outline(course_id))
        return data

    data = await read_through(
        cache_service, course_details_key(course_id), DETAILS_TTL, load
    )
    if data is None:
        raise CourseNotFoundError()
    return success(data)


@router.get("/{course_id}/availability")
async def get_availability(course_id: int) -> dict:
    async def load() -> dict | None:
        course = await course_repo.get_by_id(course_id)
        return availability_out(course) if course is not None else None

    data = await read_through(
        cache_service, course_availability_key(course_id), AVAILABILITY_TTL, load
    )
    if data is None:
        raise CourseNotFoundError()
    return success(data)
