"""Background jobs run by app/worker.py.

Every job here is enqueued by an after-commit outbox flush, so the
enrollment it names is always committed and visible to ``get_detail``.
A job that still cannot find it raises, and the worker retries it.

Jobs write their own cache keys (``enrollment:{id}:...``).  The course
access job does so through its own unit of work's outbox, after its own
commit, for the same reason the enrollment flow does.
"""

from __future__ import annotations

import json
import logging
import math
import secrets
from datetime import UTC, datetime, timedelta
from functools import partial

from app.db.stores import course_repo, enrollment_store
from app.models.course import Course, ModuleOutline
from app.models.enrollment import ACTIVE, PENDING, EnrollmentDetail, LessonProgress
from app.repos.course_repo import CourseRepo
from app.repos.enrollment_repo import EnrollmentStore
from app.services.cache import (
    ENROLLMENT_LISTS_PATTERN,
    JOB_DATA_TTL,
    CacheService,
    cache_service,
    enrollment_data_key,
)
from app.services.events import STUDENT_ENROLLED, listens_to
from app.services.mailer import EmailMessage, Mailer, mailer

logger = logging.getLogger(__name__)

_WEEKS_TO_COMPLETE = 12
_FIRST_LESSONS = 3


class EnrollmentNotVisible(LookupError):
    pass


async def _load(store: EnrollmentStore, enrollment_id: int) -> EnrollmentDetail:
    detail = await store.get_detail(enrollment_id)
    if detail is None:
        raise EnrollmentNotVisible(f"enrollment {enrollment_id} not found")
    return detail


# ---------------------------------------------------------------------------
# emails
# ---------------------------------------------------------------------------


def welcome_message(detail: EnrollmentDetail) -> EmailMessage:
    student, course = detail.student, detail.course
    body = (
        f"Dear {student.first_name},\n\n"
        f"Welcome to {course.title}!\n\n"
        "Your enrollment has been confirmed and you can now access all course "
        "materials.\n\n"
        "Enrollment details:\n"
        f"- Enrollment number: {detail.enrollment.enrollment_number}\n"
        f"- Course: {course.title}\n"
        f"- Level: {course.level}\n"
        f"- Duration: {course.duration_hours} hours\n\n"
        'To get started, log in and open "My Courses".\n\n'
        "The Learning Platform Team\n"
    )
    return EmailMessage(to=student.email, subject=f"Welcome to {course.title}!", body=body)


async def send_welcome_email(
    payload: dict,
    *,
    store: EnrollmentStore = enrollment_store,
    cache: CacheService = cache_service,
    sender: Mailer = mailer,
) -> None:
    enrollment_id = payload["enrollment_id"]
    sent_key = enrollment_data_key(enrollment_id, "welcome_email_sent")
    if await cache.get(sent_key) is not None:
        logger.info(
            "Welcome email already sent", extra={"enrollment_id": enrollment_id}
        )
        return

    detail = await _load(store, enrollment_id)
    await sender.send(welcome_message(detail))
    await cache.set(sent_key, json.dumps(True), JOB_DATA_TTL)
    logger.info("Welcome email sent", extra={"enrollment_id": enrollment_id})


# ---------------------------------------------------------------------------
# course_access
# ---------------------------------------------------------------------------


def learning_path(
    course: Course, outline: list[ModuleOutline], preferences: dict | None, now: datetime
) -> dict:
    total_lessons = sum(len(o.lessons) for o in outline)
    schedule = []
    week = 1
    for index, entry in enumerate(outline):
        schedule.append(
            {
                "week": week,
                "module_id": entry.module.id,
                "module_title": entry.module.title,
                "estimated_hours": math.ceil(entry.module.duration_minutes / 60),
            }
        )
        if (index + 1) % 2 == 0:
            week += 1

    first_lessons = [
        {
            "id": lesson.id,
            "title": lesson.title,
            "type": lesson.type,
            "duration_minutes": lesson.duration_minutes,
        }
        for entry in outline
        for lesson in entry.lessons
    ][:_FIRST_LESSONS]

    return {
        "recommended_pace": {
            "hours_per_week": round(course.duration_hours / _WEEKS_TO_COMPLETE, 1),
            "lessons_per_week": round(total_lessons / _WEEKS_TO_COMPLETE, 1),
            "estimated_completion": (
                now + timedelta(weeks=_WEEKS_TO_COMPLETE)
            ).date().isoformat(),
        },
        "suggested_schedule": schedule,
        "first_lessons": first_lessons,
        "difficulty_adjustment": (preferences or {}).get(
            "difficulty_preference", "standard"
        ),
    }


def notification_settings(preferences: dict | None) -> dict:
    notifications = (preferences or {}).get("notifications") or {}
    return {
        "email_enabled": notifications.get("email", True),
        "sms_enabled": notifications.get("sms", False),
        "push_enabled": notifications.get("push", True),
        "reminders": {
            "lesson_due": True,
            "module_complete": True,
            "course_update": True,
        },
    }


async def process_course_access(
    payload: dict,
    *,
    store: EnrollmentStore = enrollment_store,
    courses: CourseRepo = course_repo,
    cache: CacheService = cache_service,
) -> int:
    """Activate a pending enrollment and track every course lesson.

    Returns the number of lesson progress rows created.
    """
    enrollment_id = payload["enrollment_id"]
    detail = await _load(store, enrollment_id)
    outline = await courses.outline(detail.course.id)
    now = datetime.now(UTC)
    created = 0

    async with store.transaction() as uow:
        enrollment = await uow.lock_enrollment(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotVisible(f"enrollment {enrollment_id} not found")
        if enrollment.status not in (PENDING, ACTIVE):
            logger.info(
                "Skipping course access for %s enrollment",
                enrollment.status,
                extra={"enrollment_id": enrollment_id},
            )
            return 0

        if enrollment.status == PENDING:
            enrollment = enrollment.transition(ACTIVE, now=now)
            await uow.save_enrollment(enrollment)
            uow.after_commit(
                "cache", partial(cache.delete_pattern, ENROLLMENT_LISTS_PATTERN)
            )

        tracked = {p.lesson_id for p in await uow.list_lesson_progress(enrollment_id)}
        for entry in outline:
            for lesson in entry.lessons:
                if lesson.id in tracked:
                    continue
                await uow.add_lesson_progress(
                    LessonProgress(id=0, enrollment_id=enrollment_id, lesson_id=lesson.id)
                )
                created += 1

        access = {
            "token": secrets.token_hex(32),
            "course_structure": [
                {
                    "id": entry.module.id,
                    "title": entry.module.title,
                    "lessons_count": len(entry.lessons),
                    "duration_minutes": entry.module.duration_minutes,
                }
                for entry in outline
            ],
            "processed_at": now.isoformat(),
        }
        preferences = detail.student.preferences
        for name, value in (
            ("access", access),
            ("learning_path", learning_path(detail.course, outline, preferences, now)),
            ("notifications", notification_settings(preferences)),
        ):
            uow.after_commit(
                "cache",
                partial(
                    cache.set,
                    enrollment_data_key(enrollment_id, name),
                    json.dumps(value),
                    JOB_DATA_TTL,
                ),
            )

    logger.info(
        "Course access processed, %d lessons tracked",
        created,
        extra={"enrollment_id": enrollment_id, "course_id": detail.course.id},
    )
    return created


# ---------------------------------------------------------------------------
# events
# ---------------------------------------------------------------------------


@listens_to(STUDENT_ENROLLED)
async def notify_instructors(data: dict) -> None:
    logger.info(
        "Instructor notification: %s has enrolled in %s",
        data["student"]["name"],
        data["course"]["title"],
        extra={
            "enrollment_id": data["enrollment_id"],
            "course_id": data["course"]["id"],
        },
    )
