"""Backend selection for the course repo and the enrollment store.

Same convention as app/db/redis.py and the cache/task-queue singletons:
decide once at import time from configuration.  With DATABASE_URL set,
the Pg implementations share ``async_session_factory``; without it, the
in-memory implementations share ``memory_db``.
"""

from __future__ import annotations

from app.core.config import SETTINGS
from app.db.engine import async_session_factory
from app.db.memory import memory_db
from app.repos.course_repo import CourseRepo, InMemoryCourseRepo
from app.repos.enrollment_repo import EnrollmentStore, InMemoryEnrollmentStore
from app.repos.pg_course_repo import PgCourseRepo
from app.repos.pg_enrollment_repo import PgEnrollmentStore

if async_session_factory is not None:
    course_repo: CourseRepo = PgCourseRepo(async_session_factory)
    enrollment_store: EnrollmentStore = PgEnrollmentStore(
        async_session_factory, lock_timeout=SETTINGS.lock_timeout_seconds
    )
else:
    course_repo = InMemoryCourseRepo(memory_db)
    enrollment_store = InMemoryEnrollmentStore(
        memory_db, lock_timeout=SETTINGS.lock_timeout_seconds
    )


def using_memory_backend() -> bool:
    return async_session_factory is None
