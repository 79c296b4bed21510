from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from app.db.memory import InMemoryDatabase
from app.models.course import Course, ModuleOutline

MAX_PER_PAGE = 50


@dataclass(frozen=True, slots=True)
class CourseQuery:
    q: str | None = None
    level: str | None = None
    max_price: Decimal | None = None
    page: int = 1
    per_page: int = 15

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page


class CourseRepo(Protocol):
    async def get_by_id(self, course_id: int) -> Course | None: ...
    async def get_by_code(self, code: str) -> Course | None: ...
    async def outline(self, course_id: int) -> list[ModuleOutline]: ...
    async def search(self, query: CourseQuery) -> tuple[list[Course], int]: ...


class InMemoryCourseRepo:
    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db

    async def get_by_id(self, course_id: int) -> Course | None:
        return self._db.courses.get(course_id)

    async def get_by_code(self, code: str) -> Course | None:
        for course in self._db.courses.values():
            if course.code == code:
                return course
        return None

    async def outline(self, course_id: int) -> list[ModuleOutline]:
        modules = sorted(
            (m for m in self._db.modules.values() if m.course_id == course_id),
            key=lambda m: (m.position, m.id),
        )
        result = []
        for module in modules:
            lessons = sorted(
                (les for les in self._db.lessons.values() if les.module_id == module.id),
                key=lambda les: (les.position, les.id),
            )
            result.append(ModuleOutline(module=module, lessons=tuple(lessons)))
        return result

    async def search(self, query: CourseQuery) -> tuple[list[Course], int]:
        needle = query.q.lower() if query.q else None
        matches = []
        for course in self._db.courses.values():
            if not course.is_published():
                continue
            if needle and not any(
                needle in field.lower()
                for field in (course.title, course.description, course.code)
            ):
                continue
            if query.level and course.level != query.level:
                continue
            if query.max_price is not None and course.effective_price > query.max_price:
                continue
            matches.append(course)

        matches.sort(key=lambda c: (-c.enrolled_count, c.title))
        page = matches[query.offset : query.offset + query.per_page]
        return page, len(matches)
