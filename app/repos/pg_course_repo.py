"""PostgreSQL implementation of CourseRepo."""

from __future__ import annotations

from collections import defaultdict

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.tables import CourseRow, LessonRow, ModuleRow
from app.models.course import Course, Lesson, Module, ModuleOutline
from app.repos.course_repo import CourseQuery


class PgCourseRepo:
    """Satisfies the CourseRepo Protocol using PostgreSQL via SQLAlchemy.

    Every call runs in its own short session: catalog reads never join
    an enrollment transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_by_id(self, course_id: int) -> Course | None:
        async with self._session_factory() as session:
            row = await session.get(CourseRow, course_id)
            return _row_to_course(row) if row is not None else None

    async def get_by_code(self, code: str) -> Course | None:
        stmt = select(CourseRow).where(CourseRow.code == code)
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _row_to_course(row) if row is not None else None

    async def outline(self, course_id: int) -> list[ModuleOutline]:
        module_stmt = (
            select(ModuleRow)
            .where(ModuleRow.course_id == course_id)
            .order_by(ModuleRow.position, ModuleRow.id)
        )
        lesson_stmt = (
            select(LessonRow)
            .join(ModuleRow, LessonRow.module_id == ModuleRow.id)
            .where(ModuleRow.course_id == course_id)
            .order_by(LessonRow.position, LessonRow.id)
        )
        async with self._session_factory() as session:
            module_rows = (await session.execute(module_stmt)).scalars().all()
            lesson_rows = (await session.execute(lesson_stmt)).scalars().all()

        lessons_by_module: dict[int, list[Lesson]] = defaultdict(list)
        for row in lesson_rows:
            lessons_by_module[row.module_id].append(_row_to_lesson(row))
        return [
            ModuleOutline(
                module=_row_to_module(row),
                lessons=tuple(lessons_by_module.get(row.id, ())),
            )
            for row in module_rows
        ]

    async def search(self, query: CourseQuery) -> tuple[list[Course], int]:
        conditions = [CourseRow.status == "published"]
        if query.q:
            pattern = _contains_pattern(query.q)
            conditions.append(
                or_(
                    CourseRow.title.ilike(pattern, escape="\\"),
                    CourseRow.description.ilike(pattern, escape="\\"),
                    CourseRow.code.ilike(pattern, escape="\\"),
                )
            )
        if query.level:
            conditions.append(CourseRow.level == query.level)
        if query.max_price is not None:
            effective_price = func.coalesce(CourseRow.discount_price, CourseRow.price)
            conditions.append(effective_price <= query.max_price)

        count_stmt = select(func.count()).select_from(CourseRow).where(*conditions)
        page_stmt = (
            select(CourseRow)
            .where(*conditions)
            .order_by(CourseRow.enrolled_count.desc(), CourseRow.title)
            .offset(query.offset)
            .limit(query.per_page)
        )
        async with self._session_factory() as session:
            total = (await session.execute(count_stmt)).scalar_one()
            rows = (await session.execute(page_stmt)).scalars().all()
        return [_row_to_course(row) for row in rows], total


def _row_to_course(row: CourseRow) -> Course:
    return Course(
        id=row.id,
        code=row.code,
        slug=row.slug,
        title=row.title,
        description=row.description or "",
        price=row.price,
        discount_price=row.discount_price,
        level=row.level,
        status=row.status,
        duration_hours=row.duration_hours,
        max_students=row.max_students,
        enrolled_count=row.enrolled_count,
        available_slots=row.available_slots,
        tags=tuple(row.tags) if row.tags else (),
    )


def _row_to_module(row: ModuleRow) -> Module:
    return Module(
        id=row.id,
        course_id=row.course_id,
        title=row.title,
        position=row.position,
        duration_minutes=row.duration_minutes,
    )


def _row_to_lesson(row: LessonRow) -> Lesson:
    return Lesson(
        id=row.id,
        module_id=row.module_id,
        title=row.title,
        position=row.position,
        type=row.type,
        duration_minutes=row.duration_minutes,
    )


def _contains_pattern(text: str) -> str:
    """LIKE pattern matching ``text`` literally; % and _ in a search are not wildcards."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"
