"""Sample catalog for running the service without PostgreSQL.

Loaded by the app lifespan in dev when the in-memory stores are active,
so the enrollment and search endpoints have something to work against.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from app.db.memory import InMemoryDatabase
from app.models.course import Course, Lesson, Module

logger = logging.getLogger(__name__)

_CATALOG = [
    {
        "code": "PY-101",
        "slug": "python-fundamentals",
        "title": "Python Fundamentals",
        "description": "Variables, control flow, functions and the standard library.",
        "price": Decimal("149.00"),
        "discount_price": Decimal("99.00"),
        "level": "beginner",
        "duration_hours": 20,
        "max_students": 100,
        "tags": ("python", "programming"),
        "modules": [
            ("Getting started", ["Installing Python", "Your first script"]),
            ("Control flow", ["Conditionals", "Loops", "Quiz: control flow"]),
        ],
    },
    {
        "code": "DATA-201",
        "slug": "data-analysis-with-pandas",
        "title": "Data Analysis with pandas",
        "description": "Cleaning, reshaping and summarising tabular data.",
        "price": Decimal("199.00"),
        "level": "intermediate",
        "duration_hours": 30,
        "max_students": 25,
        "tags": ("python", "data"),
        "modules": [
            ("DataFrames", ["Series and DataFrames", "Indexing"]),
            ("Aggregation", ["groupby", "Pivot tables", "Assignment: sales report"]),
        ],
    },
    {
        "code": "ASYNC-301",
        "slug": "async-python-in-production",
        "title": "Async Python in Production",
        "description": "Event loops, cancellation and backpressure.",
        "price": Decimal("249.00"),
        "level": "advanced",
        "duration_hours": 15,
        "max_students": 2,
        "tags": ("python", "asyncio"),
        "modules": [
            ("The event loop", ["Coroutines and tasks", "Cancellation"]),
        ],
    },
]


def _lesson_type(title: str) -> str:
    if title.startswith("Quiz"):
        return "quiz"
    if title.startswith("Assignment"):
        return "assignment"
    return "video"


def seed_catalog(db: InMemoryDatabase) -> int:
    """Add the sample courses as published.  Returns the number added."""
    for entry in _CATALOG:
        course = db.add_course(
            Course(
                id=0,
                code=entry["code"],
                slug=entry["slug"],
                title=entry["title"],
                description=entry["description"],
                price=entry["price"],
                discount_price=entry.get("discount_price"),
                level=entry["level"],
                status="published",
                duration_hours=entry["duration_hours"],
                max_students=entry["max_students"],
                available_slots=entry["max_students"],
                tags=entry["tags"],
            )
        )
        for m_pos, (module_title, lesson_titles) in enumerate(entry["modules"], 1):
            module = db.add_module(
                Module(id=0, course_id=course.id, title=module_title, position=m_pos)
            )
            for l_pos, lesson_title in enumerate(lesson_titles, 1):
                db.add_lesson(
                    Lesson(
                        id=0,
                        module_id=module.id,
                        title=lesson_title,
                        position=l_pos,
                        type=_lesson_type(lesson_title),
                        duration_minutes=15,
                    )
                )
    logger.info("Seeded %d sample courses", len(_CATALOG))
    return len(_CATALOG)
