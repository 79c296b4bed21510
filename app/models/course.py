from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal


@dataclass(frozen=True, slots=True)
class Course:
    id: int
    code: str
    slug: str
    title: str
    price: Decimal
    description: str = ""
    discount_price: Decimal | None = None
    level: str = "beginner"  # beginner|intermediate|advanced
    status: str = "draft"  # draft|published|archived
    duration_hours: int = 0
    max_students: int | None = None
    enrolled_count: int = 0
    available_slots: int = 0
    tags: tuple[str, ...] = ()

    @property
    def effective_price(self) -> Decimal:
        return self.discount_price if self.discount_price is not None else self.price

    def is_published(self) -> bool:
        return self.status == "published"

    def has_available_slots(self) -> bool:
        return self.available_slots > 0

    def with_seat_taken(self) -> Course:
        if self.available_slots <= 0:
            raise ValueError(f"course {self.id} has no available slots")
        return replace(
            self,
            available_slots=self.available_slots - 1,
            enrolled_count=self.enrolled_count + 1,
        )

    def with_seat_released(self) -> Course:
        return replace(
            self,
            available_slots=self.available_slots + 1,
            enrolled_count=max(self.enrolled_count - 1, 0),
        )


@dataclass(frozen=True, slots=True)
class Module:
    id: int
    course_id: int
    title: str
    position: int
    duration_minutes: int = 0


@dataclass(frozen=True, slots=True)
class Lesson:
    id: int
    module_id: int
    title: str
    position: int
    type: str = "video"  # video|text|quiz|assignment
    duration_minutes: int = 0


@dataclass(frozen=True, slots=True)
class ModuleOutline:
    """A module with its lessons in position order."""

    module: Module
    lessons: tuple[Lesson, ...]
