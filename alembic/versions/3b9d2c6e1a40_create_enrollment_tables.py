"""create catalog and enrollment tables

Revision ID: 3b9d2c6e1a40
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b9d2c6e1a40"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=True)


def upgrade() -> None:
    op.create_table(
        "courses",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("discount_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("level", sa.String(length=32), nullable=False, server_default="beginner"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="draft"),
        sa.Column("duration_hours", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_students", sa.Integer(), nullable=True),
        sa.Column("enrolled_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("available_slots", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tags", sa.JSON(), nullable=True),
        sa.UniqueConstraint("code", name="courses_code_key"),
        sa.UniqueConstraint("slug", name="courses_slug_key"),
    )
    op.create_index("ix_courses_status", "courses", ["status"])

    op.create_table(
        "modules",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "course_id",
            sa.Integer(),
            sa.ForeignKey("courses.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "lessons",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "module_id",
            sa.Integer(),
            sa.ForeignKey("modules.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False, server_default="video"),
        sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "students",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=False),
        sa.Column("last_name", sa.String(length=100), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=True),
        sa.Column("country", sa.String(length=2), nullable=True),
        sa.Column("postal_code", sa.String(length=20), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("preferences", sa.JSON(), nullable=True),
        _timestamp("created_at"),
        sa.UniqueConstraint("email", name="students_email_key"),
    )

    op.create_table(
        "enrollments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("enrollment_number", sa.String(length=32), nullable=False),
        sa.Column(
            "student_id",
            sa.Integer(),
            sa.ForeignKey("students.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "course_id",
            sa.Integer(),
            sa.ForeignKey("courses.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("amount_paid", sa.Numeric(10, 2), nullable=False),
        sa.Column(
            "discount_applied", sa.Numeric(10, 2), nullable=False, server_default="0"
        ),
        sa.Column("coupon_code", sa.String(length=50), nullable=True),
        _timestamp("enrolled_at"),
        _timestamp("started_at"),
        _timestamp("completed_at"),
        _timestamp("expires_at"),
        sa.Column("progress_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("custom_fields", sa.JSON(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.UniqueConstraint("enrollment_number", name="enrollments_enrollment_number_key"),
        sa.UniqueConstraint("student_id", "course_id", name="student_course_unique"),
    )
    op.create_index(
        "ix_enrollments_status_enrolled_at", "enrollments", ["status", "enrolled_at"]
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("transaction_id", sa.String(length=32), nullable=False),
        sa.Column(
            "enrollment_id",
            sa.Integer(),
            sa.ForeignKey("enrollments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("method", sa.String(length=32), nullable=False),
        sa.Column("gateway", sa.String(length=64), nullable=True),
        sa.Column("gateway_transaction_id", sa.String(length=128), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        _timestamp("paid_at"),
        sa.UniqueConstraint("transaction_id", name="payments_transaction_id_key"),
        sa.UniqueConstraint("enrollment_id", name="payments_enrollment_id_key"),
    )

    op.create_table(
        "lesson_progress",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "enrollment_id",
            sa.Integer(),
            sa.ForeignKey("enrollments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "lesson_id",
            sa.Integer(),
            sa.ForeignKey("lessons.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("time_spent_minutes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("score", sa.Numeric(5, 2), nullable=True),
        _timestamp("started_at"),
        _timestamp("completed_at"),
        sa.Column("data", sa.JSON(), nullable=True),
        sa.UniqueConstraint("enrollment_id", "lesson_id", name="enrollment_lesson_unique"),
    )
    op.create_index(
        "ix_lesson_progress_enrollment_completed",
        "lesson_progress",
        ["enrollment_id", "is_completed"],
    )


def downgrade() -> None:
    op.drop_index("ix_lesson_progress_enrollment_completed", table_name="lesson_progress")
    op.drop_table("lesson_progress")
    op.drop_table("payments")
    op.drop_index("ix_enrollments_status_enrolled_at", table_name="enrollments")
    op.drop_table("enrollments")
    op.drop_table("students")
    op.drop_table("lessons")
    op.drop_table("modules")
    op.drop_index("ix_courses_status", table_name="courses")
    op.drop_table("courses")
