"""create progression tables

Revision ID: 3b7e21c4d9a0
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b7e21c4d9a0"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "courses",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("title", sa.String(length=500), nullable=False),
    )
    op.create_table(
        "modules",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "course_id",
            sa.String(length=64),
            sa.ForeignKey("courses.id"),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=500), nullable=False, server_default=""),
        sa.Column(
            "prerequisite_module_id",
            sa.String(length=64),
            sa.ForeignKey("modules.id"),
            nullable=True,
        ),
        sa.Column("total_lessons", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("xp_reward", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.CheckConstraint(
            "prerequisite_module_id IS NULL OR prerequisite_module_id <> id",
            name="ck_modules_no_self_prerequisite",
        ),
    )
    op.create_index(
        "ix_modules_prerequisite_module_id", "modules", ["prerequisite_module_id"]
    )
    op.create_table(
        "lessons",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "module_id",
            sa.String(length=64),
            sa.ForeignKey("modules.id"),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=500), nullable=False, server_default=""),
        sa.Column("xp_reward", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_lessons_module_id", "lessons", ["module_id"])
    op.create_table(
        "labs",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "module_id",
            sa.String(length=64),
            sa.ForeignKey("modules.id"),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=500), nullable=False, server_default=""),
        sa.Column(
            "expected_commands",
            postgresql.ARRAY(sa.String()),
            nullable=False,
            server_default="{}",
        ),
        sa.Column("xp_reward", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "xp_grants",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("source_type", sa.String(length=32), nullable=False),
        sa.Column("source_id", sa.String(length=64), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.UniqueConstraint("idempotency_key"),
        sa.CheckConstraint("amount > 0", name="ck_xp_grants_amount_positive"),
    )
    op.create_index("ix_xp_grants_user_created", "xp_grants", ["user_id", "created_at"])
    op.create_index("ix_xp_grants_created", "xp_grants", ["created_at"])

    op.create_table(
        "profiles",
        sa.Column("user_id", sa.String(length=128), primary_key=True),
        sa.Column(
            "display_name", sa.String(length=255), nullable=False, server_default=""
        ),
        sa.Column("xp", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("level", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("streak_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_activity_at", sa.Integer(), nullable=True),
    )
    op.create_index("ix_profiles_xp", "profiles", ["xp"])

    op.create_table(
        "module_progress",
        sa.Column("user_id", sa.String(length=128), primary_key=True),
        sa.Column(
            "module_id",
            sa.String(length=64),
            sa.ForeignKey("modules.id"),
            primary_key=True,
        ),
        sa.Column("is_unlocked", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column(
            "progress_percentage", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("started_at", sa.Integer(), nullable=True),
        sa.Column("completed_at", sa.Integer(), nullable=True),
        sa.CheckConstraint(
            "progress_percentage BETWEEN 0 AND 100",
            name="ck_module_progress_percentage_range",
        ),
    )
    op.create_table(
        "lesson_progress",
        sa.Column("user_id", sa.String(length=128), primary_key=True),
        sa.Column(
            "lesson_id",
            sa.String(length=64),
            sa.ForeignKey("lessons.id"),
            primary_key=True,
        ),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("completed_at", sa.Integer(), nullable=False),
    )
    op.create_table(
        "quiz_progress",
        sa.Column("user_id", sa.String(length=128), primary_key=True),
        sa.Column(
            "lesson_id",
            sa.String(length=64),
            sa.ForeignKey("lessons.id"),
            primary_key=True,
        ),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("total_questions", sa.Integer(), nullable=False),
        sa.Column("xp_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("xp_awarded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_at", sa.Integer(), nullable=False),
    )
    op.create_table(
        "lab_progress",
        sa.Column("user_id", sa.String(length=128), primary_key=True),
        sa.Column(
            "lab_id",
            sa.String(length=64),
            sa.ForeignKey("labs.id"),
            primary_key=True,
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "commands_used",
            postgresql.ARRAY(sa.Text()),
            nullable=False,
            server_default="{}",
        ),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("completed_at", sa.Integer(), nullable=True),
    )
    op.create_table(
        "module_assignments",
        sa.Column("user_id", sa.String(length=128), primary_key=True),
        sa.Column(
            "module_id",
            sa.String(length=64),
            sa.ForeignKey("modules.id"),
            primary_key=True,
        ),
        sa.Column("assigned_by", sa.String(length=128), nullable=False),
        sa.Column("assigned_at", sa.Integer(), nullable=False),
        sa.Column("expires_at", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("module_assignments")
    op.drop_table("lab_progress")
    op.drop_table("quiz_progress")
    op.drop_table("lesson_progress")
    op.drop_table("module_progress")
    op.drop_index("ix_profiles_xp", table_name="profiles")
    op.drop_table("profiles")
    op.drop_index("ix_xp_grants_created", table_name="xp_grants")
    op.drop_index("ix_xp_grants_user_created", table_name="xp_grants")
    op.drop_table("xp_grants")
    op.drop_table("labs")
    op.drop_index("ix_lessons_module_id", table_name="lessons")
    op.drop_table("lessons")
    op.drop_index("ix_modules_prerequisite_module_id", table_name="modules")
    op.drop_table("modules")
    op.drop_table("courses")
