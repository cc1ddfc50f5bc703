"""SQLAlchemy table definitions.

These map to the frozen dataclass domain models in progression/models/.
PgProgressionStore converts between rows and dataclasses; nothing outside
progression/repos/ touches a Row class.

User identifiers are the identity provider's subject strings, so they
are plain String columns rather than foreign keys into a users table
this service does not own.
"""

from __future__ import annotations

import uuid

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import ARRAY, UUID
from sqlalchemy.orm import Mapped, mapped_column

from progression.db.engine import Base

# --- Catalogue (written by the content-authoring system) ---


class CourseRow(Base):
    __tablename__ = "courses"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)


class ModuleRow(Base):
    __tablename__ = "modules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    course_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("courses.id"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    prerequisite_module_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("modules.id"), nullable=True, index=True
    )
    total_lessons: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    xp_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class LessonRow(Base):
    __tablename__ = "lessons"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    module_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("modules.id"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    xp_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class LabRow(Base):
    __tablename__ = "labs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    module_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("modules.id"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    expected_commands: Mapped[list[str]] = mapped_column(
        ARRAY(String), nullable=False, default=[]
    )
    xp_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


# --- Ledger (append-only) and its read model ---


class XPGrantRow(Base):
    __tablename__ = "xp_grants"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    source_type: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )

    __table_args__ = (
        Index("ix_xp_grants_user_created", "user_id", "created_at"),
        Index("ix_xp_grants_created", "created_at"),
    )


class ProfileRow(Base):
    """Projection of xp_grants: cached totals per user."""

    __tablename__ = "profiles"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    xp: Mapped[int] = mapped_column(Integer, nullable=False, default=0, index=True)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    streak_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_activity_at: Mapped[int | None] = mapped_column(Integer, nullable=True)


# --- Progress ---


class ModuleProgressRow(Base):
    __tablename__ = "module_progress"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    module_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("modules.id"), primary_key=True
    )
    is_unlocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    progress_percentage: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    started_at: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completed_at: Mapped[int | None] = mapped_column(Integer, nullable=True)


class LessonProgressRow(Base):
    __tablename__ = "lesson_progress"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    lesson_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("lessons.id"), primary_key=True
    )
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    completed_at: Mapped[int] = mapped_column(Integer, nullable=False)


class QuizProgressRow(Base):
    __tablename__ = "quiz_progress"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    lesson_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("lessons.id"), primary_key=True
    )
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    total_questions: Mapped[int] = mapped_column(Integer, nullable=False)
    xp_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    xp_awarded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_at: Mapped[int] = mapped_column(Integer, nullable=False)


class LabProgressRow(Base):
    __tablename__ = "lab_progress"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    lab_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("labs.id"), primary_key=True
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    commands_used: Mapped[list[str]] = mapped_column(
        ARRAY(Text), nullable=False, default=[]
    )
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[int | None] = mapped_column(Integer, nullable=True)


class ModuleAssignmentRow(Base):
    __tablename__ = "module_assignments"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    module_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("modules.id"), primary_key=True
    )
    assigned_by: Mapped[str] = mapped_column(String(128), nullable=False)
    assigned_at: Mapped[int] = mapped_column(Integer, nullable=False)
    expires_at: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
