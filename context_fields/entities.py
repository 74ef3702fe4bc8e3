# context_fields/entities.py
from datetime import datetime, timezone
from uuid import uuid4
from sqlalchemy.orm import Mapped, declarative_base, mapped_column
from sqlalchemy.dialects.postgresql import JSONB, UUID as PGUUID
from sqlalchemy import (
    DateTime,
    Index,
    JSON,
    String,
    UniqueConstraint,
)

from typing import Any, TypeAlias
UUID: TypeAlias = str
Base = declarative_base()

# JSONB on Postgres, plain JSON elsewhere (tests run on SQLite)
JsonDocument = JSON().with_variant(JSONB(), "postgresql")
# UUID strings on Postgres, VARCHAR elsewhere
UuidString = String(36).with_variant(PGUUID(as_uuid=False), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )


class ProjectContextRecord(Base, TimestampMixin):
    """One row per project: canonical field name -> value, created at onboarding."""

    __tablename__ = "project_contexts"

    id: Mapped[UUID] = mapped_column(
        UuidString,
        primary_key=True,
        default=lambda: str(uuid4()),
    )

    project_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    user_id: Mapped[str | None] = mapped_column(String(64))

    # canonical field name -> value
    fields: Mapped[dict[str, Any]] = mapped_column(
        JsonDocument,
        nullable=False,
        default=dict,
    )


class TaskFieldOverrideRecord(Base, TimestampMixin):
    """
    A task-scoped value for one canonical field. At most one row per
    (project_id, task_id, field_name); writes are upserts.
    """

    __tablename__ = "task_field_overrides"

    id: Mapped[UUID] = mapped_column(
        UuidString,
        primary_key=True,
        default=lambda: str(uuid4()),
    )

    project_id: Mapped[str] = mapped_column(String(64), nullable=False)
    task_id: Mapped[str] = mapped_column(String(128), nullable=False)
    field_name: Mapped[str] = mapped_column(String(128), nullable=False)

    # wrapped as {"v": value} so a JSON null is never confused with SQL NULL
    value: Mapped[dict[str, Any]] = mapped_column(JsonDocument, nullable=False)

    # where the write came from (mini-app id, "bulk_import", ...)
    source: Mapped[str | None] = mapped_column(String(64))
    user_id: Mapped[str | None] = mapped_column(String(64))

    __table_args__ = (
        UniqueConstraint("project_id", "task_id", "field_name", name="uq_task_field_override"),
        Index("ix_task_field_overrides_project_task", "project_id", "task_id"),
    )
