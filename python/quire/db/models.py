"""SQLAlchemy ORM models for Quire.

Defines all database tables using SQLAlchemy 2.x declarative patterns.
Enums are Python enums stored as constrained text so the same models run on
PostgreSQL and SQLite.
"""

from datetime import UTC, datetime
from enum import Enum as PyEnum
from uuid import UUID, uuid4

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# =============================================================================
# Enums
# =============================================================================


class PublishFormat(str, PyEnum):
    """Artifact formats the external builder can produce."""

    pdf = "pdf"
    epub = "epub"
    mobi = "mobi"


class PublishJobState(str, PyEnum):
    """Publish job lifecycle states.

    States:
        queued: Created, waiting for the orchestrator to hand off
        submitting: Builder submit call in flight
        running: Builder accepted the job; status is being polled
        succeeded: Builder reported an artifact (terminal)
        failed: Submit failed, builder reported failure, or polling gave up (terminal)
        canceled: Canceled by a caller (terminal)
    """

    queued = "queued"
    submitting = "submitting"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    canceled = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATES


TERMINAL_JOB_STATES = frozenset(
    {PublishJobState.succeeded, PublishJobState.failed, PublishJobState.canceled}
)
ACTIVE_JOB_STATES = frozenset(set(PublishJobState) - TERMINAL_JOB_STATES)


class DeleteStrategy(str, PyEnum):
    """What happens to a deleted chapter's children."""

    cascade = "cascade"
    promote_children = "promote_children"


# =============================================================================
# Models
# =============================================================================


class Book(Base):
    """A book owns one chapter forest and its publish jobs."""

    __tablename__ = "books"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    slug: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    language: Mapped[str] = mapped_column(Text, nullable=False, default="en", server_default="en")
    # Optimistic-concurrency counter, bumped by every tree mutation.
    tree_version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )


class Chapter(Base):
    """One node of a book's chapter forest.

    The forest is stored flat: parent_id points at another chapter of the same
    book or is NULL for roots. order is the position among siblings and level
    is the depth (roots are 0).
    """

    __tablename__ = "chapters"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    book_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("books.id", ondelete="CASCADE"),
        nullable=False,
    )
    parent_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("chapters.id"),
        nullable=True,
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    order: Mapped[int] = mapped_column(Integer, nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )

    __table_args__ = (Index("ix_chapters_book_parent_order", "book_id", "parent_id", "order"),)


_ACTIVE_STATES_SQL = "state IN ('queued', 'submitting', 'running')"


class PublishJob(Base):
    """A request to build one artifact format for one book."""

    __tablename__ = "publish_jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    book_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("books.id", ondelete="CASCADE"),
        nullable=False,
    )
    format: Mapped[PublishFormat] = mapped_column(
        Enum(PublishFormat, name="publish_format_enum", native_enum=False, length=16),
        nullable=False,
    )
    state: Mapped[PublishJobState] = mapped_column(
        Enum(PublishJobState, name="publish_job_state_enum", native_enum=False, length=16),
        nullable=False,
        default=PublishJobState.queued,
    )
    external_handle: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    poll_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    running_since: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # At most one non-terminal job per (book, format).
        Index(
            "uix_publish_jobs_active_book_format",
            "book_id",
            "format",
            unique=True,
            postgresql_where=text(_ACTIVE_STATES_SQL),
            sqlite_where=text(_ACTIVE_STATES_SQL),
        ),
        Index("ix_publish_jobs_book_created", "book_id", "created_at"),
    )
