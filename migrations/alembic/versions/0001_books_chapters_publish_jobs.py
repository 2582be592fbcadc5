"""Books, chapter forest and publish jobs

Revision ID: 0001
Revises:
Create Date: 2026-10-18

Creates tables:
  - books (tree_version is the optimistic-concurrency counter for the forest)
  - chapters (flat forest: parent_id, order among siblings, level = depth)
  - publish_jobs (publish job state machine records)

Adds indexes:
  - ix_chapters_book_parent_order (book_id, parent_id, order)
  - uix_publish_jobs_active_book_format (unique on book_id, format while the
    job is queued, submitting or running)
  - ix_publish_jobs_book_created (book_id, created_at)
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_ACTIVE_STATES_SQL = "state IN ('queued', 'submitting', 'running')"


def upgrade() -> None:
    # Enable pgcrypto extension for gen_random_uuid()
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    # ==========================================================================
    # books table
    # ==========================================================================
    op.create_table(
        "books",
        sa.Column(
            "id",
            PG_UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("slug", sa.Text(), nullable=False),
        sa.Column("language", sa.Text(), server_default="en", nullable=False),
        sa.Column("tree_version", sa.Integer(), server_default="0", nullable=False),
        sa.Column(
            "created_at", TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
        sa.Column(
            "updated_at", TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("slug", name="uq_books_slug"),
        sa.CheckConstraint("tree_version >= 0", name="ck_books_tree_version_nonneg"),
    )

    # ==========================================================================
    # chapters table
    # ==========================================================================
    op.create_table(
        "chapters",
        sa.Column(
            "id",
            PG_UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "book_id",
            PG_UUID(as_uuid=True),
            sa.ForeignKey("books.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("parent_id", PG_UUID(as_uuid=True), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("content", sa.Text(), server_default="", nullable=False),
        sa.Column("order", sa.Integer(), nullable=False),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column(
            "created_at", TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
        sa.Column(
            "updated_at", TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
        sa.PrimaryKeyConstraint("id"),
        # Subtrees are deleted in one statement, so the check runs after the
        # whole subtree is gone.
        sa.ForeignKeyConstraint(["parent_id"], ["chapters.id"], name="fk_chapters_parent"),
        sa.CheckConstraint('"order" >= 0', name="ck_chapters_order_nonneg"),
        sa.CheckConstraint("level >= 0", name="ck_chapters_level_nonneg"),
        sa.CheckConstraint(
            "parent_id IS NULL OR parent_id <> id", name="ck_chapters_parent_nonself"
        ),
        sa.CheckConstraint(
            "char_length(trim(title)) BETWEEN 1 AND 255", name="ck_chapters_title_length"
        ),
    )
    op.create_index(
        "ix_chapters_book_parent_order",
        "chapters",
        ["book_id", "parent_id", "order"],
    )

    # ==========================================================================
    # publish_jobs table
    # ==========================================================================
    op.create_table(
        "publish_jobs",
        sa.Column(
            "id",
            PG_UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "book_id",
            PG_UUID(as_uuid=True),
            sa.ForeignKey("books.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("format", sa.String(16), nullable=False),
        sa.Column("state", sa.String(16), server_default="queued", nullable=False),
        sa.Column("external_handle", sa.Text(), nullable=True),
        sa.Column("result_url", sa.Text(), nullable=True),
        sa.Column("error_code", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("poll_failures", sa.Integer(), server_default="0", nullable=False),
        sa.Column(
            "created_at", TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
        sa.Column(
            "updated_at", TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
        sa.Column("submitted_at", TIMESTAMP(timezone=True), nullable=True),
        sa.Column("running_since", TIMESTAMP(timezone=True), nullable=True),
        sa.Column("finished_at", TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("format IN ('pdf', 'epub', 'mobi')", name="ck_publish_jobs_format"),
        sa.CheckConstraint(
            "state IN ('queued', 'submitting', 'running', 'succeeded', 'failed', 'canceled')",
            name="ck_publish_jobs_state",
        ),
        sa.CheckConstraint(
            "(state = 'succeeded') = (result_url IS NOT NULL)",
            name="ck_publish_jobs_result_url_iff_succeeded",
        ),
        sa.CheckConstraint(
            "attempt_count >= 0 AND poll_failures >= 0", name="ck_publish_jobs_counters_nonneg"
        ),
    )
    op.create_index(
        "uix_publish_jobs_active_book_format",
        "publish_jobs",
        ["book_id", "format"],
        unique=True,
        postgresql_where=sa.text(_ACTIVE_STATES_SQL),
    )
    op.create_index(
        "ix_publish_jobs_book_created",
        "publish_jobs",
        ["book_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_publish_jobs_book_created", table_name="publish_jobs")
    op.drop_index("uix_publish_jobs_active_book_format", table_name="publish_jobs")
    op.drop_table("publish_jobs")
    op.drop_index("ix_chapters_book_parent_order", table_name="chapters")
    op.drop_table("chapters")
    op.drop_table("books")
