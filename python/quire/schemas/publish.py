"""Publish job Pydantic schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from quire.db.models import PublishFormat, PublishJobState


class PublishSubmitOut(BaseModel):
    """Response schema for POST /books/{book_id}/publish/{format}."""

    job_id: UUID
    state: PublishJobState


class PublishJobOut(BaseModel):
    """Full publish job record."""

    id: UUID
    book_id: UUID
    format: PublishFormat
    state: PublishJobState
    external_handle: str | None
    result_url: str | None
    error_code: str | None
    error: str | None
    attempt_count: int
    poll_failures: int
    created_at: datetime
    updated_at: datetime
    submitted_at: datetime | None
    running_since: datetime | None
    finished_at: datetime | None

    model_config = ConfigDict(from_attributes=True)
