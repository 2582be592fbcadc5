"""Book Pydantic schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class BookCreateRequest(BaseModel):
    """Request schema for POST /books."""

    title: str = Field(min_length=1, max_length=255)
    language: str = Field(default="en", min_length=2, max_length=16)


class BookOut(BaseModel):
    """Response schema for a book."""

    id: UUID
    title: str
    slug: str
    language: str
    tree_version: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)
