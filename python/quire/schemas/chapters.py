"""Chapter and chapter-tree Pydantic schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from quire.services.tree_store import ChapterSnapshot, ChapterTreeNode


class ChapterOut(BaseModel):
    """A single chapter, flat."""

    id: UUID
    book_id: UUID
    parent_id: UUID | None
    title: str
    content: str
    order: int
    level: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ChapterNodeOut(BaseModel):
    """A chapter with its children, for nested forest responses.

    content is omitted; fetch a single chapter to read it.
    """

    id: UUID
    parent_id: UUID | None
    title: str
    order: int
    level: int
    children: list["ChapterNodeOut"]

    @classmethod
    def from_node(cls, node: ChapterTreeNode) -> "ChapterNodeOut":
        chapter = node.chapter
        return cls(
            id=chapter.id,
            parent_id=chapter.parent_id,
            title=chapter.title,
            order=chapter.order,
            level=chapter.level,
            children=[cls.from_node(child) for child in node.children],
        )


class ChapterTreeOut(BaseModel):
    """Response schema for a book's chapter forest."""

    book_id: UUID
    tree_version: int
    chapter_count: int
    chapters: list[ChapterNodeOut]

    @classmethod
    def from_snapshot(cls, snapshot: ChapterSnapshot) -> "ChapterTreeOut":
        return cls(
            book_id=snapshot.book_id,
            tree_version=snapshot.version,
            chapter_count=len(snapshot),
            chapters=[ChapterNodeOut.from_node(root) for root in snapshot.roots()],
        )


class ChapterCreateRequest(BaseModel):
    """Request schema for POST /books/{book_id}/chapters."""

    title: str = Field(min_length=1, max_length=255)
    content: str = ""
    parent_id: UUID | None = None
    index: int | None = Field(default=None, ge=0)


class ChapterUpdateRequest(BaseModel):
    """Request schema for PATCH /books/{book_id}/chapters/{chapter_id}."""

    title: str | None = Field(default=None, min_length=1, max_length=255)
    content: str | None = None

    @model_validator(mode="after")
    def require_a_field(self) -> "ChapterUpdateRequest":
        if self.title is None and self.content is None:
            raise ValueError("title or content is required")
        return self


class ChapterMoveRequest(BaseModel):
    """Request schema for POST /books/{book_id}/chapters/{chapter_id}/move.

    parent_id null moves the chapter to the root level. index is clamped
    to the target sibling list.
    """

    parent_id: UUID | None = None
    index: int
