"""Pydantic schemas for request/response models.

All schemas are re-exported here for convenient imports.
"""

from quire.schemas.books import BookCreateRequest, BookOut
from quire.schemas.chapters import (
    ChapterCreateRequest,
    ChapterMoveRequest,
    ChapterNodeOut,
    ChapterOut,
    ChapterTreeOut,
    ChapterUpdateRequest,
)
from quire.schemas.publish import PublishJobOut, PublishSubmitOut

__all__ = [
    "BookCreateRequest",
    "BookOut",
    "ChapterCreateRequest",
    "ChapterMoveRequest",
    "ChapterNodeOut",
    "ChapterOut",
    "ChapterTreeOut",
    "ChapterUpdateRequest",
    "PublishJobOut",
    "PublishSubmitOut",
]
