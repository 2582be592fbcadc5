"""Chapter tree routes.

Every mutation goes through the tree store, which serializes writes per book.
Structural mutations (move, delete) return the resulting forest.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from quire.api.deps import get_tree_store
from quire.db.models import DeleteStrategy
from quire.responses import success_response
from quire.schemas.chapters import (
    ChapterCreateRequest,
    ChapterMoveRequest,
    ChapterOut,
    ChapterTreeOut,
    ChapterUpdateRequest,
)
from quire.services.tree_store import TreeStore

router = APIRouter()

StoreDep = Annotated[TreeStore, Depends(get_tree_store)]


@router.get("/books/{book_id}/chapters")
def get_chapter_tree(book_id: UUID, store: StoreDep) -> dict:
    """The book's chapter forest, nested, siblings in order."""
    snapshot = store.snapshot(book_id)
    return success_response(ChapterTreeOut.from_snapshot(snapshot).model_dump(mode="json"))


@router.post("/books/{book_id}/chapters", status_code=201)
def create_chapter(book_id: UUID, body: ChapterCreateRequest, store: StoreDep) -> dict:
    """Insert a chapter. Appends as the last sibling unless index is given."""
    chapter = store.insert(
        book_id, body.parent_id, body.title, content=body.content, index=body.index
    )
    return success_response(ChapterOut.model_validate(chapter).model_dump(mode="json"))


@router.get("/books/{book_id}/chapters/{chapter_id}")
def get_chapter(book_id: UUID, chapter_id: UUID, store: StoreDep) -> dict:
    chapter = store.get(book_id, chapter_id)
    return success_response(ChapterOut.model_validate(chapter).model_dump(mode="json"))


@router.patch("/books/{book_id}/chapters/{chapter_id}")
def update_chapter(
    book_id: UUID, chapter_id: UUID, body: ChapterUpdateRequest, store: StoreDep
) -> dict:
    """Edit title and/or content. Placement is unchanged."""
    chapter = store.update(book_id, chapter_id, title=body.title, content=body.content)
    return success_response(ChapterOut.model_validate(chapter).model_dump(mode="json"))


@router.post("/books/{book_id}/chapters/{chapter_id}/move")
def move_chapter(
    book_id: UUID, chapter_id: UUID, body: ChapterMoveRequest, store: StoreDep
) -> dict:
    """Move a chapter and its subtree; returns the resulting forest."""
    snapshot = store.move(book_id, chapter_id, body.parent_id, body.index)
    return success_response(ChapterTreeOut.from_snapshot(snapshot).model_dump(mode="json"))


@router.delete("/books/{book_id}/chapters/{chapter_id}")
def delete_chapter(
    book_id: UUID,
    chapter_id: UUID,
    store: StoreDep,
    strategy: Annotated[str, Query(description="cascade | promote_children")] = (
        DeleteStrategy.cascade.value
    ),
) -> dict:
    """Delete a chapter; returns the resulting forest."""
    snapshot = store.delete(book_id, chapter_id, strategy)
    return success_response(ChapterTreeOut.from_snapshot(snapshot).model_dump(mode="json"))
