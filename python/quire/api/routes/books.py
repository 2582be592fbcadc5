"""Book routes.

Routes are transport-only:
- Call exactly one service function (book deletion also stops the book's
  publish poll tasks first)
- Return success_response(...) or raise ApiError

No domain logic or raw DB access in routes.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from quire.api.deps import get_db, get_orchestrator, get_payload_source, get_tree_store
from quire.responses import success_response
from quire.schemas.books import BookCreateRequest
from quire.services import books as books_service
from quire.services.publish import PayloadSource, PublishOrchestrator
from quire.services.tree_store import TreeStore

router = APIRouter()


@router.post("/books", status_code=201)
def create_book(
    body: BookCreateRequest,
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """Create a book. The slug is derived from the title and made unique."""
    book = books_service.create_book(db, body.title, language=body.language)
    return success_response(book.model_dump(mode="json"))


@router.get("/books")
def list_books(db: Annotated[Session, Depends(get_db)]) -> dict:
    """List books, newest first."""
    books = books_service.list_books(db)
    return success_response([b.model_dump(mode="json") for b in books])


@router.get("/books/{book_id}")
def get_book(book_id: UUID, db: Annotated[Session, Depends(get_db)]) -> dict:
    book = books_service.get_book(db, book_id)
    return success_response(book.model_dump(mode="json"))


@router.delete("/books/{book_id}", status_code=204)
async def delete_book(
    book_id: UUID,
    db: Annotated[Session, Depends(get_db)],
    orchestrator: Annotated[PublishOrchestrator, Depends(get_orchestrator)],
    tree_store: Annotated[TreeStore, Depends(get_tree_store)],
) -> Response:
    """Delete a book, its chapters and its publish jobs.

    Poll tasks for the book are stopped first; its jobs are removed with it.
    The book's in-process locks are dropped afterwards.
    """
    await orchestrator.stop_polling_for_book(book_id)
    await run_in_threadpool(books_service.delete_book, db, book_id)
    orchestrator.forget_book(book_id)
    tree_store.forget_book(book_id)
    return Response(status_code=204)


@router.get("/books/{book_id}/payload")
def get_payload(
    book_id: UUID,
    payloads: Annotated[PayloadSource, Depends(get_payload_source)],
) -> dict:
    """The document the external builder consumes for this book."""
    return success_response(payloads.load(book_id))
