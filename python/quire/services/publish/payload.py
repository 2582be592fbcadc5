"""Builder payload.

The document the external builder consumes: book metadata plus one entry per
chapter in pre-order. Each entry links back to the chapter resource so the
builder can fetch content, and carries the heading tag the chapter title is
rendered with (level 0 -> h2, capped at h6).
"""

from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from quire.db.models import Book
from quire.db.session import session_scope
from quire.errors import ApiErrorCode, NotFoundError
from quire.services.tree_store import ChapterSnapshot, TreeStore


def heading_tag(level: int) -> str:
    return f"h{min(level + 2, 6)}"


def build_payload(book: Book, snapshot: ChapterSnapshot, public_base_url: str) -> dict:
    base = public_base_url.rstrip("/")
    chapters = [
        {
            "id": str(chapter.id),
            "title": chapter.title,
            "order": chapter.order,
            "level": chapter.level,
            "parent": str(chapter.parent_id) if chapter.parent_id else None,
            "url": f"{base}/books/{book.id}/chapters/{chapter.id}",
            "title_tag": heading_tag(chapter.level),
        }
        for chapter in snapshot
    ]
    return {
        "book": {
            "id": str(book.id),
            "slug": book.slug,
            "title": book.title,
            "language": book.language,
            "tree_version": snapshot.version,
            "chapters": chapters,
        }
    }


class PayloadSource:
    """Loads builder payloads for books, and knows where they are served."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        tree_store: TreeStore,
        public_base_url: str,
    ):
        self._session_factory = session_factory
        self._tree_store = tree_store
        self._base_url = public_base_url.rstrip("/")

    def load(self, book_id: UUID) -> dict:
        """Raises NotFoundError if the book does not exist."""
        with session_scope(self._session_factory) as db:
            book = db.get(Book, book_id)
            if book is None:
                raise NotFoundError(ApiErrorCode.E_BOOK_NOT_FOUND, "Book not found")
        snapshot = self._tree_store.snapshot(book_id)
        return build_payload(book, snapshot, self._base_url)

    def url_for(self, book_id: UUID) -> str:
        return f"{self._base_url}/books/{book_id}/payload"
