"""Book service.

Books scope a chapter forest and its publish jobs. Creation derives a unique
slug from the title. Deletion removes jobs, chapters and the book in one
transaction; the caller is responsible for stopping any poll loops first.
"""

import re
import unicodedata
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from quire.db.models import Book, Chapter, PublishJob
from quire.errors import ApiErrorCode, InvalidRequestError, NotFoundError
from quire.logging import get_logger
from quire.schemas.books import BookOut

logger = get_logger(__name__)

MAX_SLUG_LENGTH = 80
_NON_SLUG_CHARS = re.compile(r"[^a-z0-9]+")


def slugify(title: str) -> str:
    """Lowercase ASCII slug: 'Çay & Simit!' -> 'cay-simit'."""
    ascii_title = unicodedata.normalize("NFKD", title).encode("ascii", "ignore").decode("ascii")
    slug = _NON_SLUG_CHARS.sub("-", ascii_title.lower()).strip("-")
    return slug[:MAX_SLUG_LENGTH].rstrip("-") or "book"


def _unique_slug(db: Session, base: str) -> str:
    taken = set(
        db.execute(
            select(Book.slug).where((Book.slug == base) | Book.slug.like(f"{base}-%"))
        ).scalars()
    )
    if base not in taken:
        return base
    n = 2
    while f"{base}-{n}" in taken:
        n += 1
    return f"{base}-{n}"


def create_book(db: Session, title: str, language: str = "en") -> BookOut:
    title = title.strip()
    if not title:
        raise InvalidRequestError(message="Book title is required")

    book = Book(title=title, slug=_unique_slug(db, slugify(title)), language=language)
    db.add(book)
    db.commit()

    logger.info("book_created", book_id=str(book.id), slug=book.slug)
    return BookOut.model_validate(book)


def get_book(db: Session, book_id: UUID) -> BookOut:
    book = db.get(Book, book_id)
    if book is None:
        raise NotFoundError(ApiErrorCode.E_BOOK_NOT_FOUND, "Book not found")
    return BookOut.model_validate(book)


def list_books(db: Session) -> list[BookOut]:
    books = db.execute(select(Book).order_by(Book.created_at.desc())).scalars().all()
    return [BookOut.model_validate(b) for b in books]


def delete_book(db: Session, book_id: UUID) -> None:
    """Delete a book with all its chapters and publish jobs."""
    if db.get(Book, book_id) is None:
        raise NotFoundError(ApiErrorCode.E_BOOK_NOT_FOUND, "Book not found")

    chapter_count = db.execute(
        select(func.count()).select_from(Chapter).where(Chapter.book_id == book_id)
    ).scalar_one()

    db.execute(delete(PublishJob).where(PublishJob.book_id == book_id))
    db.execute(delete(Chapter).where(Chapter.book_id == book_id))
    db.execute(delete(Book).where(Book.id == book_id))
    db.commit()

    logger.info("book_deleted", book_id=str(book_id), chapter_count=chapter_count)
