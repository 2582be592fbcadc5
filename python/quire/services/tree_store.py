"""Chapter tree store.

Owns all writes to a book's chapter forest. Every mutation:
1. Takes the book's serialization scope (process-local lock + book row lock)
2. Loads the whole forest into an arena
3. Asks the ordering engine for a plan
4. Persists the changed rows and bumps books.tree_version in one transaction

tree_version is compared-and-set on write, so a writer that raced past the
locks (another process on a database without row locks) fails with
ConflictError instead of persisting a partially renumbered tree. Callers retry
if they want to; the store never retries on its own.

Reads return immutable ChapterRecord / ChapterSnapshot values detached from
the session.
"""

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session, sessionmaker

from quire.db.models import Book, Chapter, DeleteStrategy, utcnow
from quire.db.session import session_scope
from quire.errors import ApiErrorCode, ConflictError, InvalidRequestError, NotFoundError
from quire.logging import get_logger
from quire.services import ordering
from quire.services.ordering import Node, OrderingPlan

logger = get_logger(__name__)

MAX_TITLE_LENGTH = 255


@dataclass(frozen=True)
class ChapterRecord:
    id: UUID
    book_id: UUID
    parent_id: UUID | None
    title: str
    content: str
    order: int
    level: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: Chapter) -> "ChapterRecord":
        return cls(
            id=row.id,
            book_id=row.book_id,
            parent_id=row.parent_id,
            title=row.title,
            content=row.content,
            order=row.order,
            level=row.level,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def node(self) -> Node:
        return Node(self.id, self.parent_id, self.order, self.level)


@dataclass(frozen=True)
class ChapterTreeNode:
    chapter: ChapterRecord
    children: tuple["ChapterTreeNode", ...]


class ChapterSnapshot:
    """Immutable view of one book's forest at a tree_version.

    Iterating yields chapters in pre-order (siblings by order). Each iteration
    starts a fresh lazy walk, so a snapshot can be traversed any number of times.
    """

    def __init__(self, book_id: UUID, version: int, chapters: list[ChapterRecord]):
        self.book_id = book_id
        self.version = version
        self._by_id = {c.id: c for c in chapters}
        self._arena = {c.id: c.node() for c in chapters}

    def __iter__(self) -> Iterator[ChapterRecord]:
        return (self._by_id[i] for i in ordering.preorder(self._arena))

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, chapter_id: object) -> bool:
        return chapter_id in self._by_id

    def get(self, chapter_id: UUID) -> ChapterRecord | None:
        return self._by_id.get(chapter_id)

    def children_of(self, parent_id: UUID | None) -> list[ChapterRecord]:
        return [self._by_id[i] for i in ordering.siblings(self._arena, parent_id)]

    def roots(self) -> list[ChapterTreeNode]:
        """Build the nested forest."""
        index = ordering.children_index(self._arena)

        def build(chapter_id: UUID) -> ChapterTreeNode:
            return ChapterTreeNode(
                chapter=self._by_id[chapter_id],
                children=tuple(build(child) for child in index.get(chapter_id, [])),
            )

        return [build(root) for root in index.get(None, [])]

    def problems(self) -> list[str]:
        return ordering.validate_forest(self._arena)


class BookLocks:
    """Process-local mutual exclusion, one lock per book.

    Operations on different books never contend.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[UUID, threading.RLock] = {}

    @contextmanager
    def hold(self, book_id: UUID) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(book_id, threading.RLock())
        with lock:
            yield

    def discard(self, book_id: UUID) -> None:
        with self._guard:
            self._locks.pop(book_id, None)


def _snapshot_of(book_id: UUID, version: int, rows: dict[UUID, Chapter]) -> ChapterSnapshot:
    return ChapterSnapshot(book_id, version, [ChapterRecord.from_row(r) for r in rows.values()])


def _validate_title(title: str) -> str:
    title = (title or "").strip()
    if not title or len(title) > MAX_TITLE_LENGTH:
        raise InvalidRequestError(
            message=f"Chapter title must be between 1 and {MAX_TITLE_LENGTH} characters"
        )
    return title


class TreeStore:
    """Serialized, durable operations on one book's chapter forest at a time."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        locks: BookLocks | None = None,
    ):
        self._session_factory = session_factory
        self._locks = locks or BookLocks()

    def forget_book(self, book_id: UUID) -> None:
        """Drop the lock of a deleted book."""
        self._locks.discard(book_id)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def snapshot(self, book_id: UUID) -> ChapterSnapshot:
        """Read the whole forest in one statement. Never mutates state."""
        with session_scope(self._session_factory) as db:
            book = self._get_book(db, book_id)
            rows = self._load_rows(db, book_id)
            return _snapshot_of(book_id, book.tree_version, rows)

    def get(self, book_id: UUID, chapter_id: UUID) -> ChapterRecord:
        with session_scope(self._session_factory) as db:
            self._get_book(db, book_id)
            row = self._get_chapter(db, book_id, chapter_id)
            return ChapterRecord.from_row(row)

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def insert(
        self,
        book_id: UUID,
        parent_id: UUID | None,
        title: str,
        content: str = "",
        index: int | None = None,
    ) -> ChapterRecord:
        """Create a chapter under parent_id (root if None).

        Appends as last sibling unless index is given.
        """
        title = _validate_title(title)
        new_id = uuid4()

        def plan(arena: dict[UUID, Node]) -> OrderingPlan:
            return ordering.plan_insert(arena, new_id, parent_id, index)

        snapshot = self._mutate(
            book_id,
            "chapter_inserted",
            plan,
            new_rows={new_id: {"title": title, "content": content or ""}},
            chapter_id=new_id,
        )
        return snapshot.get(new_id)  # type: ignore[return-value]

    def move(
        self,
        book_id: UUID,
        chapter_id: UUID,
        new_parent_id: UUID | None,
        new_index: int,
    ) -> ChapterSnapshot:
        """Move a chapter (and its subtree) to new_index under new_parent_id.

        Raises:
            NotFoundError: Book, chapter or new parent missing from this book
            CycleError: new_parent_id is the chapter or one of its descendants
        """

        def plan(arena: dict[UUID, Node]) -> OrderingPlan:
            return ordering.plan_move(arena, chapter_id, new_parent_id, new_index)

        return self._mutate(
            book_id,
            "chapter_moved",
            plan,
            chapter_id=chapter_id,
            new_parent_id=new_parent_id,
            new_index=new_index,
        )

    def delete(
        self,
        book_id: UUID,
        chapter_id: UUID,
        strategy: DeleteStrategy | str = DeleteStrategy.cascade,
    ) -> ChapterSnapshot:
        """Delete a chapter with the given child policy (cascade | promote_children)."""
        try:
            strategy = DeleteStrategy(strategy)
        except ValueError as exc:
            raise InvalidRequestError(
                ApiErrorCode.E_INVALID_STRATEGY, f"Unknown delete strategy: {strategy}"
            ) from exc

        def plan(arena: dict[UUID, Node]) -> OrderingPlan:
            return ordering.plan_delete(arena, chapter_id, strategy)

        return self._mutate(
            book_id, "chapter_deleted", plan, chapter_id=chapter_id, strategy=strategy.value
        )

    def update(
        self,
        book_id: UUID,
        chapter_id: UUID,
        *,
        title: str | None = None,
        content: str | None = None,
    ) -> ChapterRecord:
        """Edit a chapter's text. Placement (parent, order, level) is untouched."""
        if title is not None:
            title = _validate_title(title)

        with self._locks.hold(book_id), session_scope(self._session_factory) as db:
            self._get_book(db, book_id, for_update=True)
            row = self._get_chapter(db, book_id, chapter_id)
            if title is not None:
                row.title = title
            if content is not None:
                row.content = content
            row.updated_at = utcnow()
            db.flush()
            return ChapterRecord.from_row(row)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _mutate(
        self,
        book_id: UUID,
        event: str,
        make_plan: Callable[[dict[UUID, Node]], OrderingPlan],
        new_rows: dict[UUID, dict] | None = None,
        **log_fields,
    ) -> ChapterSnapshot:
        """Run one planned mutation inside the book's serialization scope.

        Returns the forest as committed by this mutation.
        """
        with self._locks.hold(book_id), session_scope(self._session_factory) as db:
            book = self._get_book(db, book_id, for_update=True)
            version = book.tree_version
            rows = self._load_rows(db, book_id)
            arena = {
                row.id: Node(row.id, row.parent_id, row.order, row.level) for row in rows.values()
            }

            plan = make_plan(arena)
            if plan.is_noop:
                return _snapshot_of(book_id, version, rows)

            self._apply(db, book_id, rows, plan, new_rows or {})
            self._bump_version(db, book_id, version)

            logger.info(
                event,
                book_id=str(book_id),
                tree_version=version + 1,
                created=len(plan.created),
                updated=len(plan.updates),
                deleted=len(plan.deleted),
                **{k: str(v) for k, v in log_fields.items()},
            )
            return _snapshot_of(book_id, version + 1, rows)

    def _apply(
        self,
        db: Session,
        book_id: UUID,
        rows: dict[UUID, Chapter],
        plan: OrderingPlan,
        new_rows: dict[UUID, dict],
    ) -> None:
        """Persist a plan. Re-parenting is flushed before deletes so no row
        ever points at a deleted parent."""
        now = utcnow()
        for chapter_id, placement in plan.updates.items():
            row = rows[chapter_id]
            row.parent_id = placement.parent_id
            row.order = placement.order
            row.level = placement.level
            row.updated_at = now

        for chapter_id, placement in plan.created.items():
            fields = new_rows.get(chapter_id, {})
            row = Chapter(
                id=chapter_id,
                book_id=book_id,
                parent_id=placement.parent_id,
                title=fields.get("title", ""),
                content=fields.get("content", ""),
                order=placement.order,
                level=placement.level,
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            rows[chapter_id] = row
        db.flush()

        if plan.deleted:
            # One statement, so the self-referencing FK is checked after the
            # whole subtree is gone.
            db.execute(
                delete(Chapter)
                .where(Chapter.id.in_(list(plan.deleted)))
                .execution_options(synchronize_session=False)
            )
            for chapter_id in plan.deleted:
                row = rows.pop(chapter_id, None)
                if row is not None:
                    db.expunge(row)

    def _bump_version(self, db: Session, book_id: UUID, expected: int) -> None:
        result = db.execute(
            update(Book)
            .where(Book.id == book_id, Book.tree_version == expected)
            .values(tree_version=expected + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("tree_version_conflict", book_id=str(book_id), expected=expected)
            raise ConflictError(message="Chapter tree was modified concurrently; retry")

    @staticmethod
    def _get_book(db: Session, book_id: UUID, for_update: bool = False) -> Book:
        stmt = select(Book).where(Book.id == book_id)
        if for_update:
            stmt = stmt.with_for_update()
        book = db.execute(stmt).scalar()
        if book is None:
            raise NotFoundError(ApiErrorCode.E_BOOK_NOT_FOUND, "Book not found")
        return book

    @staticmethod
    def _get_chapter(db: Session, book_id: UUID, chapter_id: UUID) -> Chapter:
        row = db.execute(
            select(Chapter).where(Chapter.id == chapter_id, Chapter.book_id == book_id)
        ).scalar()
        if row is None:
            raise NotFoundError(ApiErrorCode.E_CHAPTER_NOT_FOUND, "Chapter not found")
        return row

    @staticmethod
    def _load_rows(db: Session, book_id: UUID) -> dict[UUID, Chapter]:
        """Read-all-chapters-for-book."""
        rows = db.execute(select(Chapter).where(Chapter.book_id == book_id)).scalars().all()
        return {row.id: row for row in rows}
