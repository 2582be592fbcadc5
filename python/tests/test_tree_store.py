"""Tests for the chapter tree store.

Covers persistence of planned mutations, error propagation (nothing is
written when an operation fails), tree_version bumps, and per-book
serialization under concurrent writers.
"""

import threading
from uuid import UUID, uuid4

import pytest
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from quire.db.models import Book, Chapter
from quire.errors import (
    ApiErrorCode,
    ConflictError,
    CycleError,
    InvalidRequestError,
    NotFoundError,
)
from quire.services.books import create_book
from quire.services.tree_store import TreeStore


def titles(snapshot) -> list[str]:
    return [c.title for c in snapshot]


def placements(snapshot) -> dict[str, tuple[str | None, int, int]]:
    by_id = {c.id: c.title for c in snapshot}
    return {c.title: (by_id.get(c.parent_id), c.order, c.level) for c in snapshot}


class TestInsert:
    def test_insert_appends_with_order_and_level(self, tree_store: TreeStore, book_id: UUID):
        a = tree_store.insert(book_id, None, "A")
        b = tree_store.insert(book_id, None, "B")
        c = tree_store.insert(book_id, a.id, "C")

        assert (a.order, a.level) == (0, 0)
        assert (b.order, b.level) == (1, 0)
        assert (c.order, c.level, c.parent_id) == (0, 1, a.id)

    def test_insert_at_index_shifts_siblings(self, tree_store: TreeStore, book_id: UUID):
        tree_store.insert(book_id, None, "A")
        tree_store.insert(book_id, None, "B")
        tree_store.insert(book_id, None, "First", index=0)

        assert titles(tree_store.snapshot(book_id)) == ["First", "A", "B"]

    def test_insert_stores_title_and_content(self, tree_store: TreeStore, book_id: UUID):
        chapter = tree_store.insert(book_id, None, "  Prologue  ", content="<p>Hi</p>")

        stored = tree_store.get(book_id, chapter.id)
        assert stored.title == "Prologue"
        assert stored.content == "<p>Hi</p>"

    def test_blank_title_rejected(self, tree_store: TreeStore, book_id: UUID):
        with pytest.raises(InvalidRequestError):
            tree_store.insert(book_id, None, "   ")

    def test_missing_book_raises_not_found(self, tree_store: TreeStore):
        with pytest.raises(NotFoundError) as exc_info:
            tree_store.insert(uuid4(), None, "A")
        assert exc_info.value.code == ApiErrorCode.E_BOOK_NOT_FOUND

    def test_parent_from_another_book_raises_not_found(
        self, tree_store: TreeStore, book_id: UUID, db_session: Session
    ):
        other_book = create_book(db_session, "Other")
        foreign = tree_store.insert(other_book.id, None, "Foreign")

        with pytest.raises(NotFoundError):
            tree_store.insert(book_id, foreign.id, "Child")


class TestMove:
    def test_move_child_to_root_between_siblings(self, tree_store: TreeStore, book_id: UUID):
        """Book A(0), B(1), C(0 under A): move(C, null, 1) gives A(0), C(1), B(2) at level 0."""
        a = tree_store.insert(book_id, None, "A")
        tree_store.insert(book_id, None, "B")
        c = tree_store.insert(book_id, a.id, "C")

        snapshot = tree_store.move(book_id, c.id, None, 1)

        assert placements(snapshot) == {
            "A": (None, 0, 0),
            "C": (None, 1, 0),
            "B": (None, 2, 0),
        }
        assert placements(tree_store.snapshot(book_id)) == placements(snapshot)

    def test_move_subtree_relevels_descendants(self, tree_store: TreeStore, book_id: UUID):
        a = tree_store.insert(book_id, None, "A")
        b = tree_store.insert(book_id, None, "B")
        c = tree_store.insert(book_id, a.id, "C")
        tree_store.insert(book_id, c.id, "D")

        snapshot = tree_store.move(book_id, a.id, b.id, 0)

        assert placements(snapshot) == {
            "B": (None, 0, 0),
            "A": ("B", 0, 1),
            "C": ("A", 0, 2),
            "D": ("C", 0, 3),
        }
        assert snapshot.problems() == []

    def test_cycle_fails_and_leaves_tree_unchanged(self, tree_store: TreeStore, book_id: UUID):
        a = tree_store.insert(book_id, None, "A")
        c = tree_store.insert(book_id, a.id, "C")
        before = tree_store.snapshot(book_id)

        with pytest.raises(CycleError):
            tree_store.move(book_id, a.id, c.id, 0)

        after = tree_store.snapshot(book_id)
        assert placements(after) == placements(before)
        assert after.version == before.version

    def test_missing_chapter_raises_not_found(self, tree_store: TreeStore, book_id: UUID):
        with pytest.raises(NotFoundError) as exc_info:
            tree_store.move(book_id, uuid4(), None, 0)
        assert exc_info.value.code == ApiErrorCode.E_CHAPTER_NOT_FOUND

    def test_noop_move_keeps_version(self, tree_store: TreeStore, book_id: UUID):
        a = tree_store.insert(book_id, None, "A")
        version = tree_store.snapshot(book_id).version

        snapshot = tree_store.move(book_id, a.id, None, 0)

        assert snapshot.version == version


class TestDelete:
    def test_cascade_removes_subtree_and_closes_gap(
        self, tree_store: TreeStore, book_id: UUID, db_session: Session
    ):
        a = tree_store.insert(book_id, None, "A")
        tree_store.insert(book_id, None, "B")
        c = tree_store.insert(book_id, a.id, "C")
        tree_store.insert(book_id, c.id, "D")

        snapshot = tree_store.delete(book_id, a.id, "cascade")

        assert placements(snapshot) == {"B": (None, 0, 0)}
        remaining = db_session.execute(
            select(Chapter.title).where(Chapter.book_id == book_id)
        ).scalars()
        assert list(remaining) == ["B"]

    def test_promote_children_takes_former_position(self, tree_store: TreeStore, book_id: UUID):
        tree_store.insert(book_id, None, "X")
        p = tree_store.insert(book_id, None, "P")
        tree_store.insert(book_id, None, "Y")
        c1 = tree_store.insert(book_id, p.id, "C1")
        tree_store.insert(book_id, p.id, "C2")
        tree_store.insert(book_id, c1.id, "G")

        snapshot = tree_store.delete(book_id, p.id, "promote_children")

        assert titles(snapshot) == ["X", "C1", "G", "C2", "Y"]
        assert placements(snapshot) == {
            "X": (None, 0, 0),
            "C1": (None, 1, 0),
            "G": ("C1", 0, 1),
            "C2": (None, 2, 0),
            "Y": (None, 3, 0),
        }

    def test_unknown_strategy_rejected(self, tree_store: TreeStore, book_id: UUID):
        a = tree_store.insert(book_id, None, "A")
        with pytest.raises(InvalidRequestError) as exc_info:
            tree_store.delete(book_id, a.id, "orphan")
        assert exc_info.value.code == ApiErrorCode.E_INVALID_STRATEGY
        assert a.id in tree_store.snapshot(book_id)


class TestUpdateAndRead:
    def test_update_changes_text_not_placement(self, tree_store: TreeStore, book_id: UUID):
        tree_store.insert(book_id, None, "A")
        b = tree_store.insert(book_id, None, "B")

        updated = tree_store.update(book_id, b.id, title="Bee", content="buzz")

        assert (updated.title, updated.content) == ("Bee", "buzz")
        assert (updated.parent_id, updated.order, updated.level) == (None, 1, 0)

    def test_snapshot_is_restartable_preorder(self, tree_store: TreeStore, book_id: UUID):
        a = tree_store.insert(book_id, None, "A")
        tree_store.insert(book_id, None, "B")
        tree_store.insert(book_id, a.id, "C")

        snapshot = tree_store.snapshot(book_id)

        assert titles(snapshot) == ["A", "C", "B"]
        assert titles(snapshot) == ["A", "C", "B"]
        assert len(snapshot) == 3
        assert [node.chapter.title for node in snapshot.roots()] == ["A", "B"]

    def test_every_mutation_bumps_tree_version(self, tree_store: TreeStore, book_id: UUID):
        a = tree_store.insert(book_id, None, "A")
        b = tree_store.insert(book_id, None, "B")
        tree_store.move(book_id, b.id, None, 0)
        snapshot = tree_store.delete(book_id, a.id)

        assert snapshot.version == 4
        assert tree_store.snapshot(book_id).version == 4


class TestConcurrency:
    def test_lost_version_race_raises_conflict(
        self, tree_store: TreeStore, book_id: UUID, monkeypatch
    ):
        """A writer that slipped past the locks makes the compare-and-set fail."""
        tree_store.insert(book_id, None, "A")
        original = TreeStore._load_rows

        def load_then_race(db: Session, target: UUID):
            rows = original(db, target)
            db.execute(
                update(Book)
                .where(Book.id == target)
                .values(tree_version=Book.tree_version + 1)
                .execution_options(synchronize_session=False)
            )
            return rows

        monkeypatch.setattr(TreeStore, "_load_rows", staticmethod(load_then_race))

        with pytest.raises(ConflictError):
            tree_store.insert(book_id, None, "B")

        monkeypatch.setattr(TreeStore, "_load_rows", staticmethod(original))
        assert titles(tree_store.snapshot(book_id)) == ["A"]

    def test_concurrent_moves_keep_tree_consistent(self, tree_store: TreeStore, book_id: UUID):
        ids = [tree_store.insert(book_id, None, f"Ch{i}").id for i in range(8)]
        errors: list[Exception] = []

        def worker(seed: int):
            try:
                for step in range(10):
                    chapter_id = ids[(seed + step) % len(ids)]
                    target = ids[(seed * 3 + step) % len(ids)]
                    parent = None if step % 3 == 0 else target
                    try:
                        tree_store.move(book_id, chapter_id, parent, step % 4)
                    except CycleError:
                        pass
            except Exception as exc:  # pragma: no cover - surfaced below
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        snapshot = tree_store.snapshot(book_id)
        assert len(snapshot) == len(ids)
        assert snapshot.problems() == []

    def test_books_use_independent_locks(self, tree_store: TreeStore, db_session: Session):
        first = create_book(db_session, "First").id
        second = create_book(db_session, "Second").id

        inserted: list = []

        with tree_store._locks.hold(first):
            worker = threading.Thread(
                target=lambda: inserted.append(tree_store.insert(second, None, "Unblocked"))
            )
            worker.start()
            worker.join(timeout=5)
            assert not worker.is_alive()

        assert [c.title for c in inserted] == ["Unblocked"]

    def test_forget_book_drops_its_lock(self, tree_store: TreeStore, db_session: Session):
        kept = create_book(db_session, "Kept").id
        deleted = create_book(db_session, "Deleted").id
        tree_store.insert(kept, None, "A")
        tree_store.insert(deleted, None, "A")

        tree_store.forget_book(deleted)

        assert set(tree_store._locks._locks) == {kept}
