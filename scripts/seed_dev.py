#!/usr/bin/env python
"""Seed development database with a fixture book.

Creates one book with a small nested chapter forest for local UI and publish
testing.

Constraints:
- Refuses to run in staging or prod (QUIRE_ENV check)
- Idempotent: skips if the fixture slug already exists
- Never runs automatically (manual invocation only)

Usage:
    cd python && DATABASE_URL=... uv run python ../scripts/seed_dev.py
"""

import os
import sys

FIXTURE_TITLE = "Field Notes"
FIXTURE_CHAPTERS = [
    ("Introduction", []),
    ("Getting Started", ["Installing", "First Steps"]),
    ("Publishing", ["Formats", "Troubleshooting"]),
]


def main():
    # 1. Environment check (hard fail in staging/prod)
    quire_env = os.getenv("QUIRE_ENV", "local")
    if quire_env not in ("local", "test"):
        print(f"ERROR: seed_dev.py refuses to run in QUIRE_ENV={quire_env}")
        sys.exit(1)

    # 2. Check DATABASE_URL
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        print("ERROR: DATABASE_URL environment variable must be set")
        sys.exit(1)

    from sqlalchemy import select

    from quire.db.models import Book
    from quire.db.session import get_session_factory
    from quire.services.books import create_book, slugify
    from quire.services.tree_store import TreeStore

    factory = get_session_factory()

    # 3. Idempotent seeding
    db = factory()
    try:
        existing = db.execute(select(Book).where(Book.slug == slugify(FIXTURE_TITLE))).scalar()
        if existing is not None:
            print(f"• Exists: book {existing.id} ({existing.slug})")
            return
        book = create_book(db, FIXTURE_TITLE)
    finally:
        db.close()

    store = TreeStore(factory)
    for title, children in FIXTURE_CHAPTERS:
        parent = store.insert(book.id, None, title)
        for child in children:
            store.insert(book.id, parent.id, child)

    # 4. Report
    db_display = database_url.split("@")[1] if "@" in database_url else database_url
    print(f"Database: {db_display}")
    print(f"QUIRE_ENV: {quire_env}")
    print()
    print(f"✓ Created: book {book.id} ({book.slug})")
    for chapter in store.snapshot(book.id):
        print(f"  {'  ' * chapter.level}{chapter.order}. {chapter.title}")


if __name__ == "__main__":
    main()
