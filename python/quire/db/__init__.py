"""Database module for Quire.

Provides engine creation, session management, transaction helpers, and ORM models.
"""

from quire.db.engine import create_db_engine, get_engine
from quire.db.models import (
    ACTIVE_JOB_STATES,
    TERMINAL_JOB_STATES,
    Base,
    Book,
    Chapter,
    DeleteStrategy,
    PublishFormat,
    PublishJob,
    PublishJobState,
)
from quire.db.session import (
    create_session_factory,
    get_session_factory,
    session_scope,
    transaction,
)

__all__ = [
    # Engine and session
    "create_db_engine",
    "get_engine",
    "create_session_factory",
    "get_session_factory",
    "session_scope",
    "transaction",
    # Base
    "Base",
    # Enums
    "DeleteStrategy",
    "PublishFormat",
    "PublishJobState",
    "ACTIVE_JOB_STATES",
    "TERMINAL_JOB_STATES",
    # Models
    "Book",
    "Chapter",
    "PublishJob",
]
