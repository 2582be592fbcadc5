"""FastAPI dependencies for route handlers.

Long-lived services are created once in the app lifespan and read from
app.state here, so an app built with an injected session factory never
touches the default engine.
"""

from collections.abc import Generator

from fastapi import Request
from sqlalchemy.orm import Session

from quire.services.publish import PayloadSource, PublishOrchestrator
from quire.services.tree_store import TreeStore


def get_db(request: Request) -> Generator[Session, None, None]:
    """Request-scoped session from the app's session factory, closed after the response."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_tree_store(request: Request) -> TreeStore:
    """Get the shared tree store (it owns the per-book locks)."""
    return request.app.state.tree_store


def get_orchestrator(request: Request) -> PublishOrchestrator:
    """Get the shared publish orchestrator.

    It holds the poll tasks of this process, so there must be exactly one.
    """
    return request.app.state.orchestrator


def get_payload_source(request: Request) -> PayloadSource:
    return request.app.state.payloads
