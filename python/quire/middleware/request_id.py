"""X-Request-ID middleware for request correlation.

Accepts a caller-supplied request ID when it is well formed, otherwise mints a
UUID4. The ID is stored on request.state, bound into the logging context for
the duration of the request, and echoed on every response. One access log
entry is written per request.

Must be registered last so it wraps every other middleware.
"""

import re
import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from quire.logging import clear_request_context, get_logger, set_request_context

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128

_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,128}$")
_BOOK_PATH_PATTERN = re.compile(r"^/books/([0-9a-fA-F-]{36})(?:/|$)")

logger = get_logger(__name__)


def resolve_request_id(incoming: str | None) -> str:
    """Return a normalized incoming ID, or a fresh UUID4 if it is unusable.

    UUID-shaped values are lowercased; other accepted values pass through.
    """
    if incoming and len(incoming.encode("utf-8")) <= MAX_REQUEST_ID_LENGTH:
        if _REQUEST_ID_PATTERN.match(incoming):
            try:
                return str(uuid.UUID(incoming)) if len(incoming) == 36 else incoming
            except ValueError:
                return incoming
    return str(uuid.uuid4())


def book_id_from_path(path: str) -> str | None:
    """Extract the book UUID from /books/{book_id}/... paths for log context."""
    match = _BOOK_PATH_PATTERN.match(path)
    return match.group(1).lower() if match else None


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Middleware for X-Request-ID handling and access logging."""

    def __init__(self, app, log_requests: bool = True):
        super().__init__(app)
        self.log_requests = log_requests

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start_time = time.monotonic()
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
        set_request_context(request_id, book_id=book_id_from_path(request.url.path))

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id

            if self.log_requests:
                logger.info(
                    "request_completed",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=round((time.monotonic() - start_time) * 1000, 2),
                )
            return response
        except Exception:
            logger.exception("request_failed", method=request.method, path=request.url.path)
            raise
        finally:
            clear_request_context()
