"""HTTP middleware for the Quire API."""

from quire.middleware.request_id import REQUEST_ID_HEADER, RequestIDMiddleware

__all__ = ["REQUEST_ID_HEADER", "RequestIDMiddleware"]
