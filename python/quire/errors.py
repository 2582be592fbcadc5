"""API error definitions.

All API errors are defined here with their corresponding HTTP status codes.
Service code raises these; routes never build error responses by hand.
"""

from enum import Enum


class ApiErrorCode(str, Enum):
    """Standardized error codes for the API.

    Format: E_CATEGORY_NAME
    """

    # Not found errors (404)
    E_NOT_FOUND = "E_NOT_FOUND"
    E_BOOK_NOT_FOUND = "E_BOOK_NOT_FOUND"
    E_CHAPTER_NOT_FOUND = "E_CHAPTER_NOT_FOUND"
    E_JOB_NOT_FOUND = "E_JOB_NOT_FOUND"

    # Validation errors (400)
    E_INVALID_REQUEST = "E_INVALID_REQUEST"
    E_INVALID_FORMAT = "E_INVALID_FORMAT"
    E_INVALID_STRATEGY = "E_INVALID_STRATEGY"
    E_BUILDER_INVALID_INPUT = "E_BUILDER_INVALID_INPUT"

    # State conflicts (409)
    E_CHAPTER_CYCLE = "E_CHAPTER_CYCLE"
    E_INVALID_TRANSITION = "E_INVALID_TRANSITION"
    E_NOT_CANCELABLE = "E_NOT_CANCELABLE"
    E_CONFLICT = "E_CONFLICT"

    # Server errors
    E_BUILD_FAILED = "E_BUILD_FAILED"  # 502
    E_BUILDER_UNAVAILABLE = "E_BUILDER_UNAVAILABLE"  # 503
    E_PUBLISH_TIMEOUT = "E_PUBLISH_TIMEOUT"  # 504
    E_INTERNAL = "E_INTERNAL"  # 500


# Error code to HTTP status mapping
ERROR_CODE_TO_STATUS: dict[ApiErrorCode, int] = {
    ApiErrorCode.E_NOT_FOUND: 404,
    ApiErrorCode.E_BOOK_NOT_FOUND: 404,
    ApiErrorCode.E_CHAPTER_NOT_FOUND: 404,
    ApiErrorCode.E_JOB_NOT_FOUND: 404,
    ApiErrorCode.E_INVALID_REQUEST: 400,
    ApiErrorCode.E_INVALID_FORMAT: 400,
    ApiErrorCode.E_INVALID_STRATEGY: 400,
    ApiErrorCode.E_BUILDER_INVALID_INPUT: 400,
    ApiErrorCode.E_CHAPTER_CYCLE: 409,
    ApiErrorCode.E_INVALID_TRANSITION: 409,
    ApiErrorCode.E_NOT_CANCELABLE: 409,
    ApiErrorCode.E_CONFLICT: 409,
    ApiErrorCode.E_BUILD_FAILED: 502,
    ApiErrorCode.E_BUILDER_UNAVAILABLE: 503,
    ApiErrorCode.E_PUBLISH_TIMEOUT: 504,
    ApiErrorCode.E_INTERNAL: 500,
}


class ApiError(Exception):
    """Base exception for API errors.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        status_code: HTTP status code (derived from code)
    """

    def __init__(self, code: ApiErrorCode, message: str):
        self.code = code
        self.message = message
        self.status_code = ERROR_CODE_TO_STATUS.get(code, 500)
        super().__init__(message)


class NotFoundError(ApiError):
    """Resource not found error."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_NOT_FOUND, message: str = "Not found"):
        super().__init__(code, message)


class InvalidRequestError(ApiError):
    """Invalid request error."""

    def __init__(
        self, code: ApiErrorCode = ApiErrorCode.E_INVALID_REQUEST, message: str = "Invalid request"
    ):
        super().__init__(code, message)


class CycleError(ApiError):
    """Reparent would make a chapter its own ancestor."""

    def __init__(self, message: str = "Chapter cannot be moved under itself or a descendant"):
        super().__init__(ApiErrorCode.E_CHAPTER_CYCLE, message)


class ConflictError(ApiError):
    """Concurrent mutation detected."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_CONFLICT, message: str = "Conflict"):
        super().__init__(code, message)


class InvalidTransitionError(ApiError):
    """Illegal publish job state change."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            ApiErrorCode.E_INVALID_TRANSITION,
            f"Cannot transition publish job from {current} to {target}",
        )


class BuilderUnavailableError(ApiError):
    """External builder could not be reached or failed transiently."""

    def __init__(self, message: str = "Builder unavailable"):
        super().__init__(ApiErrorCode.E_BUILDER_UNAVAILABLE, message)


class BuilderInvalidInputError(ApiError):
    """External builder rejected the submitted input."""

    def __init__(self, message: str = "Builder rejected input"):
        super().__init__(ApiErrorCode.E_BUILDER_INVALID_INPUT, message)


class NotCancelableError(ApiError):
    """External build can no longer be canceled."""

    def __init__(self, message: str = "Build is not cancelable"):
        super().__init__(ApiErrorCode.E_NOT_CANCELABLE, message)


class PublishTimeoutError(ApiError):
    """Publish job exceeded its wall-clock budget."""

    def __init__(self, message: str = "Publish job timed out"):
        super().__init__(ApiErrorCode.E_PUBLISH_TIMEOUT, message)
