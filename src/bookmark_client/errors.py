"""
Client-side error taxonomy for the Bookmarks API.

HTTP failures are parsed into a semantic category and raised as one of the
ApiError subclasses, so callers can show a field-level message for validation
problems and a generic message (with the server's text) for everything else.
"""
from dataclasses import dataclass
from typing import Any, Literal

import httpx

ErrorCategory = Literal[
    "auth",        # 401 - No session or invalid/expired token
    "validation",  # 400/422 - Missing or invalid field
    "internal",    # 5xx, transport failures, or unexpected errors
]


class ApiError(Exception):
    """Base class for failures reported by the Bookmarks API client."""

    category: ErrorCategory = "internal"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class UnauthorizedError(ApiError):
    """The request had no valid session."""

    category: ErrorCategory = "auth"


class BookmarkValidationError(ApiError):
    """A required field was missing or invalid."""

    category: ErrorCategory = "validation"


class StoreError(ApiError):
    """The server (or the connection to it) failed to complete the request."""

    category: ErrorCategory = "internal"


_ERROR_TYPES: dict[ErrorCategory, type[ApiError]] = {
    "auth": UnauthorizedError,
    "validation": BookmarkValidationError,
    "internal": StoreError,
}


@dataclass
class ParsedApiError:
    """Parsed API error with semantic category and message."""

    category: ErrorCategory
    message: str
    status_code: int


def parse_http_error(e: httpx.HTTPStatusError) -> ParsedApiError:
    """
    Parse HTTP error into semantic categories.

    Args:
        e: The HTTP status error from httpx. The response body must have been read.

    Returns:
        ParsedApiError with category and message.
    """
    status = e.response.status_code

    if status == 401:
        return ParsedApiError("auth", _safe_get_detail(e) or "Not authenticated", status)

    if status in (400, 422):
        return ParsedApiError("validation", _extract_validation_message(e), status)

    return ParsedApiError("internal", _safe_get_detail(e) or f"API error {status}", status)


def to_api_error(e: httpx.HTTPStatusError) -> ApiError:
    """Convert an httpx status error into the matching ApiError subclass."""
    parsed = parse_http_error(e)
    return _ERROR_TYPES[parsed.category](parsed.message, status_code=parsed.status_code)


def _safe_get_detail(e: httpx.HTTPStatusError) -> str:
    """Safely extract a string detail from an error response."""
    detail = _get_detail(e)
    return detail if isinstance(detail, str) else ""


def _get_detail(e: httpx.HTTPStatusError) -> Any:
    try:
        body = e.response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        return body.get("detail")
    # Non-dict JSON body (list, string, etc.)
    return None


def _extract_validation_message(e: httpx.HTTPStatusError) -> str:
    """Extract validation error message from 400/422 response."""
    detail = _get_detail(e)
    if isinstance(detail, str) and detail:
        return detail
    if isinstance(detail, list):
        # FastAPI validation errors return a list of error objects
        messages = []
        for err in detail:
            if isinstance(err, dict):
                loc = err.get("loc", ["unknown"])
                field = loc[-1] if loc else "unknown"
                msg = err.get("msg", "invalid")
                messages.append(f"{field}: {msg}")
        if messages:
            return "; ".join(messages)
    return "Validation error"
