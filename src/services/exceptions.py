"""Shared exceptions for service layer operations."""


class BookmarkValidationError(Exception):
    """
    Raised when a bookmark request is missing a required field or exceeds a limit.

    Mapped to HTTP 400 by the API layer.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class StoreError(Exception):
    """
    Raised when the persistence layer fails.

    Wraps the underlying database error and keeps its message so callers can
    surface it. Mapped to HTTP 500 by the API layer.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
