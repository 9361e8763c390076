"""
Domain Exceptions

Every error the service raises on purpose derives from WeeklyOrdersError,
so the API layer can map them to HTTP responses in one place.
"""

from typing import Optional


class WeeklyOrdersError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class InvalidMenuError(WeeklyOrdersError):
    """The uploaded menu has no recognizable day with at least one option."""

    status_code = 422


class UnknownMenuOptionError(WeeklyOrdersError):
    """An order names a day or option that the current menu does not offer."""

    status_code = 400


class InvalidUserError(WeeklyOrdersError):
    """An order operation was attempted without a usable user name."""

    status_code = 400


class InvalidCommentError(WeeklyOrdersError):
    """A comment is empty, or a removal names a comment that does not exist."""

    status_code = 400


class MissingOrderError(WeeklyOrdersError):
    """A comment was added for a day on which the user has not ordered anything."""

    status_code = 409


class StorageError(WeeklyOrdersError):
    """Network or backend failure talking to the database or cache."""

    status_code = 503


class StorageReadError(StorageError):
    """A read from the database or cache failed."""


class StorageWriteError(StorageError):
    """A write to the database or cache failed."""


class StaleWriteConflict(WeeklyOrdersError):
    """
    Two writers overwrote the same row concurrently.

    Declared for completeness only: rows carry no version token, so the
    condition is never detected and this exception is never raised.
    """

    status_code = 409
