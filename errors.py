"""Errors raised by the queue engine and the front-desk surface.

Each error carries the HTTP status it maps to so the web layer can turn it
into a response with a single handler.
"""

from __future__ import annotations


class QueueError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(QueueError):
    """A required field is missing or malformed.  Nothing was written."""

    status_code = 400


class NotFoundError(QueueError):
    """The entry or patient no longer exists (usually a duplicate submit)."""

    status_code = 404


class DeskBusyError(QueueError):
    """Another command from the same operator session is still in flight."""

    status_code = 409


class StoreUnavailableError(QueueError):
    """The database or the notification channel cannot be reached."""

    status_code = 503
