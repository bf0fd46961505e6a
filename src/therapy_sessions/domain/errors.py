from __future__ import annotations

from typing import Optional
from uuid import UUID


class SessionRequestError(Exception):
    """Base class for domain errors raised by the session request engine.

    ``message`` is short and safe to show to end users.
    """

    message = "Session request error."

    def __init__(self, message: Optional[str] = None, *, request_id: Optional[UUID] = None) -> None:
        self.message = message or self.message
        self.request_id = request_id
        super().__init__(self.message)


class ConflictError(SessionRequestError):
    """The child already has a pending or live request."""

    message = "You already have an active session request."


class InvalidStateError(SessionRequestError):
    """The request is no longer in the state the caller expected.

    Not retryable: the caller lost a race or holds a stale view and should
    refresh its listing.
    """

    message = "This request is no longer available."


class NotOwner(SessionRequestError):
    message = "You are not allowed to act on this request."


class NotFound(SessionRequestError):
    message = "Session request not found."


class NoChildLinked(SessionRequestError):
    message = "No child linked to account."


class StoreError(SessionRequestError):
    """The request store could not be reached or failed mid-operation.

    Safe to retry after a backoff; transitions are guarded by the store's
    conditional update.
    """

    message = "Session request store is unavailable."
