from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Iterable, List, Mapping, Optional
from uuid import UUID

from src.therapy_sessions.domain.models.session_request import SessionRequest, SessionRequestStatus


class SessionRequestRepository(ABC):
    """Durable store for session requests.

    Every method is a suspension point: implementations backed by a network
    store must yield to the event loop while waiting on I/O.
    """

    @abstractmethod
    async def add(self, request: SessionRequest) -> SessionRequest:
        """Insert a new request.

        Raises ConflictError when the child already has a pending or
        in-progress request. The uniqueness check and the insert must be a
        single atomic step.
        """
        raise NotImplementedError

    @abstractmethod
    async def get(self, request_id: UUID) -> Optional[SessionRequest]:
        raise NotImplementedError

    @abstractmethod
    async def latest_for_child(self, child_id: str) -> Optional[SessionRequest]:
        raise NotImplementedError

    @abstractmethod
    async def list_by_status(self, statuses: Iterable[SessionRequestStatus]) -> List[SessionRequest]:
        raise NotImplementedError

    @abstractmethod
    async def transition(
        self,
        request_id: UUID,
        *,
        expected: SessionRequestStatus,
        changes: Mapping[str, Any],
        child_id: Optional[str] = None,
        therapist_id: Optional[str] = None,
    ) -> Optional[SessionRequest]:
        """Apply ``changes`` only if the stored status still equals ``expected``.

        ``child_id``/``therapist_id`` further restrict the match to the owning
        child or assigned therapist. Returns the updated request, or None when
        the condition did not hold.
        """
        raise NotImplementedError
