from __future__ import annotations

from threading import Lock
from typing import Any, Dict, Iterable, List, Mapping, Optional
from uuid import UUID

from src.therapy_sessions.domain.errors import ConflictError
from src.therapy_sessions.domain.models.session_request import (
    SessionRequest,
    SessionRequestStatus,
)
from src.therapy_sessions.infra.db.repositories import SessionRequestRepository


class InMemorySessionRequestRepository(SessionRequestRepository):
    """Process-local request store used by default and in tests.

    All reads and writes happen under a single lock with no awaits inside the
    critical section, so the uniqueness check on ``add`` and the status match
    on ``transition`` are indivisible. Callers get copies; stored records are
    never handed out for in-place mutation.
    """

    def __init__(self) -> None:
        self._requests: Dict[UUID, SessionRequest] = {}
        self._lock = Lock()

    async def add(self, request: SessionRequest) -> SessionRequest:
        with self._lock:
            for existing in self._requests.values():
                if existing.child_id == request.child_id and existing.is_active:
                    raise ConflictError(request_id=existing.id)
            self._requests[request.id] = request.model_copy()
        return request.model_copy()

    async def get(self, request_id: UUID) -> Optional[SessionRequest]:
        with self._lock:
            request = self._requests.get(request_id)
            return request.model_copy() if request is not None else None

    async def latest_for_child(self, child_id: str) -> Optional[SessionRequest]:
        with self._lock:
            matches = [r for r in self._requests.values() if r.child_id == child_id]
        if not matches:
            return None
        return max(matches, key=lambda r: r.requested_at).model_copy()

    async def list_by_status(self, statuses: Iterable[SessionRequestStatus]) -> List[SessionRequest]:
        wanted = set(statuses)
        with self._lock:
            matches = [r.model_copy() for r in self._requests.values() if r.status in wanted]
        return sorted(matches, key=lambda r: r.requested_at)

    async def transition(
        self,
        request_id: UUID,
        *,
        expected: SessionRequestStatus,
        changes: Mapping[str, Any],
        child_id: Optional[str] = None,
        therapist_id: Optional[str] = None,
    ) -> Optional[SessionRequest]:
        with self._lock:
            current = self._requests.get(request_id)
            if current is None or current.status != expected:
                return None
            if child_id is not None and current.child_id != child_id:
                return None
            if therapist_id is not None and current.therapist_id != therapist_id:
                return None
            updated = current.model_copy(update=dict(changes))
            self._requests[request_id] = updated
            return updated.model_copy()


session_request_repository: SessionRequestRepository = InMemorySessionRequestRepository()
