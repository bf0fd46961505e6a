from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import FrozenSet, Optional
from uuid import UUID

from pydantic import BaseModel

from src.therapy_sessions.domain.models.user import ChildSummary


class SessionRequestStatus(str, Enum):
    PENDING = "pending"
    # Accepted and live; acceptance moves straight into this state.
    IN_PROGRESS = "in_progress"
    DECLINED = "declined"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES: FrozenSet[SessionRequestStatus] = frozenset(
    {SessionRequestStatus.PENDING, SessionRequestStatus.IN_PROGRESS}
)


class SessionRequest(BaseModel):
    """A child's request for a live therapy session.

    Every request belongs to exactly one child. ``therapist_id`` stays empty
    until a therapist accepts and never changes afterwards. Each timestamp is
    written once, by the transition that owns it.
    """

    id: UUID
    child_id: str
    therapist_id: Optional[str] = None
    status: SessionRequestStatus = SessionRequestStatus.PENDING
    description: Optional[str] = None
    requested_at: datetime
    accepted_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    # Only set for requests cancelled before going live.
    cancelled_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class SessionRequestView(SessionRequest):
    """SessionRequest with the owning child resolved for display."""

    child: Optional[ChildSummary] = None

    @classmethod
    def from_request(cls, request: SessionRequest, child: Optional[ChildSummary]) -> "SessionRequestView":
        return cls(**request.model_dump(exclude={"child"}), child=child)


class TherapistDashboard(BaseModel):
    pending: list[SessionRequestView]
    active_session: Optional[SessionRequestView] = None


class CancellationResult(BaseModel):
    message: str
    request_id: UUID
