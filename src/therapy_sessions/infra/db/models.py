from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import DateTime, Index, String, Text, Uuid, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from src.therapy_sessions.domain.models.session_request import SessionRequest, SessionRequestStatus

# Matches the statuses in ACTIVE_STATUSES. Used by the partial unique index
# that enforces one active request per child inside the database itself.
_ACTIVE_STATUS_CLAUSE = text("status IN ('pending', 'in_progress')")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back; stored values are always UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    pass


class SessionRequestORM(Base):
    __tablename__ = "session_requests"
    __table_args__ = (
        Index(
            "uq_session_requests_active_child",
            "child_id",
            unique=True,
            sqlite_where=_ACTIVE_STATUS_CLAUSE,
            postgresql_where=_ACTIVE_STATUS_CLAUSE,
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True)
    child_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    therapist_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    declined_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @classmethod
    def from_domain(cls, request: SessionRequest) -> "SessionRequestORM":
        return cls(
            id=request.id,
            child_id=request.child_id,
            therapist_id=request.therapist_id,
            status=request.status.value,
            description=request.description,
            requested_at=request.requested_at,
            accepted_at=request.accepted_at,
            declined_at=request.declined_at,
            ended_at=request.ended_at,
            cancelled_at=request.cancelled_at,
        )

    def to_domain(self) -> SessionRequest:
        return SessionRequest(
            id=self.id,
            child_id=self.child_id,
            therapist_id=self.therapist_id,
            status=SessionRequestStatus(self.status),
            description=self.description,
            requested_at=_as_utc(self.requested_at),
            accepted_at=_as_utc(self.accepted_at),
            declined_at=_as_utc(self.declined_at),
            ended_at=_as_utc(self.ended_at),
            cancelled_at=_as_utc(self.cancelled_at),
        )
