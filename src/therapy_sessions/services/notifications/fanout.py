from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import BaseModel

from src.therapy_sessions.domain.models.session_request import SessionRequest
from src.therapy_sessions.domain.models.user import ChildSummary, UserRole
from src.therapy_sessions.services.presence.registry import (
    DeliveryChannel,
    PresenceRegistry,
    presence_registry,
)

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    NEW_SESSION_REQUEST = "new_session_request"
    SESSION_REQUEST_UPDATED = "session_request_updated"
    SESSION_REQUEST_DELETED = "session_request_deleted"


@dataclass(frozen=True)
class SingleUser:
    """Deliver to one user's current channel, if they are connected."""

    user_id: str


@dataclass(frozen=True)
class AllOfRole:
    """Deliver to every connected user holding ``role``."""

    role: UserRole


RecipientPolicy = Union[SingleUser, AllOfRole]


@dataclass
class NotificationEvent:
    type: EventType
    recipients: Sequence[RecipientPolicy]
    payload: Dict[str, Any]

    def envelope(self) -> Dict[str, Any]:
        return {"type": self.type.value, "payload": self.payload}


class NewSessionRequestPayload(BaseModel):
    request_id: str
    child: ChildSummary
    requested_at: str
    status: str
    description: Optional[str] = None


class SessionRequestUpdatedPayload(BaseModel):
    request_id: str
    status: str
    therapist_id: Optional[str] = None
    accepted_at: Optional[str] = None
    declined_at: Optional[str] = None
    ended_at: Optional[str] = None


class SessionRequestDeletedPayload(BaseModel):
    request_id: str


def new_request_payload(request: SessionRequest, child: ChildSummary) -> Dict[str, Any]:
    return NewSessionRequestPayload(
        request_id=str(request.id),
        child=child,
        requested_at=request.requested_at.isoformat(),
        status=request.status.value,
        description=request.description,
    ).model_dump()


def updated_payload(request: SessionRequest) -> Dict[str, Any]:
    return SessionRequestUpdatedPayload(
        request_id=str(request.id),
        status=request.status.value,
        therapist_id=request.therapist_id,
        accepted_at=request.accepted_at.isoformat() if request.accepted_at else None,
        declined_at=request.declined_at.isoformat() if request.declined_at else None,
        ended_at=request.ended_at.isoformat() if request.ended_at else None,
    ).model_dump()


def deleted_payload(request: SessionRequest) -> Dict[str, Any]:
    return SessionRequestDeletedPayload(request_id=str(request.id)).model_dump()


class NotificationFanout:
    """Resolves recipient policies to channels and pushes events.

    Delivery is best-effort and at-most-once: offline recipients are skipped,
    a failing channel is logged and dropped, and nothing is queued or
    retried. Clients reconcile through the read endpoints after a reconnect.
    """

    def __init__(self, registry: Optional[PresenceRegistry] = None) -> None:
        self._registry = registry if registry is not None else presence_registry

    def resolve(self, recipients: Sequence[RecipientPolicy]) -> List[DeliveryChannel]:
        channels: List[DeliveryChannel] = []
        seen: set[int] = set()
        for policy in recipients:
            if isinstance(policy, SingleUser):
                entry = self._registry.get(policy.user_id)
                entries = [entry] if entry is not None else []
            elif isinstance(policy, AllOfRole):
                entries = self._registry.list_by_role(policy.role)
            else:
                raise TypeError(f"Unsupported recipient policy: {policy!r}")

            for entry in entries:
                # A user matched by two policies still gets one copy.
                if id(entry.channel) in seen:
                    continue
                seen.add(id(entry.channel))
                channels.append(entry.channel)
        return channels

    async def dispatch(self, event: NotificationEvent) -> int:
        """Push ``event`` to every resolved channel; return the number delivered."""

        channels = self.resolve(event.recipients)
        if not channels:
            logger.debug("No connected recipients for %s", event.type.value)
            return 0

        message = event.envelope()
        results = await asyncio.gather(
            *(channel.send_json(message) for channel in channels),
            return_exceptions=True,
        )

        delivered = 0
        for channel, result in zip(channels, results):
            if isinstance(result, BaseException):
                logger.warning("Dropping %s push to %r: %s", event.type.value, channel, result)
            else:
                delivered += 1
        return delivered


notification_fanout = NotificationFanout()
