from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from src.therapy_sessions.domain.models.session_request import SessionRequest

logger = logging.getLogger("audit")


@dataclass
class SessionRequestAuditEvent:
    """One audit line per persisted state change.

    Identifiers and state names only; the free-text description and the
    child's profile never reach the audit log.
    """

    timestamp: str
    action: str
    request_id: str
    child_id: str
    status: str
    therapist_id: Optional[str] = None
    subject: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None


class AuditService:
    def __init__(self, clock=None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def record_transition(
        self,
        action: str,
        request: SessionRequest,
        *,
        subject: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Write ``request``'s new state to the ``audit`` logger as JSON.

        ``subject`` is the acting user id. System actions such as expiry pass
        nothing and fall back to the caller bound by the security layer, which
        is ``None`` outside a request.
        """

        if subject is None:
            from src.therapy_sessions.security import get_current_subject

            subject = get_current_subject()

        event = SessionRequestAuditEvent(
            timestamp=self._clock().isoformat(),
            action=action,
            request_id=str(request.id),
            child_id=request.child_id,
            status=request.status.value,
            therapist_id=request.therapist_id,
            subject=subject,
            extra=extra,
        )
        payload = asdict(event)
        logger.info(json.dumps(payload, default=str))
        return payload


audit_service = AuditService()
