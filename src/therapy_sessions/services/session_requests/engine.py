from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional
from uuid import UUID, uuid4

from src.therapy_sessions.config import settings
from src.therapy_sessions.domain.errors import (
    InvalidStateError,
    NoChildLinked,
    NotFound,
    NotOwner,
    SessionRequestError,
)
from src.therapy_sessions.domain.models.session_request import (
    ACTIVE_STATUSES,
    CancellationResult,
    SessionRequest,
    SessionRequestStatus,
    SessionRequestView,
    TherapistDashboard,
)
from src.therapy_sessions.domain.models.user import User, UserRole
from src.therapy_sessions.infra.db import inmemory as inmemory_repos
from src.therapy_sessions.infra.db.repositories import SessionRequestRepository
from src.therapy_sessions.services.audit.service import AuditService, audit_service
from src.therapy_sessions.services.directory.service import InMemoryDirectoryService, directory_service
from src.therapy_sessions.services.notifications.fanout import (
    AllOfRole,
    EventType,
    NotificationEvent,
    NotificationFanout,
    SingleUser,
    deleted_payload,
    new_request_payload,
    notification_fanout,
    updated_payload,
)

logger = logging.getLogger(__name__)

DEFAULT_DESCRIPTION = "No description"

_USE_SETTINGS = object()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def partition_for_therapist(requests: Iterable[SessionRequestView], therapist_id: str) -> TherapistDashboard:
    """Split the active request list into a therapist's two dashboard panes.

    The pending queue is every request still waiting for a therapist; the
    active session is the in-progress request assigned to ``therapist_id``.
    Live sessions of other therapists appear in neither.
    """

    pending: List[SessionRequestView] = []
    active_session: Optional[SessionRequestView] = None
    for request in requests:
        if request.status == SessionRequestStatus.PENDING:
            pending.append(request)
        elif (
            request.status == SessionRequestStatus.IN_PROGRESS
            and request.therapist_id == therapist_id
            and active_session is None
        ):
            active_session = request
    return TherapistDashboard(pending=pending, active_session=active_session)


class SessionRequestEngine:
    """State machine for therapy session requests.

    Transitions::

        (none) -create-> pending -accept-> in_progress -end-> completed
                         pending -decline-> declined
        pending | in_progress -cancel-> cancelled

    Every transition is a single conditional update in the repository that
    only applies while the stored status still matches the expected
    pre-state. That is the only concurrency control: of several concurrent
    accepts for one request exactly one wins, and the rest get
    InvalidStateError. Notifications are sent after the transition is
    persisted and are never rolled back.
    """

    def __init__(
        self,
        repository: Optional[SessionRequestRepository] = None,
        *,
        directory: Optional[InMemoryDirectoryService] = None,
        fanout: Optional[NotificationFanout] = None,
        audit: Optional[AuditService] = None,
        pending_timeout_seconds: object = _USE_SETTINGS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.repository = repository if repository is not None else inmemory_repos.session_request_repository
        self.directory = directory if directory is not None else directory_service
        self.fanout = fanout if fanout is not None else notification_fanout
        self.audit = audit if audit is not None else audit_service
        self._pending_timeout_seconds = pending_timeout_seconds
        self._clock = clock

    @property
    def pending_timeout_seconds(self) -> Optional[float]:
        if self._pending_timeout_seconds is _USE_SETTINGS:
            return settings.pending_request_timeout_seconds
        return self._pending_timeout_seconds  # type: ignore[return-value]

    # Child side

    async def create_request(self, user: User, description: Optional[str] = None) -> SessionRequestView:
        child_id = self.directory.resolve_child_id(user)
        await self.expire_stale_requests()

        request = SessionRequest(
            id=uuid4(),
            child_id=child_id,
            status=SessionRequestStatus.PENDING,
            description=description or DEFAULT_DESCRIPTION,
            requested_at=self._clock(),
        )
        stored = await self.repository.add(request)
        child = self.directory.get_child_summary(child_id)

        logger.info("Session request %s created for child %s", stored.id, child_id)
        self.audit.record_transition("create_session_request", stored, subject=user.id)

        await self._notify(
            NotificationEvent(
                type=EventType.NEW_SESSION_REQUEST,
                recipients=[AllOfRole(UserRole.THERAPIST)],
                payload=new_request_payload(stored, child),
            )
        )
        return SessionRequestView.from_request(stored, child)

    async def cancel_request(self, request_id: UUID, user: User) -> CancellationResult:
        """Cancel a pending or live request owned by the caller's child.

        A pending request records ``cancelled_at``. A live one records
        ``ended_at`` instead, so ``cancelled_at`` only ever marks requests
        that never went live.
        """

        child_id = self.directory.resolve_child_id(user)
        now = self._clock()

        updated = await self.repository.transition(
            request_id,
            expected=SessionRequestStatus.PENDING,
            changes={"status": SessionRequestStatus.CANCELLED, "cancelled_at": now},
            child_id=child_id,
        )
        if updated is None:
            # Either it was accepted meanwhile, or it was never pending.
            updated = await self.repository.transition(
                request_id,
                expected=SessionRequestStatus.IN_PROGRESS,
                changes={"status": SessionRequestStatus.CANCELLED, "ended_at": now},
                child_id=child_id,
            )
        if updated is None:
            current = await self.repository.get(request_id)
            if current is not None and current.child_id != child_id:
                raise NotOwner(request_id=request_id)
            raise NotFound("Request not found or cannot be deleted.", request_id=request_id)

        logger.info("Session request %s cancelled by %s", request_id, user.id)
        self.audit.record_transition("cancel_session_request", updated, subject=user.id)

        await self._notify(
            NotificationEvent(
                type=EventType.SESSION_REQUEST_DELETED,
                recipients=[AllOfRole(UserRole.THERAPIST)],
                payload=deleted_payload(updated),
            )
        )
        return CancellationResult(message="Session request deleted successfully.", request_id=request_id)

    async def get_my_request(self, user: User) -> Optional[SessionRequestView]:
        """Return the caller's child's most recent request, whatever its status."""

        try:
            child_id = self.directory.resolve_child_id(user)
        except NoChildLinked:
            return None

        await self.expire_stale_requests()
        request = await self.repository.latest_for_child(child_id)
        if request is None:
            return None
        return SessionRequestView.from_request(request, self.directory.get_child_summary(child_id))

    # Therapist side

    async def accept_request(self, request_id: UUID, therapist_id: str) -> SessionRequestView:
        await self.expire_stale_requests()

        updated = await self.repository.transition(
            request_id,
            expected=SessionRequestStatus.PENDING,
            changes={
                "status": SessionRequestStatus.IN_PROGRESS,
                "therapist_id": therapist_id,
                "accepted_at": self._clock(),
            },
        )
        if updated is None:
            raise await self._transition_failure(request_id)

        logger.info("Session request %s accepted by therapist %s", request_id, therapist_id)
        self.audit.record_transition("accept_session_request", updated, subject=therapist_id)

        # Other therapists drop the listing from their pending queues.
        await self._notify(
            NotificationEvent(
                type=EventType.SESSION_REQUEST_UPDATED,
                recipients=[SingleUser(updated.child_id), AllOfRole(UserRole.THERAPIST)],
                payload=updated_payload(updated),
            )
        )
        return self._view(updated)

    async def decline_request(self, request_id: UUID, therapist_id: str) -> SessionRequestView:
        await self.expire_stale_requests()

        updated = await self.repository.transition(
            request_id,
            expected=SessionRequestStatus.PENDING,
            changes={"status": SessionRequestStatus.DECLINED, "declined_at": self._clock()},
        )
        if updated is None:
            raise await self._transition_failure(request_id)

        logger.info("Session request %s declined by therapist %s", request_id, therapist_id)
        self.audit.record_transition("decline_session_request", updated, subject=therapist_id)

        await self._notify(
            NotificationEvent(
                type=EventType.SESSION_REQUEST_UPDATED,
                recipients=[SingleUser(updated.child_id)],
                payload=updated_payload(updated),
            )
        )
        await self._notify(
            NotificationEvent(
                type=EventType.SESSION_REQUEST_DELETED,
                recipients=[AllOfRole(UserRole.THERAPIST)],
                payload=deleted_payload(updated),
            )
        )
        return self._view(updated)

    async def end_session(self, request_id: UUID, therapist_id: str) -> SessionRequestView:
        updated = await self.repository.transition(
            request_id,
            expected=SessionRequestStatus.IN_PROGRESS,
            changes={"status": SessionRequestStatus.COMPLETED, "ended_at": self._clock()},
            therapist_id=therapist_id,
        )
        if updated is None:
            raise await self._transition_failure(request_id, therapist_id=therapist_id)

        logger.info("Session %s ended by therapist %s", request_id, therapist_id)
        self.audit.record_transition("end_session", updated, subject=therapist_id)

        # The therapist is notified too so their other open tabs close the call.
        await self._notify(
            NotificationEvent(
                type=EventType.SESSION_REQUEST_UPDATED,
                recipients=[SingleUser(updated.child_id), SingleUser(therapist_id)],
                payload=updated_payload(updated),
            )
        )
        return self._view(updated)

    async def list_active_requests(self) -> List[SessionRequestView]:
        """Return every pending and in-progress request, oldest first."""

        await self.expire_stale_requests()
        requests = await self.repository.list_by_status(ACTIVE_STATUSES)
        return [self._view(request) for request in requests]

    async def therapist_dashboard(self, therapist_id: str) -> TherapistDashboard:
        return partition_for_therapist(await self.list_active_requests(), therapist_id)

    # Expiry

    async def expire_stale_requests(self) -> List[SessionRequest]:
        """Cancel pending requests older than the configured timeout.

        Disabled unless a timeout is configured. Each expiry is its own
        conditional update, so a request accepted while the sweep runs is
        left alone.
        """

        timeout = self.pending_timeout_seconds
        if timeout is None:
            return []

        now = self._clock()
        cutoff = now - timedelta(seconds=timeout)
        expired: List[SessionRequest] = []
        for request in await self.repository.list_by_status([SessionRequestStatus.PENDING]):
            if request.requested_at > cutoff:
                continue
            updated = await self.repository.transition(
                request.id,
                expected=SessionRequestStatus.PENDING,
                changes={"status": SessionRequestStatus.CANCELLED, "cancelled_at": now},
            )
            if updated is None:
                continue

            logger.info("Session request %s expired after %ss pending", updated.id, timeout)
            self.audit.record_transition("expire_session_request", updated, subject=None, extra={"timeout_seconds": timeout})
            expired.append(updated)

            await self._notify(
                NotificationEvent(
                    type=EventType.SESSION_REQUEST_DELETED,
                    recipients=[AllOfRole(UserRole.THERAPIST)],
                    payload=deleted_payload(updated),
                )
            )
            await self._notify(
                NotificationEvent(
                    type=EventType.SESSION_REQUEST_UPDATED,
                    recipients=[SingleUser(updated.child_id)],
                    payload=updated_payload(updated),
                )
            )
        return expired

    # Helpers

    async def _transition_failure(
        self,
        request_id: UUID,
        *,
        therapist_id: Optional[str] = None,
    ) -> SessionRequestError:
        """Explain why a conditional update matched nothing.

        Runs after the update, only to pick the error; the decision itself
        was made atomically by the store.
        """

        current = await self.repository.get(request_id)
        if current is None:
            return NotFound(request_id=request_id)
        if therapist_id is not None and current.therapist_id is not None and current.therapist_id != therapist_id:
            return NotOwner(request_id=request_id)
        return InvalidStateError(request_id=request_id)

    def _view(self, request: SessionRequest) -> SessionRequestView:
        return SessionRequestView.from_request(request, self.directory.get_child_summary(request.child_id))

    async def _notify(self, event: NotificationEvent) -> None:
        try:
            await self.fanout.dispatch(event)
        except Exception:
            # The transition is already persisted; a lost push is recovered by
            # the client's next read.
            logger.exception("Failed to fan out %s", event.type.value)


session_request_engine = SessionRequestEngine()
