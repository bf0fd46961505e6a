from __future__ import annotations

import logging
from typing import Any, Iterable, List, Mapping, Optional
from uuid import UUID

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from src.therapy_sessions.domain.errors import ConflictError, StoreError
from src.therapy_sessions.domain.models.session_request import (
    ACTIVE_STATUSES,
    SessionRequest,
    SessionRequestStatus,
)
from src.therapy_sessions.infra.db.models import SessionRequestORM
from src.therapy_sessions.infra.db.repositories import SessionRequestRepository
from src.therapy_sessions.infra.db.session import SessionFactory

logger = logging.getLogger(__name__)

_ACTIVE_VALUES = [status.value for status in ACTIVE_STATUSES]


class SqlSessionRequestRepository(SessionRequestRepository):
    """SQL-backed SessionRequestRepository.

    Uses synchronous SQLAlchemy sessions executed on the threadpool so the
    event loop is free while the database round trip is in flight. The
    one-active-request-per-child rule is enforced by a partial unique index;
    transitions are a single ``UPDATE ... WHERE status = :expected``.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def add(self, request: SessionRequest) -> SessionRequest:
        return await run_in_threadpool(self._add, request)

    async def get(self, request_id: UUID) -> Optional[SessionRequest]:
        return await run_in_threadpool(self._get, request_id)

    async def latest_for_child(self, child_id: str) -> Optional[SessionRequest]:
        return await run_in_threadpool(self._latest_for_child, child_id)

    async def list_by_status(self, statuses: Iterable[SessionRequestStatus]) -> List[SessionRequest]:
        values = [status.value for status in statuses]
        return await run_in_threadpool(self._list_by_status, values)

    async def transition(
        self,
        request_id: UUID,
        *,
        expected: SessionRequestStatus,
        changes: Mapping[str, Any],
        child_id: Optional[str] = None,
        therapist_id: Optional[str] = None,
    ) -> Optional[SessionRequest]:
        return await run_in_threadpool(
            self._transition,
            request_id,
            expected,
            dict(changes),
            child_id,
            therapist_id,
        )

    # Synchronous workers

    def _add(self, request: SessionRequest) -> SessionRequest:
        session = self._session_factory()
        try:
            existing = session.execute(
                select(SessionRequestORM.id).where(
                    SessionRequestORM.child_id == request.child_id,
                    SessionRequestORM.status.in_(_ACTIVE_VALUES),
                )
            ).first()
            if existing is not None:
                raise ConflictError(request_id=existing[0])

            session.add(SessionRequestORM.from_domain(request))
            session.commit()
            return request
        except IntegrityError as exc:
            # A concurrent insert for the same child won the unique index.
            session.rollback()
            raise ConflictError() from exc
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Failed to insert session request %s", request.id)
            raise StoreError(request_id=request.id) from exc
        finally:
            session.close()

    def _get(self, request_id: UUID) -> Optional[SessionRequest]:
        session = self._session_factory()
        try:
            orm = session.get(SessionRequestORM, request_id)
            return orm.to_domain() if orm is not None else None
        except SQLAlchemyError as exc:
            raise StoreError(request_id=request_id) from exc
        finally:
            session.close()

    def _latest_for_child(self, child_id: str) -> Optional[SessionRequest]:
        session = self._session_factory()
        try:
            orm = session.execute(
                select(SessionRequestORM)
                .where(SessionRequestORM.child_id == child_id)
                .order_by(SessionRequestORM.requested_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return orm.to_domain() if orm is not None else None
        except SQLAlchemyError as exc:
            raise StoreError() from exc
        finally:
            session.close()

    def _list_by_status(self, values: List[str]) -> List[SessionRequest]:
        session = self._session_factory()
        try:
            rows = session.execute(
                select(SessionRequestORM)
                .where(SessionRequestORM.status.in_(values))
                .order_by(SessionRequestORM.requested_at)
            ).scalars()
            return [orm.to_domain() for orm in rows]
        except SQLAlchemyError as exc:
            raise StoreError() from exc
        finally:
            session.close()

    def _transition(
        self,
        request_id: UUID,
        expected: SessionRequestStatus,
        changes: dict,
        child_id: Optional[str],
        therapist_id: Optional[str],
    ) -> Optional[SessionRequest]:
        values = {
            key: (value.value if isinstance(value, SessionRequestStatus) else value)
            for key, value in changes.items()
        }

        stmt = update(SessionRequestORM).where(
            SessionRequestORM.id == request_id,
            SessionRequestORM.status == expected.value,
        )
        if child_id is not None:
            stmt = stmt.where(SessionRequestORM.child_id == child_id)
        if therapist_id is not None:
            stmt = stmt.where(SessionRequestORM.therapist_id == therapist_id)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        session = self._session_factory()
        try:
            result = session.execute(stmt)
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            orm = session.get(SessionRequestORM, request_id, populate_existing=True)
            return orm.to_domain() if orm is not None else None
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Failed to transition session request %s", request_id)
            raise StoreError(request_id=request_id) from exc
        finally:
            session.close()
