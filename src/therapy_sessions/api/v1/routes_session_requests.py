from __future__ import annotations

from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Type
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from src.therapy_sessions.domain.errors import (
    ConflictError,
    InvalidStateError,
    NoChildLinked,
    NotFound,
    NotOwner,
    SessionRequestError,
    StoreError,
)
from src.therapy_sessions.domain.models.session_request import (
    CancellationResult,
    SessionRequestView,
    TherapistDashboard,
)
from src.therapy_sessions.domain.models.user import User
from src.therapy_sessions.security import (
    ensure_is_child_or_parent,
    ensure_is_therapist,
    get_api_key,
    get_current_user,
)
from src.therapy_sessions.services.session_requests.engine import session_request_engine

router = APIRouter(
    prefix="/session-requests",
    tags=["session-requests"],
    dependencies=[Depends(get_api_key)],
)

_ERROR_STATUS: Dict[Type[SessionRequestError], int] = {
    ConflictError: status.HTTP_409_CONFLICT,
    InvalidStateError: status.HTTP_409_CONFLICT,
    NotOwner: status.HTTP_403_FORBIDDEN,
    NotFound: status.HTTP_404_NOT_FOUND,
    NoChildLinked: status.HTTP_400_BAD_REQUEST,
    StoreError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@contextmanager
def domain_errors_as_http() -> Iterator[None]:
    """Translate engine errors into HTTP responses with a short message."""

    try:
        yield
    except SessionRequestError as exc:
        code = _ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
        raise HTTPException(status_code=code, detail=exc.message) from exc


class CreateSessionRequestBody(BaseModel):
    description: Optional[str] = None


@router.post("/", response_model=SessionRequestView, status_code=status.HTTP_201_CREATED)
async def create_session_request(
    payload: CreateSessionRequestBody,
    current_user: User = Depends(get_current_user),
) -> SessionRequestView:
    ensure_is_child_or_parent(current_user)
    with domain_errors_as_http():
        return await session_request_engine.create_request(current_user, description=payload.description)


@router.get("/my", response_model=Optional[SessionRequestView])
async def get_my_session_request(current_user: User = Depends(get_current_user)) -> Optional[SessionRequestView]:
    """Most recent request of the caller's child, or null when there is none."""

    ensure_is_child_or_parent(current_user)
    with domain_errors_as_http():
        return await session_request_engine.get_my_request(current_user)


@router.get("/", response_model=List[SessionRequestView])
async def list_active_session_requests(current_user: User = Depends(get_current_user)) -> List[SessionRequestView]:
    """All pending and in-progress requests.

    Therapist clients call this after every (re)connect to rebuild their
    pending queue and their own live session.
    """

    ensure_is_therapist(current_user)
    with domain_errors_as_http():
        return await session_request_engine.list_active_requests()


@router.get("/dashboard", response_model=TherapistDashboard)
async def get_therapist_dashboard(current_user: User = Depends(get_current_user)) -> TherapistDashboard:
    ensure_is_therapist(current_user)
    with domain_errors_as_http():
        return await session_request_engine.therapist_dashboard(current_user.id)


@router.put("/{request_id}/accept", response_model=SessionRequestView)
async def accept_session_request(
    request_id: UUID,
    current_user: User = Depends(get_current_user),
) -> SessionRequestView:
    ensure_is_therapist(current_user)
    with domain_errors_as_http():
        return await session_request_engine.accept_request(request_id, current_user.id)


@router.put("/{request_id}/decline", response_model=SessionRequestView)
async def decline_session_request(
    request_id: UUID,
    current_user: User = Depends(get_current_user),
) -> SessionRequestView:
    ensure_is_therapist(current_user)
    with domain_errors_as_http():
        return await session_request_engine.decline_request(request_id, current_user.id)


@router.put("/{request_id}/end", response_model=SessionRequestView)
async def end_session(
    request_id: UUID,
    current_user: User = Depends(get_current_user),
) -> SessionRequestView:
    ensure_is_therapist(current_user)
    with domain_errors_as_http():
        return await session_request_engine.end_session(request_id, current_user.id)


@router.delete("/{request_id}", response_model=CancellationResult)
async def cancel_session_request(
    request_id: UUID,
    current_user: User = Depends(get_current_user),
) -> CancellationResult:
    ensure_is_child_or_parent(current_user)
    with domain_errors_as_http():
        return await session_request_engine.cancel_request(request_id, current_user)
