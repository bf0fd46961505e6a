from __future__ import annotations

import hashlib
import logging
from contextvars import ContextVar
from typing import List, Optional

from fastapi import Depends, Header, HTTPException, Security, WebSocket, status
from fastapi.security import APIKeyHeader

from src.therapy_sessions.config import settings
from src.therapy_sessions.domain.models.user import User, UserRole
from src.therapy_sessions.services.directory.service import directory_service

logger = logging.getLogger(__name__)

# API key is expected in this header when ENABLE_API_AUTH is true.
_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

# Context variable storing a stable identifier for the current caller. Set to
# a hash of the API key by ``get_api_key`` and to the resolved user id by
# ``get_current_user``, so the audit logger can attribute events.
_current_subject: ContextVar[Optional[str]] = ContextVar("current_subject", default=None)


def get_current_subject() -> Optional[str]:
    """Return the current subject identifier, if any."""

    return _current_subject.get()


def _parse_api_keys() -> List[str]:
    """Return the configured API keys as a normalized list.

    API_KEYS is treated as a comma-separated list. Whitespace is stripped and
    empty entries are ignored.
    """

    if not settings.api_keys:
        return []
    return [key.strip() for key in settings.api_keys.split(",") if key.strip()]


def _authenticate(api_key: Optional[str]) -> str:
    """Check ``api_key`` against API_KEYS and bind the caller subject.

    - If ENABLE_API_AUTH is false (default for development/tests), this is a
      no-op and always succeeds.
    - If ENABLE_API_AUTH is true, a valid API key must be supplied and match
      the configured API_KEYS list.
    """

    if not settings.enable_api_auth:
        _current_subject.set(None)
        return ""

    allowed_keys = _parse_api_keys()
    if not allowed_keys:
        # Misconfiguration: auth is enabled but no keys are configured.
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API authentication is enabled but no API keys are configured.",
        )

    if not api_key or api_key not in allowed_keys:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key.",
        )

    subject_id = "api-key:" + hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]
    _current_subject.set(subject_id)

    return api_key


async def get_api_key(api_key: Optional[str] = Security(_api_key_header)) -> str:
    """FastAPI dependency for simple API-key based authentication."""

    return _authenticate(api_key)


async def authenticate_websocket(websocket: WebSocket) -> bool:
    """Apply the API-key gate to a websocket handshake.

    Browsers cannot set headers on a websocket upgrade, so the key is also
    accepted as the ``api_key`` query parameter. On failure the handshake is
    refused with 1008 and False is returned.
    """

    api_key = websocket.headers.get("x-api-key") or websocket.query_params.get("api_key")
    try:
        _authenticate(api_key)
    except HTTPException as exc:
        logger.warning("Rejected websocket handshake: %s", exc.detail)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(exc.detail))
        return False
    return True


def provision_from_gateway(
    user_id: Optional[str],
    role: Optional[str],
    *,
    name: Optional[str] = None,
    child_ids: Optional[str] = None,
) -> Optional[User]:
    """Upsert the directory entry described by the gateway's identity headers.

    The gateway sends ``X-User-ID`` and ``X-User-Role``, plus optionally
    ``X-User-Name`` and ``X-Child-IDs`` (comma-separated, parents only).
    Returns None when either required claim is missing. Raises ValueError
    for a role the service does not know.
    """

    if not user_id or not role:
        return None

    parsed_role = UserRole(role.strip().lower())
    children = None
    if child_ids is not None:
        children = [child.strip() for child in child_ids.split(",") if child.strip()]
    return directory_service.provision(user_id, parsed_role, name=name, children=children)


async def get_current_user(
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
    x_user_role: Optional[str] = Header(None, alias="X-User-Role"),
    x_user_name: Optional[str] = Header(None, alias="X-User-Name"),
    x_child_ids: Optional[str] = Header(None, alias="X-Child-IDs"),
    api_key: str = Depends(get_api_key),
) -> User:
    """Resolve the calling user from the upstream-authenticated identity.

    Authentication happens in front of this service; the gateway forwards
    the verified user id in ``X-User-ID`` and, when it knows them, the
    caller's role and linked children. Those claims provision the directory
    entry on first sight. A bare ``X-User-ID`` must already be known.
    """

    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing caller identity.")

    try:
        user = provision_from_gateway(x_user_id, x_user_role, name=x_user_name, child_ids=x_child_ids)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown user role.")

    if user is None:
        user = directory_service.get_user(x_user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found.")

    _current_subject.set(user.id)
    return user


def ensure_is_therapist(user: User) -> None:
    """Raise HTTP 403 unless the caller is a therapist."""

    if user.role != UserRole.THERAPIST:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only therapists can perform this action.",
        )


def ensure_is_child_or_parent(user: User) -> None:
    """Raise HTTP 403 unless the caller is a child or a parent acting for one."""

    if user.role in {UserRole.CHILD, UserRole.PARENT}:
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Only children or their parents can perform this action.",
    )
