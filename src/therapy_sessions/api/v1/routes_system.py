from fastapi import APIRouter, Depends

from src.therapy_sessions.security import get_api_key
from src.therapy_sessions.services.presence.registry import presence_registry
from src.therapy_sessions.services.session_requests.engine import session_request_engine

router = APIRouter(prefix="", tags=["system"])


@router.get("/health")
async def health_check_v1() -> dict:
    """API v1 health endpoint."""
    return {"status": "ok", "version": "v1"}


@router.get("/system/presence", dependencies=[Depends(get_api_key)])
async def presence_stats_v1() -> dict:
    """Connection and store diagnostics for this process.

    Presence is per process, so behind a load balancer each instance reports
    only its own connections.
    """

    return {
        "connected_users": len(presence_registry),
        "store": type(session_request_engine.repository).__name__,
        "pending_timeout_seconds": session_request_engine.pending_timeout_seconds,
    }
