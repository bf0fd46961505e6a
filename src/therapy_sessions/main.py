import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.therapy_sessions.api.v1.routes_realtime import router as realtime_router_v1
from src.therapy_sessions.api.v1.routes_session_requests import router as session_requests_router_v1
from src.therapy_sessions.api.v1.routes_system import router as system_router_v1
from src.therapy_sessions.config import settings
from src.therapy_sessions.infra.db.bootstrap import init_sql_repositories
from src.therapy_sessions.services.directory.service import init_directory

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Therapy Session Requests API")


@app.on_event("startup")
async def on_startup() -> None:
    """Application startup hook.

    Loads DIRECTORY_SEED_FILE into the user directory when it is set. When
    USE_SQL_REPOS is enabled and a DATABASE_URL is configured, this also
    switches the session request engine to the SQL-backed store. In other
    environments (tests, local dev without a database), both steps are
    no-ops and the in-memory store remains active.
    """

    init_directory()
    init_sql_repositories()

# CORS configuration – permissive by default for development. Tighten via
# CORS_ALLOW_ORIGINS in production deployments.
allow_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()] or ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", tags=["system"])
async def health_check() -> dict:
    """Basic liveness probe for the API root."""
    return {"status": "ok"}


# Versioned API routers
app.include_router(system_router_v1, prefix="/api/v1")
app.include_router(session_requests_router_v1, prefix="/api/v1")
app.include_router(realtime_router_v1, prefix="/api/v1")
