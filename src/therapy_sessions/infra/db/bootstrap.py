from __future__ import annotations

import logging
from typing import Optional

from src.therapy_sessions.config import settings
from src.therapy_sessions.infra.db.models import Base
from src.therapy_sessions.infra.db.session import create_sqlalchemy_engine, create_sqlalchemy_session_factory
from src.therapy_sessions.infra.db.sql_session_requests import SqlSessionRequestRepository
from src.therapy_sessions.services.session_requests.engine import SessionRequestEngine, session_request_engine

logger = logging.getLogger(__name__)


def build_sql_repository(database_url: str) -> SqlSessionRequestRepository:
    """Create the SQL request store for ``database_url``, creating tables if needed."""

    engine = create_sqlalchemy_engine(database_url)

    # Create tables if they do not exist. In a real deployment this should be
    # handled by migrations, but this is convenient for early setups.
    Base.metadata.create_all(engine)

    return SqlSessionRequestRepository(create_sqlalchemy_session_factory(engine))


def init_sql_repositories(
    database_url: Optional[str] = None,
    *,
    engine: Optional[SessionRequestEngine] = None,
) -> bool:
    """Optionally switch the in-memory request store to the SQL-backed one.

    If USE_SQL_REPOS is not enabled or DATABASE_URL is not configured, this is
    a no-op and the in-memory store remains active. Returns True when the
    SQL store was installed.
    """

    if not settings.use_sql_repos:
        return False

    db_url = database_url or settings.database_url
    if not db_url:
        logger.warning("USE_SQL_REPOS is enabled but DATABASE_URL is not set; keeping in-memory store")
        return False

    target = engine or session_request_engine
    target.repository = build_sql_repository(db_url)
    logger.info("Session requests are now persisted via SQL")
    return True
