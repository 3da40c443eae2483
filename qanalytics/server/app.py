"""FastAPI application factory."""

from __future__ import annotations

import logging
import os

from fastapi import FastAPI

from qanalytics.config import load_settings
from qanalytics.server.db import create_session_factory, get_engine, init_db
from qanalytics.server.routes.analysis import router as analysis_router
from qanalytics.server.routes.health import router as health_router
from qanalytics.server.routes.stream import router as stream_router
from qanalytics.server.routes.studies import router as studies_router
from qanalytics.session import SessionRegistry

logger = logging.getLogger(__name__)


def create_app(
    db_url: str | None = None,
    verbose: bool = False,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        db_url: Override database URL (e.g. "sqlite://" for in-memory tests).
        verbose: When True, terminal handler shows DEBUG-level messages.

    When uvicorn calls this factory with no arguments (``--reload``), the
    CLI's choices are recovered from ``_QANALYTICS_VERBOSE`` and the
    ``QANALYTICS_DB_URL`` setting.
    """
    if not verbose and os.environ.get("_QANALYTICS_VERBOSE") == "1":
        verbose = True

    settings = load_settings(db_url=db_url)

    app = FastAPI(title="Q-Analytics", docs_url="/api/docs", redoc_url=None)

    engine = get_engine(settings=settings)
    init_db(engine)

    # Store session factory, settings and live sessions in app state for dependency injection
    app.state.db_factory = create_session_factory(engine)
    app.state.db_url = settings.db_url
    app.state.settings = settings
    app.state.registry = SessionRegistry()
    app.state.verbose = verbose

    app.include_router(health_router)
    app.include_router(studies_router)
    app.include_router(analysis_router)
    app.include_router(stream_router)

    logger.debug("App created (db=%s)", settings.database_url)
    return app
