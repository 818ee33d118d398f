"""Application factory for the admission control service.

Centralizes app construction (metadata, middleware, handlers, routers) so
tests can build isolated instances.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from admission.api.routes import admission_router, health_router
from admission.core.admission import get_admission_engine
from admission.core.config import settings
from admission.core.exception_handlers import setup_exception_handlers
from admission.core.logging import configure_logging
from admission.core.middleware import request_id_middleware

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the engine at startup so a bad configured policy fails fast."""

    engine = get_admission_engine()
    logger.info("admission.startup", extra=engine.stats())
    yield
    logger.info("admission.shutdown", extra={"total_entries": len(engine)})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance."""

    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="Admission Control API",
        description=(
            "In-process, fixed-window admission control. Host routes guard "
            "operations with per-subject quotas; the admin API manages "
            "policies and counters."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )

    app.middleware("http")(request_id_middleware)
    setup_exception_handlers(app)

    app.include_router(admission_router, prefix="/v1")
    app.include_router(health_router)

    return app
