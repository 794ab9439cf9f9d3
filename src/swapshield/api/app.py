"""FastAPI application factory."""

from typing import TYPE_CHECKING, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from swapshield import __version__
from swapshield.config import Settings, get_settings

if TYPE_CHECKING:
    from swapshield.orchestrator import SwapOrchestrator


def create_app(
    orchestrator: Optional["SwapOrchestrator"] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        orchestrator: Running orchestrator whose status is exposed
        settings: Settings to report (defaults to the environment)
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="SwapShield API",
        description="Diagnostics for the swap resilience layer",
        version=__version__,
        debug=settings.debug,
    )
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    from swapshield.api.routes import health

    app.include_router(health.router, tags=["Health"])

    return app
