"""FastAPI application factory."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from swaprelay import __version__
from swaprelay.config import get_settings
from swaprelay.errors import (
    ConsistencyViolation,
    DuplicateSwapError,
    IllegalTransitionError,
    SwapNotFoundError,
    TransientInfrastructureError,
    ValidationError,
)
from swaprelay.ledger.database import close_db, init_db
from swaprelay.runtime import Relayer, build_relayer


def _lifespan_for(relayer: Optional[Relayer]):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler.

        A relayer handed to create_app is owned by the caller. Otherwise the
        app builds, starts and stops its own.
        """
        if relayer is not None:
            app.state.relayer = relayer
            yield
            return

        # Startup
        await init_db()
        owned = build_relayer()
        await owned.start()
        app.state.relayer = owned
        yield
        # Shutdown
        await owned.stop()
        await close_db()

    return lifespan


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def create_app(relayer: Optional[Relayer] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="SwapRelay API",
        description="Cross-chain HTLC swap relayer",
        version=__version__,
        lifespan=_lifespan_for(relayer),
        debug=settings.debug,
    )
    if relayer is not None:
        app.state.relayer = relayer

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return _error(400, exc)

    @app.exception_handler(SwapNotFoundError)
    async def not_found(request: Request, exc: SwapNotFoundError):
        return _error(404, exc)

    @app.exception_handler(DuplicateSwapError)
    async def duplicate(request: Request, exc: DuplicateSwapError):
        return _error(409, exc)

    @app.exception_handler(IllegalTransitionError)
    async def illegal_transition(request: Request, exc: IllegalTransitionError):
        return _error(409, exc)

    @app.exception_handler(ConsistencyViolation)
    async def consistency(request: Request, exc: ConsistencyViolation):
        return _error(409, exc)

    @app.exception_handler(TransientInfrastructureError)
    async def unavailable(request: Request, exc: TransientInfrastructureError):
        return _error(503, exc)

    # Register routes
    from swaprelay.api.routes import health, swaps

    app.include_router(health.router, tags=["Health"])
    app.include_router(swaps.router, prefix="/api/v1", tags=["Swaps"])

    return app


# Default app instance
app = create_app()
