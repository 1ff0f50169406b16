from typing import Optional
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import asyncio
import structlog

from application.api.route.sessions import router as sessions_router
from application.session.session_manager import AgentFactory, SessionManager, load_agent_factory
from domain.context.errors import (
    ContextStoreError,
    DuplicateKeyError,
    InvalidContextItemError,
    MissingKeyError,
    PersistenceError,
    StoreNotReadyError,
)
from domain.orchestration.errors import OrchestratorError
from infrastructure.config.settings import Settings, get_settings
from infrastructure.observability.logging import setup_logging, metrics

logger = structlog.get_logger(__name__)

_STATUS_BY_ERROR = (
    (DuplicateKeyError, 409),
    (MissingKeyError, 404),
    (InvalidContextItemError, 422),
    (StoreNotReadyError, 503),
    (PersistenceError, 503),
)


def create_app(
    settings: Optional[Settings] = None,
    session_manager: Optional[SessionManager] = None,
    agent_factory: Optional[AgentFactory] = None,
) -> FastAPI:
    """Build the API around one session manager"""

    settings = settings or get_settings()
    setup_logging(
        log_level=settings.log_level,
        log_format=settings.log_format,
        service_name=settings.service_name,
        environment=settings.environment,
        version=settings.version,
    )

    if session_manager is None:
        session_manager = SessionManager(
            settings=settings,
            agent_factory=agent_factory or load_agent_factory(settings.agent_factory),
        )

    app = FastAPI(title="Context Orchestrator", version=settings.version)
    app.state.settings = settings
    app.state.session_manager = session_manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(sessions_router)

    @app.exception_handler(ContextStoreError)
    async def context_store_error_handler(request: Request, exc: ContextStoreError):
        status_code = next(
            (code for error_type, code in _STATUS_BY_ERROR if isinstance(exc, error_type)), 500
        )
        logger.warning("Context store error", path=request.url.path, error=str(exc),
                       error_type=type(exc).__name__)
        return JSONResponse(status_code=status_code,
                            content={"error": type(exc).__name__, "detail": str(exc)})

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error_handler(request: Request, exc: OrchestratorError):
        logger.error("Orchestrator configuration error", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=500,
                            content={"error": type(exc).__name__, "detail": str(exc)})

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "sessions": len(app.state.session_manager.sessions),
            "store_backend": settings.store_backend,
        }

    @app.get("/metrics")
    async def metrics_summary():
        return metrics.get_metrics_summary()

    @app.on_event("startup")
    async def startup_event():
        """Start the idle-session sweeper"""
        app.state.sweeper = asyncio.create_task(app.state.session_manager.sweep_forever())
        logger.info("Context orchestrator started", store_backend=settings.store_backend)

    @app.on_event("shutdown")
    async def shutdown_event():
        """Stop the sweeper and close every session"""
        sweeper = getattr(app.state, "sweeper", None)
        if sweeper is not None:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass

        await app.state.session_manager.shutdown()
        logger.info("Context orchestrator shutdown")

    return app


def main():
    """Run the API with uvicorn"""
    import uvicorn

    settings = get_settings()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port,
                log_config=None)


if __name__ == "__main__":
    main()
