from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from application.api.route.agent import router
from application.chat.chat_service import ChatService
from domain.errors import (
    ConfigurationError,
    NotFoundError,
    PipelineError,
    StateTransitionError,
    TransportError,
    ValidationError,
)
from domain.orchestration.core.engine import Engine

logger = structlog.get_logger(__name__)


def _error_response(status_code: int, error: Exception, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": type(error).__name__, "detail": str(error), **extra},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map runtime errors onto HTTP responses"""

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error_response(404, exc)

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return _error_response(422, exc)

    @app.exception_handler(PipelineError)
    async def pipeline_handler(request: Request, exc: PipelineError):
        logger.error("Turn failed", path=request.url.path, manager_id=exc.manager_id, hook=exc.hook)
        return _error_response(500, exc, manager_id=exc.manager_id, hook=exc.hook)

    @app.exception_handler(StateTransitionError)
    async def state_handler(request: Request, exc: StateTransitionError):
        return _error_response(409, exc)

    @app.exception_handler(ConfigurationError)
    async def configuration_handler(request: Request, exc: ConfigurationError):
        logger.error("Configuration error", path=request.url.path, error=str(exc))
        return _error_response(500, exc, managers=exc.managers)

    @app.exception_handler(TransportError)
    async def transport_handler(request: Request, exc: TransportError):
        logger.error("Upstream failure", path=request.url.path, error=str(exc))
        return _error_response(502, exc)


def create_app(engine: Engine, chat_service: Optional[ChatService] = None) -> FastAPI:
    """Create the HTTP application around a configured engine.

    The engine is started and stopped with the application lifespan.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await engine.start()
        logger.info("API server started")
        try:
            yield
        finally:
            await engine.stop()
            logger.info("API server stopped")

    app = FastAPI(title="Nova Agent API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.engine = engine
    app.state.chat_service = chat_service or ChatService(engine)

    app.include_router(router)
    register_exception_handlers(app)

    @app.get("/health")
    async def health():
        return {"status": "ok", **engine.get_info()}

    return app
