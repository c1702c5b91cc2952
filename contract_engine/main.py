import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from contract_engine.api.v1.router import v1_router
from contract_engine.core.config import get_settings
from contract_engine.core.errors import ContractEngineError, RateLimitError
from contract_engine.core.logging import configure_logging
from contract_engine.core.middleware import RequestIdMiddleware
from contract_engine.db.session import SessionLocal
from contract_engine.services.expiry_sweeper import ExpirySweeper

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    sweeper = None
    if settings.sweeper_enabled:
        sweeper = ExpirySweeper(session_factory=SessionLocal, settings=settings)
        sweeper.start()
    app.state.sweeper = sweeper
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.shutdown()


async def handle_domain_error(request: Request, exc: ContractEngineError) -> JSONResponse:
    headers = {}
    if isinstance(exc, RateLimitError):
        headers["Retry-After"] = str(exc.retry_after)
    if exc.status_code >= 500:
        logger.error("request_failed", extra={"code": exc.code, "path": request.url.path})
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
        headers=headers,
    )


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        lifespan=lifespan,
    )
    # Middleware: Request ID
    app.add_middleware(RequestIdMiddleware, header_name=settings.request_id_header)

    # Domain errors -> {"detail", "code"}
    app.add_exception_handler(ContractEngineError, handle_domain_error)

    # API v1
    app.include_router(v1_router, prefix=settings.api_prefix)

    return app


app = create_app()
