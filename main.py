from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, get_settings
from db_models import ErrorResponse, FinalResponse, IdentifyRequest
from db_setup import init_db
from identity import InvalidObservationError, identify
from logging_setup import configure_logging

logger = structlog.get_logger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return f"{field}: {first.get('msg')}" if field else first.get("msg", "Invalid request body")


def register_exception_handlers(app: FastAPI):

    @app.exception_handler(InvalidObservationError)
    async def invalid_observation(request: Request, exc: InvalidObservationError):
        return _error(400, str(exc))

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError):
        return _error(400, _validation_message(exc))

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path, error=str(exc))
        return _error(500, "Internal server error")


def create_app(settings: Settings = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_format)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(settings.db_path)
        logger.info("service_started", db_path=settings.db_path)
        yield
        logger.info("service_stopped")

    app = FastAPI(
        title=settings.service_name,
        version=settings.service_version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    register_exception_handlers(app)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": settings.service_name, "version": settings.service_version}

    @app.post(
        "/identify",
        response_model=FinalResponse,
        responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    )
    def identify_contact(request: IdentifyRequest):
        # sync route: runs in the threadpool, the sqlite driver blocks
        contact = identify(request, db_name=settings.db_path, timeout=settings.db_timeout_seconds)
        return FinalResponse(contact=contact)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
