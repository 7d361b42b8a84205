import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.api.v1.routes import router as api_v1_router
from app.config import Settings, load_settings
from app.services.container import Services, build_services
from app.services.errors import DishApiError, InvalidImage

logger = logging.getLogger(__name__)

ENV_PATH = Path(__file__).parent.parent / ".env"


def load_environment(env_path: Path = ENV_PATH) -> Optional[Path]:
    """
    Load variables from a `.env` file next to the project, if present.

    Returns the loaded path, or None. Runs before logging is configured, so
    the caller reports the outcome.
    """
    if not env_path.exists():
        return None
    load_dotenv(dotenv_path=env_path, override=False)
    return env_path


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure through the `{error: {code, message, retryable}}` envelope."""

    @app.exception_handler(DishApiError)
    async def dish_api_error_handler(request: Request, exc: DishApiError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %r", request.method, request.url.path, exc)
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc.code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_envelope())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        error = InvalidImage("Malformed request: expected multipart form data with an `image` file.")
        return JSONResponse(status_code=error.status_code, content=error.to_envelope())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        error = DishApiError()
        return JSONResponse(status_code=error.status_code, content=error.to_envelope())


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[Services] = None,
) -> FastAPI:
    """
    Application factory for the Dish Restyle API.

    When `services` is given (tests), it is used as-is. Otherwise the services
    graph is built from `settings` (or the environment) on startup, so
    importing this module never needs credentials.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if getattr(app.state, "services", None) is None:
            resolved = settings or load_settings()
            app.state.services = build_services(resolved)
            logger.info("Services initialized (model: %s)", resolved.gemini_model)
        yield

    app = FastAPI(
        title="Dish Restyle API",
        version="0.1.0",
        description="Generates four restyled, aspect-formatted variants of a dish photo.",
        lifespan=lifespan,
    )
    app.state.services = services

    # Infrastructure-level health check (non-versioned) primarily for ops.
    @app.get("/health", tags=["health"])
    async def root_health_check() -> dict:
        """Simple root health check endpoint."""
        return {"status": "ok"}

    register_exception_handlers(app)
    app.include_router(api_v1_router)

    return app


_env_file = load_environment()
configure_logging(os.environ.get("LOG_LEVEL", "INFO"))
if _env_file is not None:
    logger.info(".env file loaded from %s", _env_file)
else:
    logger.info("No .env file at %s, using process environment only", ENV_PATH)

app = create_app()
