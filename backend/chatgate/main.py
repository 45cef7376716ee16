import sentry_sdk
import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.routing import APIRoute

from chatgate.api.main import api_router
from chatgate.api.routes import utils
from chatgate.core.config import Settings, settings as default_settings
from chatgate.errors import RequestValidationFailed, error_response
from chatgate.lifecycle import ServerState
from chatgate.middleware.cors import CORSHeadersMiddleware
from chatgate.middleware.request_id import RequestIdMiddleware
from chatgate.observability import MetricsMiddleware, metrics_router
from chatgate.providers.base import CapabilitySource
from chatgate.services.router import BackendCapabilitySource

logger = structlog.get_logger()


def custom_generate_unique_id(route: APIRoute) -> str:
    return f"{route.tags[0]}-{route.name}"


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Undecodable or schema-invalid bodies are the caller's fault: 400, not 422
    errors = exc.errors()
    message = "Invalid request body"
    if errors:
        first = errors[0]
        loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"Invalid request body: {loc + ': ' if loc else ''}{first.get('msg', 'invalid value')}"
    return error_response(RequestValidationFailed(message))


def create_app(
    settings: Settings | None = None,
    capability_source: CapabilitySource | None = None,
    server_state: ServerState | None = None,
) -> FastAPI:
    settings = settings or default_settings

    if settings.SENTRY_DSN and settings.ENVIRONMENT != "local":
        sentry_sdk.init(dsn=str(settings.SENTRY_DSN), enable_tracing=True)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        generate_unique_id_function=custom_generate_unique_id,
    )
    app.state.settings = settings
    app.state.capability_source = capability_source or BackendCapabilitySource(settings)
    app.state.server_state = server_state or ServerState()

    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    # Last added runs first: request id -> metrics -> CORS -> routes
    app.add_middleware(CORSHeadersMiddleware, allow_origin=settings.CORS_ALLOW_ORIGIN)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIdMiddleware)

    app.include_router(api_router, prefix="/v1")
    app.include_router(utils.router)
    app.include_router(metrics_router)
    return app


app = create_app()
