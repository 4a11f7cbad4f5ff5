from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import Settings, get_settings
from app.core.context import RequestContextMiddleware
from app.core.errors import register_exception_handlers
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import MutationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import configure_tracing, get_fastapi_server_request_hook


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)
    configure_tracing("api", settings)

    application = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_url="/openapi.json" if settings.app_debug else None,
    )
    # last added runs first: correlation id wraps logging, which wraps context and rate limiting
    application.add_middleware(MutationRateLimitMiddleware)
    application.add_middleware(RequestContextMiddleware)
    application.add_middleware(RequestLoggingMiddleware)
    application.add_middleware(CorrelationIdMiddleware)
    register_exception_handlers(application)
    application.include_router(api_router)

    FastAPIInstrumentor.instrument_app(application, server_request_hook=get_fastapi_server_request_hook())
    return application


app = create_app()
