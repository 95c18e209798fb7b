import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.config import Config

# Initialize logging with Loki integration
from src.config.logging_config import configure_logging
from src.config.supabase_config import get_initialization_status
from src.middleware.request_id_middleware import RequestIDMiddleware, get_request_id
from src.routes.payments import router as payments_router
from src.services.startup import lifespan

configure_logging()
logger = logging.getLogger(__name__)

# Initialize Sentry for error monitoring
if Config.SENTRY_ENABLED and Config.SENTRY_DSN:
    import sentry_sdk

    def sentry_traces_sampler(sampling_context):
        """
        Sampling strategy:
        - Errors: always (parent_sampled)
        - Development: 100%
        - Health endpoint: 0%
        - Stripe webhook: 50% (low volume, money-moving)
        - Everything else: SENTRY_TRACES_SAMPLE_RATE
        """
        if sampling_context.get("parent_sampled") is not None:
            return 1.0

        if Config.SENTRY_ENVIRONMENT == "development":
            return 1.0

        endpoint = ""
        if "asgi_scope" in sampling_context:
            endpoint = sampling_context["asgi_scope"].get("path", "")

        if endpoint == "/health":
            return 0.0
        if endpoint == "/api/stripe-webhook":
            return 0.5
        return Config.SENTRY_TRACES_SAMPLE_RATE

    sentry_sdk.init(
        dsn=Config.SENTRY_DSN,
        # Emails and user ids stay out of events; payment data is sensitive
        send_default_pii=False,
        environment=Config.SENTRY_ENVIRONMENT,
        release=Config.SENTRY_RELEASE,
        traces_sampler=sentry_traces_sampler,
    )
    logger.info(
        f"Sentry initialized (environment: {Config.SENTRY_ENVIRONMENT}, "
        f"release: {Config.SENTRY_RELEASE})"
    )
else:
    logger.info("Sentry disabled (SENTRY_ENABLED=false or SENTRY_DSN not set)")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Precios CR Payments API",
        description="Keeps Supabase payment records in sync with Stripe",
        version="1.0.0",
        lifespan=lifespan,
    )

    # ==================== Middleware ====================

    allow_all = Config.CORS_ALLOWED_ORIGINS == ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=Config.CORS_ALLOWED_ORIGINS,
        # Browsers reject credentials with a wildcard origin
        allow_credentials=not allow_all,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Correlation-ID"],
    )
    app.add_middleware(RequestIDMiddleware)

    # ==================== Routes ====================

    app.include_router(payments_router)

    @app.get("/health", tags=["health"])
    async def health():
        return {
            "status": "healthy",
            "service": Config.SERVICE_NAME,
            "database": get_initialization_status(),
        }

    # ==================== Exception Handlers ====================

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Render HTTPExceptions as ``{"error": detail}``."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)

        request_id = get_request_id(request)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "request_id": request_id},
            headers={"X-Request-ID": request_id},
        )

    return app


# Export a default app instance for environments that import `app`
app = create_app()

if __name__ == "__main__":
    import uvicorn

    logger.info("Starting payments API server...")
    uvicorn.run("src.main:app", host="0.0.0.0", port=8000, reload=Config.IS_DEVELOPMENT)
