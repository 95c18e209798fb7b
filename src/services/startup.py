"""
Startup service: validates configuration and warms the Supabase client
before the API accepts requests, and releases it on shutdown.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import sentry_sdk

from src.config import Config
from src.config.supabase_config import cleanup_supabase_client, get_supabase_client

logger = logging.getLogger(__name__)

SUPABASE_INIT_ATTEMPTS = 2
SUPABASE_INIT_RETRY_DELAY = 1.0  # seconds


async def _initialize_supabase() -> bool:
    last_error = None

    for attempt in range(1, SUPABASE_INIT_ATTEMPTS + 1):
        try:
            logger.info(
                f"Initializing Supabase client (attempt {attempt}/{SUPABASE_INIT_ATTEMPTS})..."
            )
            get_supabase_client()
            logger.info("Supabase client initialized and connection verified")
            return True
        except Exception as e:
            last_error = e
            logger.warning(f"Supabase initialization attempt {attempt} failed: {e}")
            if attempt < SUPABASE_INIT_ATTEMPTS:
                await asyncio.sleep(SUPABASE_INIT_RETRY_DELAY * (2 ** (attempt - 1)))

    logger.warning(
        "Application will start in DEGRADED MODE - payment endpoints may fail until "
        "Supabase is reachable"
    )
    with sentry_sdk.new_scope() as scope:
        scope.set_context(
            "startup",
            {
                "phase": "supabase_initialization",
                "error_type": type(last_error).__name__,
                "attempts": SUPABASE_INIT_ATTEMPTS,
                "degraded_mode": True,
            },
        )
        scope.set_tag("component", "startup")
        scope.level = "warning"
        sentry_sdk.capture_exception(last_error)
    return False


@asynccontextmanager
async def lifespan(app):
    """
    Application lifespan manager for startup and shutdown events
    """
    payments_ready, missing = Config.validate_payment_env()
    if not payments_ready:
        # Webhooks fail closed and cancellation returns 500 until these are set
        logger.error(f"Missing Stripe configuration: {', '.join(missing)}")

    if Config.SUPABASE_URL and Config.SUPABASE_KEY:
        await _initialize_supabase()
    else:
        logger.error("SUPABASE_URL / SUPABASE_KEY not set; database access will fail")

    yield

    logger.info("Shutting down...")
    try:
        cleanup_supabase_client()
    except Exception as e:
        logger.warning(f"Supabase client cleanup warning: {e}")
