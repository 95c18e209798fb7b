import logging
import os
import time
from collections.abc import Callable
from typing import Any, TypeVar

import httpx

from src.config.config import Config
from supabase import Client, create_client
from supabase.client import ClientOptions

logger = logging.getLogger(__name__)

T = TypeVar("T")

_supabase_client: Client | None = None
_last_error: Exception | None = None  # Track last initialization error
_last_error_time: float = 0  # Timestamp of last error
ERROR_CACHE_TTL = 60.0  # Retry after 60 seconds


def get_supabase_client() -> Client:
    """
    Return the process-wide service-role Supabase client, creating it on first use.

    A failed initialization is cached for ERROR_CACHE_TTL seconds so that a
    misconfigured deployment does not hammer Supabase on every request.
    """
    global _supabase_client, _last_error, _last_error_time

    if _supabase_client is not None:
        return _supabase_client

    if _last_error is not None:
        time_since_error = time.time() - _last_error_time
        if time_since_error < ERROR_CACHE_TTL:
            retry_in = int(ERROR_CACHE_TTL - time_since_error)
            raise RuntimeError(
                f"Supabase unavailable (retry in {retry_in}s): {_last_error}"
            ) from _last_error
        logger.info("Error cache expired, retrying Supabase initialization...")
        _last_error = None
        _last_error_time = 0

    try:
        Config.validate()

        if not Config.SUPABASE_URL.startswith(("http://", "https://")):
            raise RuntimeError(
                f"SUPABASE_URL must start with 'http://' or 'https://'. "
                f"Current value: '{Config.SUPABASE_URL}'"
            )

        masked_url = (
            Config.SUPABASE_URL[:30] + "..." if len(Config.SUPABASE_URL) > 30 else Config.SUPABASE_URL
        )
        logger.info(f"Initializing Supabase client with URL: {masked_url}")

        postgrest_base_url = f"{Config.SUPABASE_URL}/rest/v1"

        # Serverless deployments get a smaller pool
        if os.getenv("VERCEL") or os.getenv("AWS_LAMBDA_FUNCTION_NAME"):
            max_conn, keepalive_conn = 20, 5
        else:
            max_conn, keepalive_conn = 50, 20

        httpx_client = httpx.Client(
            base_url=postgrest_base_url,
            headers={
                "apikey": Config.SUPABASE_KEY,
                "Authorization": f"Bearer {Config.SUPABASE_KEY}",
            },
            timeout=httpx.Timeout(30.0, connect=10.0),
            limits=httpx.Limits(
                max_connections=max_conn,
                max_keepalive_connections=keepalive_conn,
                keepalive_expiry=60.0,
            ),
            http2=True,
        )

        client = create_client(
            supabase_url=Config.SUPABASE_URL,
            supabase_key=Config.SUPABASE_KEY,
            options=ClientOptions(
                postgrest_client_timeout=30,
                schema="public",
                auto_refresh_token=False,
                persist_session=False,
                headers={"X-Client-Info": f"{Config.SERVICE_NAME}/1.0"},
            ),
        )

        # Route PostgREST traffic through the pooled HTTP/2 client
        if hasattr(client, "postgrest") and hasattr(client.postgrest, "session"):
            client.postgrest.session = httpx_client

        _test_connection_internal(client)

        _supabase_client = client
        return _supabase_client

    except Exception as e:
        _last_error = e
        _last_error_time = time.time()

        logger.error(
            f"Failed to initialize Supabase client: {type(e).__name__}: {e}",
            exc_info=True,
        )

        from src.utils.sentry_context import capture_error

        capture_error(
            e,
            context_type="supabase_config",
            context_data={
                "supabase_url_set": bool(Config.SUPABASE_URL),
                "supabase_key_set": bool(Config.SUPABASE_KEY),
            },
            tags={"component": "supabase_client"},
        )

        raise RuntimeError(f"Supabase client initialization failed: {e}") from e


def _test_connection_internal(client: Client) -> bool:
    """
    Run a trivial query against user_payments with the given client.

    Raises:
        RuntimeError: If the query fails
    """
    try:
        client.table("user_payments").select("user_id").limit(1).execute()
        logger.info("Database connection test successful")
        return True
    except Exception as e:
        logger.error(f"Database connection test failed: {type(e).__name__}: {e}")
        raise RuntimeError(f"Database connection failed: {e}") from e


def get_initialization_status() -> dict:
    """Report whether the cached client exists and the last init error, for /health."""
    return {
        "initialized": _supabase_client is not None,
        "has_error": _last_error is not None,
        "error_message": str(_last_error) if _last_error else None,
        "error_type": type(_last_error).__name__ if _last_error else None,
    }


def _close_session(client: Client) -> None:
    if hasattr(client, "postgrest") and hasattr(client.postgrest, "session"):
        session = client.postgrest.session
        if hasattr(session, "close"):
            session.close()


def cleanup_supabase_client() -> None:
    """Close the pooled httpx client on application shutdown."""
    global _supabase_client

    if _supabase_client is None:
        return

    try:
        _close_session(_supabase_client)
        logger.info("Supabase client cleanup completed")
    except Exception as e:
        logger.warning(f"Error during Supabase client cleanup: {e}")
    finally:
        _supabase_client = None


def reset_supabase_client() -> bool:
    """
    Drop the cached client so the next call builds a fresh connection pool.

    Returns:
        bool: True if a cached client was discarded
    """
    global _supabase_client, _last_error, _last_error_time

    if _supabase_client is None:
        return False

    try:
        _close_session(_supabase_client)
    except Exception as close_error:
        logger.debug(f"Error closing httpx client during reset: {close_error}")

    _supabase_client = None
    _last_error = None
    _last_error_time = 0
    logger.info("Supabase client reset - next request will create fresh connection")
    return True


def is_http2_protocol_error(error: Exception) -> bool:
    """
    Check if an exception is an HTTP/2 protocol error that requires connection reset.

    These show up when Supabase closes a long-lived HTTP/2 connection and the
    pool tries to reuse it.
    """
    error_str = str(error).lower()
    error_type = type(error).__name__.lower()

    if "protocolerror" in error_type:
        return True

    http2_error_indicators = (
        "streamidtoolowerror",
        "connectionterminated",
        "connectionstate.closed",
        "server disconnected",
        "stream closed",
        "connection reset by peer",
        "goaway",
    )
    if any(indicator in error_str for indicator in http2_error_indicators):
        return True

    if error.__cause__ is not None and error.__cause__ is not error:
        return is_http2_protocol_error(error.__cause__)

    return False


def execute_with_retry(
    operation: Callable[[Any], T],
    max_retries: int = 2,
    operation_name: str = "database operation",
    client: Any | None = None,
) -> T:
    """
    Execute a database operation with automatic retry on HTTP/2 protocol errors.

    Args:
        operation: Callable receiving a Supabase client and returning the result
        max_retries: Maximum number of retry attempts (default: 2)
        operation_name: Name of the operation for logging purposes
        client: Explicit client to use. When omitted the shared client is used
            and reset between attempts.

    Returns:
        The result of the operation

    Example:
        def upsert_row(client):
            return client.table("user_payments").upsert(row, on_conflict="user_id").execute()

        result = execute_with_retry(upsert_row, operation_name="upsert_payment")
    """
    last_error: Exception | None = None

    for attempt in range(max_retries + 1):
        try:
            active_client = client if client is not None else get_supabase_client()
            return operation(active_client)
        except Exception as e:
            last_error = e

            if not is_http2_protocol_error(e) or attempt >= max_retries:
                if is_http2_protocol_error(e):
                    logger.error(
                        f"HTTP/2 protocol error in {operation_name} after {max_retries + 1} attempts: {e}"
                    )
                raise

            logger.warning(
                f"HTTP/2 protocol error in {operation_name} "
                f"(attempt {attempt + 1}/{max_retries + 1}): {e}. Retrying..."
            )
            if client is None:
                reset_supabase_client()
            time.sleep(0.1)

    raise last_error if last_error else RuntimeError(f"{operation_name} failed with no error captured")
