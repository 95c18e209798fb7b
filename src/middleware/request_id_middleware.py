"""
Request ID Middleware

Gives every request an id, exposes it on ``request.state.request_id`` and in
the logging context, and echoes it back in the X-Request-ID and
X-Correlation-ID response headers.
"""

import logging
import re
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from src.config.logging_config import request_id_var

logger = logging.getLogger(__name__)

_MAX_REQUEST_ID_LENGTH = 128

# Control characters enable log injection
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_VALID_REQUEST_ID_RE = re.compile(r"^[a-zA-Z0-9._-]{1,128}$")


def _new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


def resolve_request_id(raw_request_id: str | None) -> str:
    """
    Accept a client-supplied id when it is safe to log, otherwise generate one.

    Accepted ids are normalized to carry the ``req_`` prefix.
    """
    if not raw_request_id:
        return _new_request_id()

    sanitized = _CONTROL_CHARS_RE.sub("", raw_request_id)[:_MAX_REQUEST_ID_LENGTH]
    if not _VALID_REQUEST_ID_RE.match(sanitized):
        logger.debug("Client-supplied request ID failed validation and was replaced")
        return _new_request_id()

    return sanitized if sanitized.startswith("req_") else f"req_{sanitized}"


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        # Priority: X-Request-ID header > X-Correlation-ID > generate new
        request_id = resolve_request_id(
            request.headers.get("X-Request-ID") or request.headers.get("X-Correlation-ID")
        )
        request.state.request_id = request_id
        token = request_id_var.set(request_id)

        logger.debug(f"{request.method} {request.url.path}")
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"Error during request processing: {e}", exc_info=True)
            raise
        finally:
            request_id_var.reset(token)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Correlation-ID"] = request_id
        return response


def get_request_id(request: Request) -> str:
    """Request id attached by the middleware, or a fresh one outside it."""
    return getattr(request.state, "request_id", None) or _new_request_id()
