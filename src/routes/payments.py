#!/usr/bin/env python3
"""
Stripe Payment Routes
Endpoints for Stripe webhooks, subscription cancellation, manual sync and
the payment-status read used by the frontend's access gate
"""

import logging
from functools import lru_cache
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from src.db.user_payments import PaymentRecordStore
from src.schemas.payments import (
    CancelSubscriptionRequest,
    MarkNewUserResponse,
    PaymentStatusResponse,
    SyncSubscriptionRequest,
    SyncSubscriptionResponse,
)
from src.security.deps import get_current_user, get_user_directory
from src.services.access_gate import (
    check_user_payment_status,
    is_new_user,
    resolve_route_access,
)
from src.services.payments import StripeService
from src.utils.exceptions import PaymentRecordWriteError, PaymentSyncError, WebhookVerificationError
from src.utils.security_validators import normalize_email, sanitize_for_logging
from src.utils.sentry_context import capture_payment_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Stripe Payments"])

# Same-origin browsers never need these; the cancel endpoint is also called cross-origin
CORS_PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Credentials": "true",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,OPTIONS,PATCH,DELETE,POST,PUT",
    "Access-Control-Allow-Headers": (
        "X-CSRF-Token, X-Requested-With, Accept, Accept-Version, Content-Length, "
        "Content-MD5, Content-Type, Date, X-Api-Version, Authorization"
    ),
}

__all__ = [
    "router",
    "get_stripe_service",
    "get_payment_store",
    "get_user_directory",
]


# ==================== Dependencies ====================


@lru_cache(maxsize=1)
def _build_stripe_service() -> StripeService:
    return StripeService.from_config()


def get_stripe_service() -> StripeService:
    """Provide the shared StripeService (overridden in tests)."""
    try:
        return _build_stripe_service()
    except ValueError as e:
        logger.error(f"Stripe not initialized: {e}")
        raise HTTPException(
            status_code=500, detail="Server configuration error: Stripe not initialized"
        ) from e


def get_payment_store() -> PaymentRecordStore:
    return PaymentRecordStore()


# ==================== Webhook Endpoint ====================


@router.post("/stripe-webhook", status_code=200)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="stripe-signature"),
    service: StripeService = Depends(get_stripe_service),
):
    """
    Stripe webhook endpoint

    Handled events:
    - checkout.session.completed - Checkout finished, record PAID
    - payment_intent.succeeded - One-time payment, record LIFETIME
    - customer.subscription.created / updated - Mirror subscription state
    - customer.subscription.deleted - Mark CANCELLED (row is kept)
    - invoice.payment_succeeded / invoice.paid - Re-read the subscription

    Any other event type is acknowledged without changes.

    The raw body is needed for signature verification, so this reads
    ``request.body()`` instead of a parsed model.

    Returns:
        200 ``{received, event_type, event_id, handled}`` once verified,
        400 ``{error}`` when verification fails,
        500 ``{error}`` when a handler fails unexpectedly (Stripe retries)
    """
    payload = await request.body()

    try:
        result = service.handle_webhook(payload=payload, signature=stripe_signature)
    except WebhookVerificationError as e:
        logger.warning(f"Webhook signature verification failed: {e.message}")
        return JSONResponse(status_code=400, content={"error": e.message})
    except Exception as e:
        logger.error(f"Webhook processing error: {e}", exc_info=True)
        capture_payment_error(e, operation="stripe_webhook")
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})

    logger.info(f"Webhook processed: {result.event_type} - {result.message}")
    return {
        "received": True,
        "event_type": result.event_type,
        "event_id": result.event_id,
        "handled": result.handled,
    }


# ==================== Subscription Management ====================


@router.options("/cancel-subscription")
async def cancel_subscription_preflight():
    return Response(status_code=200, headers=CORS_PREFLIGHT_HEADERS)


@router.post("/cancel-subscription", response_model=dict[str, Any])
def cancel_subscription(
    body: CancelSubscriptionRequest | None = None,
    current_user: dict[str, Any] = Depends(get_current_user),
    service: StripeService = Depends(get_stripe_service),
):
    """
    Cancel the caller's subscription at the end of the billing period.

    The caller must be cancelling their own subscription (``userId`` must
    match the session user). Access continues until ``current_period_end``.

    Example response:
    {
        "success": true,
        "message": "Subscription will be cancelled at the end of the billing period",
        "current_period_end": 1700000000,
        "local_sync_pending": false
    }
    """
    requested_user_id = body.user_id if body else None
    user_id = current_user["id"]

    try:
        result = service.cancel_subscription(user_id, requested_user_id or "")
    except PaymentSyncError as e:
        if e.status_code >= 500:
            logger.error(f"Error canceling subscription for user {user_id}: {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.message) from e
    except Exception as e:
        logger.error(f"Error canceling subscription: {e}", exc_info=True)
        capture_payment_error(e, operation="cancel_subscription", user_id=user_id)
        raise HTTPException(status_code=500, detail="Internal server error") from e

    return result.model_dump(exclude_none=True)


@router.post("/sync-subscription", response_model=dict[str, Any])
def sync_subscription(
    body: SyncSubscriptionRequest | None = None,
    service: StripeService = Depends(get_stripe_service),
):
    """
    Rebuild one user's payment record from Stripe by email.

    Used to repair a record when a webhook was missed.
    """
    email = body.email if body else None
    if not normalize_email(email):
        raise HTTPException(status_code=400, detail="Email is required")

    try:
        record = service.sync_subscription(email)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except PaymentRecordWriteError as e:
        logger.error(f"Error updating payment record during sync: {e.message}")
        raise HTTPException(status_code=500, detail="Failed to update payment record") from e
    except PaymentSyncError as e:
        logger.info(
            f"Sync for {sanitize_for_logging(email)} stopped: {e.message} ({e.status_code})"
        )
        raise HTTPException(status_code=e.status_code, detail=e.message) from e
    except Exception as e:
        logger.error(f"Error syncing subscription: {e}", exc_info=True)
        capture_payment_error(e, operation="sync_subscription")
        raise HTTPException(status_code=500, detail="Failed to sync subscription") from e

    return SyncSubscriptionResponse(data=record).model_dump()


# ==================== Access Gate ====================


@router.get("/payment-status", response_model=PaymentStatusResponse)
def payment_status(
    path: str | None = None,
    current_user: dict[str, Any] = Depends(get_current_user),
    store: PaymentRecordStore = Depends(get_payment_store),
):
    """
    Report whether the caller has paid.

    When ``path`` is given, also report whether the caller may open that
    route and where to redirect otherwise.
    """
    user_id = current_user["id"]
    has_paid = check_user_payment_status(store, user_id)

    return PaymentStatusResponse(
        user_id=user_id,
        has_paid=has_paid,
        is_new_user=False if has_paid else is_new_user(store, user_id),
        access=resolve_route_access(path, user_id, has_paid) if path else None,
    )


@router.post("/mark-new-user", response_model=MarkNewUserResponse)
def mark_new_user(
    current_user: dict[str, Any] = Depends(get_current_user),
    store: PaymentRecordStore = Depends(get_payment_store),
):
    """Create the caller's NONE payment record after sign-up (no-op if one exists)."""
    user_id = current_user["id"]
    try:
        created = store.mark_user_as_new(user_id)
    except PaymentRecordWriteError as e:
        logger.error(f"Error marking user {user_id} as new: {e.message}")
        raise HTTPException(status_code=500, detail="Failed to create payment record") from e

    return MarkNewUserResponse(user_id=user_id, created=created)
