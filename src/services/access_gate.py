"""
Access gate: decides whether a user may use the premium app.

Entitlement is read from user_payments only, and only ``status == PAID``
grants access. Reads that fail are treated as "not paid" so a backend
outage never opens the paywall.
"""

import logging

from src.db.user_payments import PaymentRecordStore
from src.schemas.payments import AccessDecision, PaymentStatus
from src.utils.security_validators import sanitize_for_logging

logger = logging.getLogger(__name__)

LOGIN_PATH = "/login"
PAYMENT_PATH = "/payment"

# Reachable by any signed-in user, paid or not
PAYMENT_EXEMPT_PATHS = ("/payment", "/payment-success")


def check_user_payment_status(store: PaymentRecordStore, user_id: str | None) -> bool:
    """Return True only when the user's record says PAID. Never raises."""
    if not user_id:
        return False

    try:
        record = store.get(user_id)
    except Exception as e:
        logger.error(
            "Error checking payment status for user %s: %s", sanitize_for_logging(user_id), e
        )
        return False

    return record is not None and record.is_paid


def is_new_user(store: PaymentRecordStore, user_id: str) -> bool:
    """True when the user has no payment record yet or is still in NONE."""
    try:
        record = store.get(user_id)
    except Exception as e:
        logger.error("Error in is_new_user for %s: %s", sanitize_for_logging(user_id), e)
        return False

    return record is None or record.status == PaymentStatus.NONE.value


def _is_payment_exempt(path: str) -> bool:
    normalized = "/" + path.strip("/")
    return any(
        normalized == exempt or normalized.startswith(exempt + "/")
        for exempt in PAYMENT_EXEMPT_PATHS
    )


def resolve_route_access(path: str, user_id: str | None, has_paid: bool) -> AccessDecision:
    """
    Decide what happens when a user navigates to ``path``.

    Unauthenticated users go to the login page. The payment pages are
    always reachable so an unpaid user can pay. Everything else requires
    a paid record.
    """
    if not user_id:
        return AccessDecision(allowed=False, redirect_to=LOGIN_PATH)
    if _is_payment_exempt(path):
        return AccessDecision(allowed=True)
    if not has_paid:
        return AccessDecision(allowed=False, redirect_to=PAYMENT_PATH)
    return AccessDecision(allowed=True)
