#!/usr/bin/env python3
"""
Stripe Service
Keeps user_payments in sync with Stripe: webhook dispatch, user-initiated
cancellation and on-demand single-user sync
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

import stripe

from src.config import Config
from src.db.payment_sync_outbox import PaymentSyncOutbox
from src.db.user_payments import PaymentRecordStore
from src.db.users import UserDirectory
from src.schemas.payments import (
    CancelSubscriptionResponse,
    PaymentRecord,
    PaymentStatus,
    PaymentType,
    WebhookProcessingResult,
)
from src.services.stripe_client import (
    StripeProviderClient,
    get_invoice_subscription_id,
    get_list_data,
    get_subscription_period_end,
    get_value,
)
from src.utils.exceptions import (
    CustomerNotFoundError,
    InvalidPaymentTypeError,
    MissingSubscriptionIdError,
    PaymentNotFoundError,
    PaymentRecordWriteError,
    PaymentSyncError,
    SubscriptionForbiddenError,
    SubscriptionNotFoundError,
    UserNotFoundError,
)
from src.utils.security_validators import mask_email, normalize_email, sanitize_for_logging
from src.utils.sentry_context import capture_payment_error
from src.utils.timestamps import epoch_to_datetime, epoch_to_iso, utc_now_seconds

logger = logging.getLogger(__name__)

CANCEL_SUCCESS_MESSAGE = "Subscription will be cancelled at the end of the billing period"
CANCEL_PENDING_MESSAGE = "Subscription cancelled in Stripe. Database sync pending."
CANCEL_PENDING_WARNING = "Database update failed but cancellation is active"


def _cents_to_amount(cents: Any) -> float | None:
    if cents is None or isinstance(cents, bool):
        return None
    try:
        return round(float(cents) / 100, 2)
    except (TypeError, ValueError):
        return None


def _object_id(value: Any) -> str | None:
    """Return the id of a Stripe reference that may be a plain id or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return get_value(value, "id")


class StripeService:
    """Service class for syncing Stripe payment state into user_payments"""

    def __init__(
        self,
        provider: StripeProviderClient,
        payments: PaymentRecordStore,
        users: UserDirectory,
        outbox: PaymentSyncOutbox | None = None,
        webhook_secret: str | None = None,
    ):
        self.provider = provider
        self.payments = payments
        self.users = users
        self.outbox = outbox
        self.webhook_secret = webhook_secret

        if not self.webhook_secret:
            logger.warning(
                "STRIPE_WEBHOOK_SECRET not configured - webhook signature validation will fail"
            )

        self._handlers: dict[str, Callable[..., None]] = {
            "checkout.session.completed": self._handle_checkout_completed,
            "payment_intent.succeeded": self._handle_payment_succeeded,
            "customer.subscription.created": self._handle_subscription_updated,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_invoice_payment_succeeded,
            "invoice.paid": self._handle_invoice_payment_succeeded,
        }

    @classmethod
    def from_config(cls, client: Any | None = None) -> "StripeService":
        """Build the service from environment configuration."""
        return cls(
            provider=StripeProviderClient(
                Config.STRIPE_SECRET_KEY,
                max_network_retries=Config.STRIPE_MAX_NETWORK_RETRIES,
            ),
            payments=PaymentRecordStore(client),
            users=UserDirectory(client),
            outbox=PaymentSyncOutbox(client),
            webhook_secret=Config.STRIPE_WEBHOOK_SECRET,
        )

    @property
    def handled_event_types(self) -> list[str]:
        return sorted(self._handlers)

    # ==================== Webhooks ====================

    def handle_webhook(self, payload: bytes, signature: str | None) -> WebhookProcessingResult:
        """
        Verify and dispatch one Stripe webhook.

        The signature is verified before anything else; nothing is read or
        written for an unverified payload. Unrecognised event types are
        acknowledged without side effects.

        Raises:
            WebhookVerificationError: Signature or payload invalid
        """
        event = self.provider.construct_event(payload, signature, self.webhook_secret)

        event_type = get_value(event, "type", "unknown")
        event_id = get_value(event, "id", "unknown")
        event_at = epoch_to_datetime(get_value(event, "created"))
        event_object = get_value(get_value(event, "data"), "object")

        logger.info(
            f"Processing webhook: {event_type} (ID: {event_id})", extra={"event_type": event_type}
        )

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled event type: {event_type}")
            return WebhookProcessingResult(
                success=True,
                event_type=event_type,
                event_id=event_id,
                handled=False,
                message=f"Event {event_type} ignored",
            )

        handler(event_object, event_at=event_at, source=f"webhook:{event_type}")

        return WebhookProcessingResult(
            success=True,
            event_type=event_type,
            event_id=event_id,
            handled=True,
            message=f"Event {event_type} processed successfully",
        )

    def _record_write_failure(
        self,
        error: PaymentRecordWriteError,
        user_id: str,
        source: str,
        fields: dict[str, Any],
        *,
        event_at: datetime | None = None,
    ) -> None:
        logger.error(f"Error updating payment status for user {user_id} ({source}): {error}")
        capture_payment_error(
            error,
            operation=source,
            user_id=user_id,
            details={"fields": sorted(fields)},
        )
        if self.outbox is not None:
            self.outbox.record(user_id, source, fields, str(error), event_at=event_at)

    def _write_payment(
        self,
        user_id: str,
        fields: dict[str, Any],
        *,
        event_at: datetime | None,
        source: str,
    ) -> None:
        """Upsert from a webhook. A failed write is logged and queued, not raised."""
        try:
            outcome = self.payments.upsert(user_id, fields, event_at=event_at)
        except PaymentRecordWriteError as e:
            self._record_write_failure(e, user_id, source, fields, event_at=event_at)
            return

        logger.info(f"Payment record {outcome.value} for user {user_id} ({source})")

    def _resolve_user_from_customer(self, customer_id: str | None) -> str | None:
        """Stripe customer -> email -> Supabase user id. None on any miss."""
        if not customer_id:
            logger.warning("Event has no Stripe customer, skipping")
            return None

        customer = self.provider.retrieve_customer(customer_id)
        if get_value(customer, "deleted", False):
            logger.warning(f"Stripe customer {customer_id} is deleted, skipping")
            return None

        email = get_value(customer, "email")
        if not email:
            logger.warning(f"Stripe customer {customer_id} has no email, skipping")
            return None

        user_id = self.users.get_user_id_by_email(email)
        if not user_id:
            logger.error(f"User not found: {mask_email(email)} (customer {customer_id})")
            return None

        return user_id

    def _handle_checkout_completed(self, session, *, event_at=None, source="webhook"):
        """Handle completed checkout session"""
        session_id = get_value(session, "id")
        logger.info(f"Checkout session completed: {session_id}")

        customer_details = get_value(session, "customer_details")
        email = get_value(session, "customer_email") or get_value(customer_details, "email")
        if not email:
            logger.error(f"No customer email found in session {session_id}")
            return

        user_id = self.users.get_user_id_by_email(email)
        if not user_id:
            logger.error(f"User not found: {mask_email(email)}")
            return

        is_subscription = get_value(session, "mode") == "subscription"
        subscription_id = _object_id(get_value(session, "subscription"))

        current_period_end = None
        if is_subscription:
            if not subscription_id:
                logger.error(
                    f"Subscription checkout {session_id} has no subscription id; "
                    "waiting for customer.subscription.created"
                )
                return
            subscription = self.provider.retrieve_subscription(subscription_id)
            current_period_end = epoch_to_iso(get_subscription_period_end(subscription))

        fields = {
            "status": PaymentStatus.PAID.value,
            "stripe_customer_id": _object_id(get_value(session, "customer")),
            "stripe_subscription_id": subscription_id,
            "payment_type": (
                PaymentType.SUBSCRIPTION.value if is_subscription else PaymentType.LIFETIME.value
            ),
            "amount": _cents_to_amount(get_value(session, "amount_total")),
            "currency": get_value(session, "currency"),
            "current_period_end": current_period_end,
            "cancel_at_period_end": False,
        }

        self._write_payment(user_id, fields, event_at=event_at, source=source)

    def _handle_payment_succeeded(self, payment_intent, *, event_at=None, source="webhook"):
        """Handle a succeeded one-time payment (payment links)"""
        logger.info(f"Payment intent succeeded: {get_value(payment_intent, 'id')}")

        # Subscription renewals also produce payment intents; those are
        # handled through the invoice and subscription events
        if get_value(payment_intent, "invoice"):
            logger.info("Payment intent belongs to an invoice, handled by invoice events")
            return

        customer_id = _object_id(get_value(payment_intent, "customer"))
        if not customer_id:
            logger.info("Payment intent has no customer, nothing to record")
            return

        user_id = self._resolve_user_from_customer(customer_id)
        if not user_id:
            return

        fields = {
            "status": PaymentStatus.PAID.value,
            "stripe_customer_id": customer_id,
            "payment_type": PaymentType.LIFETIME.value,
            "amount": _cents_to_amount(get_value(payment_intent, "amount")),
            "currency": get_value(payment_intent, "currency"),
        }

        self._write_payment(user_id, fields, event_at=event_at, source=source)

    def _handle_subscription_updated(self, subscription, *, event_at=None, source="webhook"):
        """Handle subscription created/updated event"""
        subscription_id = get_value(subscription, "id")
        logger.info(f"Subscription updated: {subscription_id}")

        customer_id = _object_id(get_value(subscription, "customer"))
        user_id = self._resolve_user_from_customer(customer_id)
        if not user_id:
            return

        provider_status = get_value(subscription, "status")
        fields = {
            "status": (
                PaymentStatus.PAID.value if provider_status == "active" else PaymentStatus.PENDING.value
            ),
            "stripe_customer_id": customer_id,
            "stripe_subscription_id": subscription_id,
            "payment_type": PaymentType.SUBSCRIPTION.value,
            "current_period_end": epoch_to_iso(get_subscription_period_end(subscription)),
            "cancel_at_period_end": bool(get_value(subscription, "cancel_at_period_end", False)),
        }

        self._write_payment(user_id, fields, event_at=event_at, source=source)

    def _handle_subscription_deleted(self, subscription, *, event_at=None, source="webhook"):
        """Handle subscription deleted event: the row is kept, status becomes CANCELLED"""
        logger.info(f"Subscription deleted: {get_value(subscription, 'id')}")

        user_id = self._resolve_user_from_customer(_object_id(get_value(subscription, "customer")))
        if not user_id:
            return

        try:
            updated = self.payments.mark_cancelled(user_id, event_at=event_at)
        except PaymentRecordWriteError as e:
            self._record_write_failure(
                e,
                user_id,
                source,
                {"status": PaymentStatus.CANCELLED.value},
                event_at=event_at,
            )
            return

        logger.info(f"Subscription cancelled for user {user_id} ({updated} row(s) updated)")

    def _handle_invoice_payment_succeeded(self, invoice, *, event_at=None, source="webhook"):
        """Handle a paid invoice by re-reading its subscription"""
        logger.info(f"Invoice payment succeeded: {get_value(invoice, 'id')}")

        subscription_id = get_invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info("Invoice has no subscription, nothing to sync")
            return

        subscription = self.provider.retrieve_subscription(subscription_id)
        self._handle_subscription_updated(subscription, event_at=event_at, source=source)

    # ==================== Cancellation ====================

    def cancel_subscription(
        self, authenticated_user_id: str, requested_user_id: str
    ) -> CancelSubscriptionResponse:
        """
        Cancel the caller's subscription at the end of the billing period.

        Stripe is authoritative: once Stripe accepts the cancellation the call
        succeeds, even if mirroring it into user_payments fails. That case is
        reported through ``local_sync_pending`` and queued in the outbox.

        Raises:
            SubscriptionForbiddenError: Caller asked to cancel someone else's subscription
            SubscriptionNotFoundError: No payment record
            InvalidPaymentTypeError: Record is not a subscription
            MissingSubscriptionIdError: Subscription record without Stripe id
            PaymentSyncError: Stripe rejected the cancellation
        """
        if str(authenticated_user_id) != str(requested_user_id):
            logger.warning(
                "User %s attempted to cancel subscription of user %s",
                sanitize_for_logging(authenticated_user_id),
                sanitize_for_logging(requested_user_id),
            )
            raise SubscriptionForbiddenError()

        user_id = str(authenticated_user_id)
        record = self.payments.get(user_id)
        if record is None:
            raise SubscriptionNotFoundError()
        if not record.is_subscription:
            raise InvalidPaymentTypeError()
        if not record.stripe_subscription_id:
            raise MissingSubscriptionIdError()

        try:
            subscription = self.provider.cancel_at_period_end(record.stripe_subscription_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe error canceling subscription for user {user_id}: {e}")
            capture_payment_error(
                e,
                operation="cancel_subscription",
                user_id=user_id,
                details={"subscription_id": record.stripe_subscription_id},
            )
            raise PaymentSyncError(f"Failed to cancel subscription: {e}") from e

        current_period_end = get_subscription_period_end(subscription)
        logger.info(
            f"Stripe cancellation successful: subscription={get_value(subscription, 'id')}, "
            f"cancel_at_period_end={get_value(subscription, 'cancel_at_period_end')}, "
            f"current_period_end={current_period_end}"
        )

        update: dict[str, Any] = {"cancel_at_period_end": True}
        period_end_iso = epoch_to_iso(current_period_end)
        if period_end_iso:
            update["current_period_end"] = period_end_iso

        try:
            self.payments.update(user_id, update)
        except PaymentRecordWriteError as e:
            self._record_write_failure(e, user_id, "cancel_subscription", update)
            return CancelSubscriptionResponse(
                success=True,
                message=CANCEL_PENDING_MESSAGE,
                current_period_end=current_period_end,
                warning=CANCEL_PENDING_WARNING,
                local_sync_pending=True,
            )

        return CancelSubscriptionResponse(
            success=True,
            message=CANCEL_SUCCESS_MESSAGE,
            current_period_end=current_period_end,
        )

    # ==================== Single-user sync ====================

    def _find_customer(self, email: str):
        # Stripe matches customer emails case-sensitively; try as given first
        trimmed = email.strip()
        customer = self.provider.find_customer_by_email(trimmed)
        normalized = normalize_email(trimmed)
        if customer is None and normalized and normalized != trimmed:
            customer = self.provider.find_customer_by_email(normalized)
        return customer

    def sync_subscription(self, email: str | None) -> PaymentRecord:
        """
        Rebuild one user's payment record from Stripe.

        Uses the customer's latest subscription when there is one, otherwise
        the most recent succeeded one-time payment.

        Raises:
            ValueError: Email missing
            UserNotFoundError, CustomerNotFoundError, PaymentNotFoundError
            PaymentRecordWriteError: The upsert failed
        """
        normalized = normalize_email(email)
        if not normalized:
            raise ValueError("Email is required")

        logger.info(f"Syncing subscription for: {mask_email(normalized)}")
        observed_at = utc_now_seconds()

        user_id = self.users.get_user_id_by_email(normalized)
        if not user_id:
            raise UserNotFoundError()

        customer = self._find_customer(email)
        if customer is None:
            raise CustomerNotFoundError()

        customer_id = get_value(customer, "id")
        logger.info(f"Found Stripe customer: {customer_id}")

        fields: dict[str, Any] = {
            "status": PaymentStatus.PAID.value,
            "stripe_customer_id": customer_id,
        }

        subscriptions = self.provider.list_subscriptions(customer_id, status="all", limit=1)
        if subscriptions:
            subscription = subscriptions[0]
            provider_status = get_value(subscription, "status", "")
            logger.info(
                f"Found subscription: {get_value(subscription, 'id')}, status: {provider_status}"
            )

            items = get_list_data(get_value(subscription, "items"))
            unit_amount = get_value(get_value(items[0], "price"), "unit_amount") if items else None

            fields.update(
                {
                    "payment_type": PaymentType.SUBSCRIPTION.value,
                    "stripe_subscription_id": get_value(subscription, "id"),
                    "current_period_end": epoch_to_iso(get_subscription_period_end(subscription)),
                    "cancel_at_period_end": bool(
                        get_value(subscription, "cancel_at_period_end", False)
                    ),
                    "status": (
                        PaymentStatus.PAID.value
                        if provider_status == "active"
                        else str(provider_status).upper()
                    ),
                    "amount": _cents_to_amount(unit_amount),
                    "currency": get_value(subscription, "currency", "usd"),
                }
            )
        else:
            intents = self.provider.list_payment_intents(customer_id, limit=10)
            successful = next(
                (intent for intent in intents if get_value(intent, "status") == "succeeded"),
                None,
            )
            if successful is None:
                raise PaymentNotFoundError()

            logger.info(f"Found one-time payment: {get_value(successful, 'id')}")
            fields.update(
                {
                    "payment_type": PaymentType.LIFETIME.value,
                    "amount": _cents_to_amount(get_value(successful, "amount")),
                    "currency": get_value(successful, "currency"),
                }
            )

        self.payments.upsert(user_id, fields, event_at=observed_at)
        self._resolve_outbox(user_id)

        logger.info("Successfully synced subscription data")
        return self.payments.get(user_id) or PaymentRecord(user_id=user_id, **fields)

    def _resolve_outbox(self, user_id: str) -> None:
        if self.outbox is None:
            return
        try:
            self.outbox.resolve_for_user(user_id)
        except Exception as e:
            logger.warning(f"Could not resolve pending sync entries for user {user_id}: {e}")
