#!/usr/bin/env python3
"""
Stripe Provider Client
Thin wrapper over the stripe SDK used by the webhook handlers and the reconciliation job
"""

import logging
from collections.abc import Iterator
from typing import Any

import stripe

from src.utils.exceptions import WebhookVerificationError

logger = logging.getLogger(__name__)

# Stripe caps list endpoints at 100 objects per page
MAX_PAGE_SIZE = 100


def get_value(obj: Any, attr: str, default: Any = None) -> Any:
    """
    Safely extract a field from a Stripe object (dict-like or attribute-based).
    """
    if obj is None:
        return default

    if isinstance(obj, dict):
        value = obj.get(attr, default)
        return default if value is None else value

    try:
        value = obj[attr]
    except (KeyError, TypeError, IndexError, AttributeError):
        value = getattr(obj, attr, None)

    return default if value is None else value


def get_list_data(obj: Any) -> list[Any]:
    """Return the ``data`` array of a Stripe list object (empty when absent)."""
    data = get_value(obj, "data")
    if data is None:
        return []
    return list(data)


def get_subscription_period_end(subscription: Any) -> int | None:
    """
    Return the subscription's current_period_end (epoch seconds).

    Newer Stripe API versions report the period on the subscription items
    rather than on the subscription itself, so fall back to the first item.
    """
    period_end = get_value(subscription, "current_period_end")
    if period_end is not None:
        return period_end

    items = get_list_data(get_value(subscription, "items"))
    if items:
        return get_value(items[0], "current_period_end")
    return None


def get_invoice_subscription_id(invoice: Any) -> str | None:
    """Return the subscription id an invoice belongs to, across API versions."""
    subscription = get_value(invoice, "subscription")
    if subscription is None:
        details = get_value(get_value(invoice, "parent"), "subscription_details")
        subscription = get_value(details, "subscription")

    if subscription is None:
        return None
    if isinstance(subscription, str):
        return subscription
    return get_value(subscription, "id")


class StripeProviderClient:
    """Stripe calls needed by the payment sync, with an explicit API key."""

    def __init__(self, api_key: str, *, max_network_retries: int = 2):
        if not api_key:
            raise ValueError("STRIPE_SECRET_KEY not found in environment variables")

        self.api_key = api_key
        # Sent with every call; the module-level stripe settings stay untouched
        self.request_options: dict[str, Any] = {
            "api_key": api_key,
            "max_network_retries": max_network_retries,
        }

    # ==================== Webhooks ====================

    @staticmethod
    def construct_event(payload: bytes, signature: str | None, secret: str | None):
        """
        Verify a webhook signature and parse the event.

        Raises:
            WebhookVerificationError: Missing secret/signature, bad signature or bad payload
        """
        if not secret:
            logger.error("Webhook secret not configured - rejecting webhook")
            raise WebhookVerificationError("Webhook secret not configured")
        if not signature:
            raise WebhookVerificationError("Missing stripe-signature header")

        try:
            return stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(f"Webhook Error: {e}") from e
        except ValueError as e:
            raise WebhookVerificationError(f"Webhook Error: invalid payload ({e})") from e

    # ==================== Customers ====================

    def retrieve_customer(self, customer_id: str):
        return stripe.Customer.retrieve(customer_id, **self.request_options)

    def find_customer_by_email(self, email: str):
        """Return the first Stripe customer with this email, or None."""
        customers = stripe.Customer.list(email=email, limit=1, **self.request_options)
        data = get_list_data(customers)
        return data[0] if data else None

    def iter_customers(self, page_size: int = MAX_PAGE_SIZE) -> Iterator[Any]:
        """
        Yield every customer, following ``starting_after`` cursors page by page.

        Subscriptions are expanded on each customer.
        """
        page_size = max(1, min(MAX_PAGE_SIZE, page_size))
        starting_after = None
        page_number = 0

        while True:
            params: dict[str, Any] = {"limit": page_size, "expand": ["data.subscriptions"]}
            if starting_after:
                params["starting_after"] = starting_after

            page = stripe.Customer.list(**self.request_options, **params)
            data = get_list_data(page)
            page_number += 1
            logger.info(f"Fetched customer page {page_number} ({len(data)} customers)")

            yield from data

            if not data or not get_value(page, "has_more", False):
                return
            starting_after = get_value(data[-1], "id")

    # ==================== Subscriptions ====================

    def retrieve_subscription(self, subscription_id: str):
        return stripe.Subscription.retrieve(subscription_id, **self.request_options)

    def list_subscriptions(self, customer_id: str, *, status: str = "all", limit: int = 10):
        subscriptions = stripe.Subscription.list(
            customer=customer_id, status=status, limit=limit, **self.request_options
        )
        return get_list_data(subscriptions)

    def cancel_at_period_end(self, subscription_id: str):
        """Schedule cancellation at the end of the current billing period."""
        return stripe.Subscription.modify(
            subscription_id, cancel_at_period_end=True, **self.request_options
        )

    # ==================== Payments ====================

    def list_charges(self, customer_id: str, *, limit: int = 10):
        charges = stripe.Charge.list(customer=customer_id, limit=limit, **self.request_options)
        return get_list_data(charges)

    def list_payment_intents(self, customer_id: str, *, limit: int = 10):
        intents = stripe.PaymentIntent.list(
            customer=customer_id, limit=limit, **self.request_options
        )
        return get_list_data(intents)
