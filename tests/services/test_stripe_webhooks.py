"""
Tests for Stripe webhook dispatch and the per-event handlers
"""

import copy

import pytest

from src.db.payment_sync_outbox import PAYMENT_SYNC_OUTBOX_TABLE
from src.utils.exceptions import WebhookVerificationError
from tests.helpers.mocks import VALID_SIGNATURE, make_event

PERIOD_END_ISO = "2023-11-14T22:13:20.000Z"


@pytest.fixture
def known_customer(fake_supabase, fake_stripe):
    """Supabase user-1 <-> Stripe cus_1, both with ana@example.com"""
    fake_supabase.add_user("ana@example.com", user_id="user-1")
    fake_stripe.add_customer("cus_1", "ana@example.com")
    return "user-1"


def _send(service, event_type, obj, **kwargs):
    return service.handle_webhook(make_event(event_type, obj, **kwargs), VALID_SIGNATURE)


def _without_updated_at(row):
    return {key: value for key, value in row.items() if key != "updated_at"}


class TestDispatch:
    def test_unrecognized_event_is_acknowledged(self, stripe_service, fake_supabase):
        result = _send(stripe_service, "customer.created", {"id": "cus_1"})

        assert result.success is True
        assert result.handled is False
        assert result.event_type == "customer.created"
        assert fake_supabase.store.get("user_payments", []) == []

    @pytest.mark.parametrize("signature", [None, "", "t=1,v1=forged"])
    def test_bad_signature_runs_no_handler(
        self, stripe_service, fake_supabase, fake_stripe, known_customer, signature
    ):
        fake_supabase.add_payment(known_customer, status="PAID")
        fake_stripe.add_subscription("sub_1", "cus_1", status="canceled")
        before = copy.deepcopy(fake_supabase.store)

        with pytest.raises(WebhookVerificationError):
            stripe_service.handle_webhook(
                make_event("customer.subscription.deleted", fake_stripe.subscriptions["sub_1"]),
                signature,
            )

        assert fake_supabase.store == before
        assert fake_stripe.calls == []

    def test_missing_webhook_secret_fails_closed(
        self, fake_stripe, payment_store, user_directory, outbox
    ):
        from src.services.payments import StripeService

        service = StripeService(fake_stripe, payment_store, user_directory, outbox, None)

        with pytest.raises(WebhookVerificationError):
            _send(service, "checkout.session.completed", {"id": "cs_1"})

    def test_each_handled_type_has_one_handler(self, stripe_service):
        assert stripe_service.handled_event_types == [
            "checkout.session.completed",
            "customer.subscription.created",
            "customer.subscription.deleted",
            "customer.subscription.updated",
            "invoice.paid",
            "invoice.payment_succeeded",
            "payment_intent.succeeded",
        ]


class TestCheckoutCompleted:
    def test_subscription_checkout(self, stripe_service, fake_supabase, fake_stripe, known_customer):
        fake_stripe.add_subscription("sub_1", "cus_1")

        result = _send(
            stripe_service,
            "checkout.session.completed",
            {
                "id": "cs_1",
                "mode": "subscription",
                "customer": "cus_1",
                "customer_email": "ana@example.com",
                "subscription": "sub_1",
                "amount_total": 499,
                "currency": "usd",
            },
        )

        row = fake_supabase.payment_row(known_customer)
        assert result.handled is True
        assert row["status"] == "PAID"
        assert row["payment_type"] == "SUBSCRIPTION"
        assert row["stripe_subscription_id"] == "sub_1"
        assert row["stripe_customer_id"] == "cus_1"
        assert row["current_period_end"] == PERIOD_END_ISO
        assert row["cancel_at_period_end"] is False
        assert row["amount"] == 4.99
        assert row["currency"] == "usd"

    def test_one_time_checkout_uses_customer_details_email(
        self, stripe_service, fake_supabase, fake_stripe, known_customer
    ):
        _send(
            stripe_service,
            "checkout.session.completed",
            {
                "id": "cs_2",
                "mode": "payment",
                "customer": "cus_1",
                "customer_details": {"email": "Ana@Example.com"},
                "amount_total": 1999,
                "currency": "usd",
            },
        )

        row = fake_supabase.payment_row(known_customer)
        assert row["payment_type"] == "LIFETIME"
        assert row["current_period_end"] is None
        assert row["stripe_subscription_id"] is None
        assert row["amount"] == 19.99
        assert not any(name == "retrieve_subscription" for name, _ in fake_stripe.calls)

    def test_unknown_user_writes_nothing(self, stripe_service, fake_supabase):
        result = _send(
            stripe_service,
            "checkout.session.completed",
            {"id": "cs_3", "mode": "payment", "customer_email": "ghost@example.com"},
        )

        assert result.success is True
        assert fake_supabase.store.get("user_payments", []) == []

    def test_session_without_email_writes_nothing(self, stripe_service, fake_supabase):
        _send(stripe_service, "checkout.session.completed", {"id": "cs_4", "mode": "payment"})

        assert fake_supabase.store.get("user_payments", []) == []

    def test_subscription_mode_without_subscription_id_writes_nothing(
        self, stripe_service, fake_supabase, known_customer
    ):
        _send(
            stripe_service,
            "checkout.session.completed",
            {"id": "cs_5", "mode": "subscription", "customer_email": "ana@example.com"},
        )

        assert fake_supabase.payment_row(known_customer) is None


class TestPaymentIntentSucceeded:
    def test_records_lifetime_payment(self, stripe_service, fake_supabase, known_customer):
        _send(
            stripe_service,
            "payment_intent.succeeded",
            {"id": "pi_1", "customer": "cus_1", "amount": 2500, "currency": "crc"},
        )

        row = fake_supabase.payment_row(known_customer)
        assert row["status"] == "PAID"
        assert row["payment_type"] == "LIFETIME"
        assert row["amount"] == 25.0
        assert row["currency"] == "crc"

    def test_intent_without_customer_is_ignored(self, stripe_service, fake_supabase, fake_stripe):
        _send(stripe_service, "payment_intent.succeeded", {"id": "pi_2", "amount": 100})

        assert fake_supabase.store.get("user_payments", []) == []
        assert fake_stripe.calls == []

    def test_invoice_intent_is_left_to_invoice_events(
        self, stripe_service, fake_supabase, known_customer
    ):
        _send(
            stripe_service,
            "payment_intent.succeeded",
            {"id": "pi_3", "customer": "cus_1", "amount": 499, "invoice": "in_1"},
        )

        assert fake_supabase.payment_row(known_customer) is None

    def test_customer_without_email_is_ignored(self, stripe_service, fake_supabase, fake_stripe):
        fake_stripe.add_customer("cus_2", None)

        _send(stripe_service, "payment_intent.succeeded", {"id": "pi_4", "customer": "cus_2"})

        assert fake_supabase.store.get("user_payments", []) == []


class TestSubscriptionEvents:
    @pytest.mark.parametrize(
        ("provider_status", "expected"),
        [("active", "PAID"), ("trialing", "PENDING"), ("past_due", "PENDING")],
    )
    def test_status_mapping(
        self, stripe_service, fake_supabase, fake_stripe, known_customer, provider_status, expected
    ):
        subscription = fake_stripe.add_subscription("sub_1", "cus_1", status=provider_status)

        _send(stripe_service, "customer.subscription.updated", subscription)

        row = fake_supabase.payment_row(known_customer)
        assert row["status"] == expected
        assert row["payment_type"] == "SUBSCRIPTION"
        assert row["stripe_subscription_id"] == "sub_1"

    def test_created_event_uses_same_handler(
        self, stripe_service, fake_supabase, fake_stripe, known_customer
    ):
        subscription = fake_stripe.add_subscription("sub_1", "cus_1", cancel_at_period_end=True)

        _send(stripe_service, "customer.subscription.created", subscription)

        row = fake_supabase.payment_row(known_customer)
        assert row["status"] == "PAID"
        assert row["cancel_at_period_end"] is True

    def test_replaying_update_is_idempotent(
        self, stripe_service, fake_supabase, fake_stripe, known_customer
    ):
        subscription = fake_stripe.add_subscription("sub_1", "cus_1")

        _send(stripe_service, "customer.subscription.updated", subscription)
        once = _without_updated_at(fake_supabase.payment_row(known_customer))
        _send(stripe_service, "customer.subscription.updated", subscription)
        twice = _without_updated_at(fake_supabase.payment_row(known_customer))

        assert once == twice
        assert len(fake_supabase.store["user_payments"]) == 1

    def test_deleted_only_changes_status(
        self, stripe_service, fake_supabase, fake_stripe, known_customer
    ):
        fake_supabase.add_payment(
            known_customer,
            status="PAID",
            payment_type="SUBSCRIPTION",
            stripe_customer_id="cus_1",
            stripe_subscription_id="sub_1",
            current_period_end=PERIOD_END_ISO,
            cancel_at_period_end=True,
            amount=4.99,
            currency="usd",
        )
        before = dict(fake_supabase.payment_row(known_customer))
        subscription = fake_stripe.add_subscription("sub_1", "cus_1", status="canceled")

        _send(stripe_service, "customer.subscription.deleted", subscription)

        after = fake_supabase.payment_row(known_customer)
        assert after["status"] == "CANCELLED"
        for field in (
            "payment_type",
            "stripe_customer_id",
            "stripe_subscription_id",
            "current_period_end",
            "cancel_at_period_end",
            "amount",
            "currency",
        ):
            assert after[field] == before[field]

    def test_older_event_does_not_overwrite_newer_state(
        self, stripe_service, fake_supabase, fake_stripe, known_customer
    ):
        fake_supabase.add_payment(
            known_customer,
            status="PAID",
            payment_type="SUBSCRIPTION",
            stripe_subscription_id="sub_1",
        )
        subscription = fake_stripe.add_subscription("sub_1", "cus_1")

        _send(stripe_service, "customer.subscription.deleted", subscription, created=1700000100)
        _send(stripe_service, "customer.subscription.updated", subscription, created=1700000000)

        assert fake_supabase.payment_row(known_customer)["status"] == "CANCELLED"

    def test_local_write_failure_is_queued_not_raised(
        self, stripe_service, fake_supabase, fake_stripe, known_customer
    ):
        subscription = fake_stripe.add_subscription("sub_1", "cus_1")
        fake_supabase.fail("user_payments", "upsert")

        result = _send(stripe_service, "customer.subscription.updated", subscription)

        pending = fake_supabase.store[PAYMENT_SYNC_OUTBOX_TABLE]
        assert result.success is True
        assert len(pending) == 1
        assert pending[0]["user_id"] == known_customer
        assert pending[0]["source"] == "webhook:customer.subscription.updated"
        assert pending[0]["payload"]["status"] == "PAID"

    def test_lookup_failure_propagates(self, stripe_service, fake_supabase, fake_stripe):
        fake_supabase.add_user("ana@example.com", user_id="user-1")
        fake_stripe.add_customer("cus_1", "ana@example.com")
        fake_supabase.fail("rpc", "get_user_id_by_email")
        subscription = fake_stripe.add_subscription("sub_1", "cus_1")

        with pytest.raises(Exception, match="get_user_id_by_email failed"):
            _send(stripe_service, "customer.subscription.updated", subscription)


class TestInvoicePaymentSucceeded:
    def test_refetches_subscription_and_records_it(
        self, stripe_service, fake_supabase, fake_stripe, known_customer
    ):
        fake_stripe.add_subscription(
            "sub_123", "cus_1", status="active", current_period_end=1700000000
        )

        result = _send(
            stripe_service,
            "invoice.payment_succeeded",
            {"id": "in_1", "customer": "cus_1", "subscription": "sub_123"},
        )

        row = fake_supabase.payment_row(known_customer)
        assert result.handled is True
        assert ("retrieve_subscription", "sub_123") in fake_stripe.calls
        assert row["status"] == "PAID"
        assert row["payment_type"] == "SUBSCRIPTION"
        assert row["current_period_end"] == "2023-11-14T22:13:20.000Z"
        assert row["cancel_at_period_end"] is False

    def test_reads_subscription_from_invoice_parent(
        self, stripe_service, fake_supabase, fake_stripe, known_customer
    ):
        fake_stripe.add_subscription("sub_123", "cus_1")

        _send(
            stripe_service,
            "invoice.paid",
            {
                "id": "in_2",
                "customer": "cus_1",
                "parent": {"subscription_details": {"subscription": "sub_123"}},
            },
        )

        assert fake_supabase.payment_row(known_customer)["stripe_subscription_id"] == "sub_123"

    def test_invoice_without_subscription_is_ignored(
        self, stripe_service, fake_supabase, fake_stripe
    ):
        _send(stripe_service, "invoice.payment_succeeded", {"id": "in_3", "customer": "cus_1"})

        assert fake_supabase.store.get("user_payments", []) == []
        assert fake_stripe.calls == []
