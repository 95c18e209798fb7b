import os

import pytest

# Keep configure_logging() on the plain formatter and Sentry off during tests
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("SENTRY_ENABLED", "false")

from src.db.payment_sync_outbox import PaymentSyncOutbox  # noqa: E402
from src.db.user_payments import PaymentRecordStore  # noqa: E402
from src.db.users import UserDirectory  # noqa: E402
from src.services.payments import StripeService  # noqa: E402
from tests.helpers.mocks import FakeStripeProvider, MockSupabaseClient  # noqa: E402

WEBHOOK_SECRET = "whsec_test_123"


@pytest.fixture
def fake_supabase():
    return MockSupabaseClient()


@pytest.fixture
def fake_stripe():
    return FakeStripeProvider()


@pytest.fixture
def payment_store(fake_supabase):
    return PaymentRecordStore(fake_supabase)


@pytest.fixture
def user_directory(fake_supabase):
    return UserDirectory(fake_supabase)


@pytest.fixture
def outbox(fake_supabase):
    return PaymentSyncOutbox(fake_supabase)


@pytest.fixture
def stripe_service(fake_stripe, payment_store, user_directory, outbox):
    return StripeService(
        provider=fake_stripe,
        payments=payment_store,
        users=user_directory,
        outbox=outbox,
        webhook_secret=WEBHOOK_SECRET,
    )
