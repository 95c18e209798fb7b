"""
Batch reconciliation of Stripe customers into user_payments.

Pulls every Stripe customer, decides whether it is entitled (an active or
trialing subscription, or a paid charge), makes sure a Supabase user exists
and writes a PAID snapshot. Writes queued in the outbox by failed webhook or
cancellation updates are re-applied first. Customers are processed one at a
time and a failure on one customer never stops the run.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from src.config import Config
from src.db.payment_sync_outbox import PaymentSyncOutbox
from src.db.user_payments import PaymentRecordStore
from src.db.users import UserDirectory
from src.schemas.payments import (
    ENTITLED_SUBSCRIPTION_STATUSES,
    PaymentStatus,
    PaymentType,
    ReconciliationStats,
    UpsertOutcome,
)
from src.services.stripe_client import (
    MAX_PAGE_SIZE,
    StripeProviderClient,
    get_list_data,
    get_subscription_period_end,
    get_value,
)
from src.utils.security_validators import mask_email
from src.utils.sentry_context import capture_payment_error
from src.utils.timestamps import epoch_to_iso, parse_iso, utc_now_seconds

logger = logging.getLogger(__name__)


class ReconciliationJob:
    def __init__(
        self,
        provider: StripeProviderClient,
        payments: PaymentRecordStore,
        users: UserDirectory,
        outbox: PaymentSyncOutbox | None = None,
        *,
        page_size: int = MAX_PAGE_SIZE,
        charge_lookback: int = 10,
    ):
        self.provider = provider
        self.payments = payments
        self.users = users
        self.outbox = outbox
        self.page_size = page_size
        self.charge_lookback = charge_lookback

    @classmethod
    def from_config(cls, client: Any | None = None, *, page_size: int | None = None):
        return cls(
            provider=StripeProviderClient(
                Config.STRIPE_SECRET_KEY,
                max_network_retries=Config.STRIPE_MAX_NETWORK_RETRIES,
            ),
            payments=PaymentRecordStore(client),
            users=UserDirectory(client),
            outbox=PaymentSyncOutbox(client),
            page_size=page_size or Config.STRIPE_SYNC_PAGE_SIZE,
            charge_lookback=Config.STRIPE_CHARGE_LOOKBACK,
        )

    def run(self) -> ReconciliationStats:
        """Process every Stripe customer and return the run's counters."""
        stats = ReconciliationStats()
        logger.info("Starting Stripe to Supabase sync (page size %d)", self.page_size)

        # Queued writes go first so the customer snapshots below land on top of them
        self.replay_pending(stats)

        for customer in self.provider.iter_customers(self.page_size):
            stats.total_customers += 1
            customer_id = get_value(customer, "id")
            try:
                self.process_customer(customer, stats)
            except Exception as e:
                stats.errors += 1
                stats.error_details.append({"customer_id": customer_id, "error": str(e)})
                logger.error(f"Error processing customer {customer_id}: {e}", exc_info=True)
                capture_payment_error(
                    e, operation="reconcile_customer", details={"customer_id": customer_id}
                )

        stats.finished_at = datetime.now(UTC)
        logger.info(
            "Sync finished: %d customers, %d errors", stats.total_customers, stats.errors
        )
        return stats

    def replay_pending(self, stats: ReconciliationStats) -> None:
        """
        Re-apply local writes that failed earlier and were queued in the outbox.

        Each entry goes back through PaymentRecordStore with the event time it
        was queued with, so anything newer already stored is left alone. An
        entry that fails again stays pending for the next run.
        """
        if self.outbox is None:
            return

        try:
            entries = self.outbox.list_pending()
        except Exception as e:
            stats.errors += 1
            stats.error_details.append({"outbox": "list_pending", "error": str(e)})
            logger.error(f"Could not read pending payment syncs: {e}", exc_info=True)
            capture_payment_error(e, operation="replay_pending_syncs")
            return

        if entries:
            logger.info("Re-applying %d pending payment sync entries", len(entries))

        for entry in entries:
            entry_id = entry.get("id")
            user_id = entry.get("user_id")
            try:
                if self._apply_pending_entry(entry):
                    stats.pending_syncs_replayed += 1
                self.outbox.resolve(entry_id)
            except Exception as e:
                stats.errors += 1
                stats.error_details.append(
                    {"outbox_id": entry_id, "user_id": user_id, "error": str(e)}
                )
                logger.error(f"Error re-applying pending sync {entry_id}: {e}", exc_info=True)
                capture_payment_error(
                    e,
                    operation="replay_pending_sync",
                    user_id=user_id,
                    details={"outbox_id": entry_id, "source": entry.get("source")},
                )

    def _apply_pending_entry(self, entry: dict[str, Any]) -> bool:
        """Write one queued payload. Returns False when there was nothing to write."""
        user_id = entry.get("user_id")
        payload = entry.get("payload") or {}
        if not user_id or not payload:
            logger.warning(f"Pending sync {entry.get('id')} has nothing to apply")
            return False

        # Partial payloads (cancel flags, status only) only make sense on an existing row
        if "payment_type" not in payload and self.payments.get(user_id) is None:
            logger.warning(f"Pending sync {entry.get('id')}: user {user_id} has no payment record")
            return False

        outcome = self.payments.upsert(
            user_id, payload, event_at=parse_iso(entry.get("event_at"))
        )
        logger.info(
            f"Pending sync {entry.get('id')} ({entry.get('source')}) for user {user_id}: "
            f"{outcome.value}"
        )
        return outcome is not UpsertOutcome.SKIPPED_STALE

    def _find_active_subscription(self, customer):
        subscriptions = get_list_data(get_value(customer, "subscriptions"))
        return next(
            (
                sub
                for sub in subscriptions
                if get_value(sub, "status") in ENTITLED_SUBSCRIPTION_STATUSES
            ),
            None,
        )

    def _has_successful_payment(self, customer_id: str) -> bool:
        try:
            charges = self.provider.list_charges(customer_id, limit=self.charge_lookback)
        except Exception as e:
            logger.warning(f"Could not fetch charges for customer {customer_id}: {e}")
            return False
        return any(get_value(charge, "paid", False) for charge in charges)

    def process_customer(self, customer, stats: ReconciliationStats) -> None:
        """
        Reconcile one customer. Raises on any unexpected failure; the caller
        counts it and moves on.
        """
        customer_id = get_value(customer, "id")
        email = get_value(customer, "email")
        if not email:
            logger.info(f"Customer {customer_id} has no email, skipping")
            stats.skipped += 1
            return

        observed_at = utc_now_seconds()
        logger.info(f"Processing {mask_email(email)} (customer {customer_id})")

        active_subscription = self._find_active_subscription(customer)
        if active_subscription is None and not self._has_successful_payment(customer_id):
            logger.info(f"Customer {customer_id} has no active subscription or payment, skipping")
            stats.skipped += 1
            return

        if active_subscription is not None:
            subscription_id = get_value(active_subscription, "id")
            fields = {
                "status": PaymentStatus.PAID.value,
                "payment_type": PaymentType.SUBSCRIPTION.value,
                "stripe_customer_id": customer_id,
                "stripe_subscription_id": subscription_id,
                "current_period_end": epoch_to_iso(
                    get_subscription_period_end(active_subscription)
                ),
                "cancel_at_period_end": bool(
                    get_value(active_subscription, "cancel_at_period_end", False)
                ),
            }
            stats.active_subscriptions += 1
            logger.info(f"Active subscription {subscription_id} for customer {customer_id}")
        else:
            fields = {
                "status": PaymentStatus.PAID.value,
                "payment_type": PaymentType.ONE_TIME.value,
                "stripe_customer_id": customer_id,
                "stripe_subscription_id": None,
                "current_period_end": None,
                "cancel_at_period_end": False,
            }
            stats.one_time_payments += 1

        user_id, created = self.users.lookup_or_create(
            email,
            full_name=get_value(customer, "name"),
            stripe_customer_id=customer_id,
        )
        if created:
            stats.users_created += 1
        else:
            stats.users_existing += 1

        outcome = self.payments.upsert(user_id, fields, event_at=observed_at)
        if outcome is UpsertOutcome.CREATED:
            stats.payments_created += 1
        elif outcome is UpsertOutcome.UPDATED:
            stats.payments_updated += 1
        else:
            logger.info(f"Stored record for user {user_id} is newer than this snapshot")

        self._resolve_outbox(user_id)

    def _resolve_outbox(self, user_id: str) -> None:
        if self.outbox is None:
            return
        try:
            self.outbox.resolve_for_user(user_id)
        except Exception as e:
            logger.warning(f"Could not resolve pending sync entries for user {user_id}: {e}")
