"""
Payment Schemas
Pydantic models and enums for the user_payments record and the payment routes
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


class PaymentStatus(str, Enum):
    """Entitlement state stored in user_payments.status.

    Subscription states that are not ``active`` are written verbatim
    (upper-cased) by the single-user sync, so the column is not restricted
    to these members.
    """

    NONE = "NONE"
    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class PaymentType(str, Enum):
    SUBSCRIPTION = "SUBSCRIPTION"
    LIFETIME = "LIFETIME"
    # Written by the batch sync for customers with charges but no subscription
    ONE_TIME = "ONE_TIME"


# Stripe subscription statuses that grant access during reconciliation
ENTITLED_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing"})


class PaymentRecord(BaseModel):
    """One row of user_payments (one per user)."""

    model_config = ConfigDict(extra="ignore")

    user_id: str
    status: str = PaymentStatus.NONE.value
    payment_type: str | None = None
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    current_period_end: str | None = None
    cancel_at_period_end: bool = False
    amount: float | None = None
    currency: str | None = None
    last_event_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_paid(self) -> bool:
        return self.status == PaymentStatus.PAID.value

    @property
    def is_subscription(self) -> bool:
        return self.payment_type == PaymentType.SUBSCRIPTION.value


class UpsertOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED_STALE = "skipped_stale"


class WebhookProcessingResult(BaseModel):
    """Result of dispatching one verified webhook event"""

    success: bool
    event_type: str
    event_id: str
    handled: bool = True
    message: str
    processed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class CancelSubscriptionRequest(BaseModel):
    """Body of POST /api/cancel-subscription"""

    model_config = ConfigDict(populate_by_name=True)

    # Optional so a missing id is rejected as a mismatch (403), not a 422
    user_id: str | None = Field(None, alias="userId")


class CancelSubscriptionResponse(BaseModel):
    success: bool
    message: str
    current_period_end: int | None = None
    warning: str | None = None
    local_sync_pending: bool = False


class SyncSubscriptionRequest(BaseModel):
    """Body of POST /api/sync-subscription"""

    email: EmailStr | None = None

    @field_validator("email", mode="before")
    @classmethod
    def blank_email_is_missing(cls, v):
        """Treat an empty or whitespace-only email as not provided"""
        if isinstance(v, str) and not v.strip():
            return None
        return v


class SyncSubscriptionResponse(BaseModel):
    success: bool = True
    message: str = "Subscription synced successfully"
    data: PaymentRecord


class AccessDecision(BaseModel):
    allowed: bool
    redirect_to: str | None = None


class PaymentStatusResponse(BaseModel):
    user_id: str
    has_paid: bool
    is_new_user: bool
    access: AccessDecision | None = None


class MarkNewUserResponse(BaseModel):
    user_id: str
    created: bool


class ReconciliationStats(BaseModel):
    """Counters reported by the batch reconciliation job"""

    total_customers: int = 0
    active_subscriptions: int = 0
    one_time_payments: int = 0
    skipped: int = 0
    users_created: int = 0
    users_existing: int = 0
    payments_created: int = 0
    payments_updated: int = 0
    pending_syncs_replayed: int = 0
    errors: int = 0
    error_details: list[dict[str, Any]] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    def format_summary(self) -> str:
        """Human-readable report printed by the sync script."""
        rule = "=" * 60
        lines = [
            rule,
            "SYNC SUMMARY",
            rule,
            "",
            "Stripe Customers:",
            f"  Total customers scanned:     {self.total_customers}",
            f"  Active subscriptions:        {self.active_subscriptions}",
            f"  One-time payments:           {self.one_time_payments}",
            f"  Skipped (no entitlement):    {self.skipped}",
            "",
            "Supabase Users:",
            f"  Users created:               {self.users_created}",
            f"  Users already existed:       {self.users_existing}",
            "",
            "Payment Records:",
            f"  Payment records created:     {self.payments_created}",
            f"  Payment records updated:     {self.payments_updated}",
            f"  Pending syncs re-applied:    {self.pending_syncs_replayed}",
            "",
            f"Errors:                        {self.errors}",
            rule,
        ]
        if self.errors == 0:
            lines.append("Sync completed successfully!")
        else:
            lines.append("Sync completed with errors. Check logs above.")
        return "\n".join(lines)
