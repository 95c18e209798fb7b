"""
Payment sync exceptions.

Each exception carries the HTTP status code that the payment routes return
for it, so route handlers can translate them without a lookup table.
"""


class PaymentSyncError(Exception):
    """Base class for errors raised by the payment sync services."""

    status_code = 500
    default_message = "Payment sync failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class WebhookVerificationError(PaymentSyncError):
    """Webhook signature or payload could not be verified."""

    status_code = 400
    default_message = "Webhook signature verification failed"


class SubscriptionForbiddenError(PaymentSyncError):
    status_code = 403
    default_message = "Forbidden: Cannot cancel another user's subscription"


class SubscriptionNotFoundError(PaymentSyncError):
    status_code = 404
    default_message = "Subscription not found"


class InvalidPaymentTypeError(PaymentSyncError):
    status_code = 400
    default_message = "User does not have an active subscription to cancel"


class MissingSubscriptionIdError(PaymentSyncError):
    status_code = 400
    default_message = "No Stripe subscription ID found"


class UserNotFoundError(PaymentSyncError):
    status_code = 404
    default_message = "User not found in database"


class CustomerNotFoundError(PaymentSyncError):
    status_code = 404
    default_message = "Customer not found in Stripe"


class PaymentNotFoundError(PaymentSyncError):
    status_code = 404
    default_message = "No payments found for this customer"


class PaymentRecordWriteError(PaymentSyncError):
    """Writing to user_payments failed."""

    status_code = 500
    default_message = "Failed to update database"
