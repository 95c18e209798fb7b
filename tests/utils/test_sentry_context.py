"""
Tests for Sentry error capture helpers
"""

from unittest.mock import MagicMock, patch

from src.utils.sentry_context import capture_error, capture_payment_error


@patch("src.utils.sentry_context.sentry_sdk.new_scope")
def test_capture_payment_error_sets_context_and_tags(mock_new_scope):
    scope = MagicMock()
    scope.capture_exception.return_value = "event-1"
    mock_new_scope.return_value.__enter__.return_value = scope
    error = RuntimeError("card declined")

    event_id = capture_payment_error(
        error,
        operation="cancel_subscription",
        user_id="user-1",
        details={"subscription_id": "sub_1"},
    )

    assert event_id == "event-1"
    scope.set_context.assert_called_once_with(
        "payment",
        {
            "operation": "cancel_subscription",
            "provider": "stripe",
            "user_id": "user-1",
            "subscription_id": "sub_1",
        },
    )
    scope.set_tag.assert_any_call("operation", "cancel_subscription")
    scope.set_tag.assert_any_call("provider", "stripe")
    scope.capture_exception.assert_called_once_with(error)


@patch("src.utils.sentry_context.sentry_sdk.new_scope", side_effect=RuntimeError("no client"))
def test_capture_failures_are_swallowed(mock_new_scope):
    assert capture_error(ValueError("x")) is None


def test_without_sentry_client_returns_none():
    assert capture_payment_error(ValueError("x"), operation="reconcile") is None
