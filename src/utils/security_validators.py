"""
Normalization and log-safety helpers for user-controlled values.

Emails are the join key between Stripe customers and Supabase users, so the
same normalization must be applied at every lookup and write.
"""

import logging

logger = logging.getLogger(__name__)


def normalize_email(email: str | None) -> str | None:
    """Trim and lowercase an email address. Empty input yields None.

    Examples:
        >>> normalize_email("  Ana.Mora@Example.COM ")
        'ana.mora@example.com'
        >>> normalize_email("   ") is None
        True
    """
    if email is None:
        return None
    if not isinstance(email, str):
        email = str(email)
    normalized = email.strip().lower()
    return normalized or None


def mask_email(email: str | None) -> str:
    """Mask the local part of an email for logs: ``ana.mora@x.com`` -> ``an***@x.com``."""
    if not email:
        return ""
    local_part, sep, domain = sanitize_for_logging(email).partition("@")
    if not sep:
        return f"{local_part[:2]}***"
    return f"{local_part[:2]}***@{domain}"


def sanitize_for_logging(value: str) -> str:
    """Sanitize user-controlled strings for safe logging.

    Prevents log injection attacks by removing newlines and other control characters
    that could be used to forge log entries.

    Args:
        value: String value to sanitize (can be None)

    Returns:
        Sanitized string with newlines replaced by spaces
    """
    if value is None:
        return ""
    if not isinstance(value, str):
        value = str(value)
    return value.replace("\n", " ").replace("\r", " ").replace("\x00", "")
