import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _get_env_var(name: str, default: str | None = None, *, strip: bool = True) -> str | None:
    """
    Fetch an environment variable with optional whitespace trimming.

    Args:
        name: Environment variable to look up.
        default: Value to return when the env var is unset or empty.
        strip: Whether to strip leading/trailing whitespace (default: True).

    Returns:
        The normalized string value or the provided default when empty.
    """
    value = os.environ.get(name)
    if value is None:
        return default

    if strip:
        value = value.strip()

    return value or default


def _get_bool_env(name: str, default: bool) -> bool:
    value = _get_env_var(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def _get_int_env(name: str, default: int, *, minimum: int, maximum: int) -> int:
    """Read an integer env var and clamp it to [minimum, maximum]."""
    value = _get_env_var(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return max(minimum, min(maximum, parsed))


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Config:
    """Configuration class for the application"""

    # Environment Detection
    APP_ENV = os.environ.get("APP_ENV", "development")  # development, staging, production
    IS_PRODUCTION = APP_ENV == "production"
    IS_STAGING = APP_ENV == "staging"
    IS_DEVELOPMENT = APP_ENV == "development"
    IS_TESTING = APP_ENV in {"testing", "test"} or _get_bool_env("TESTING", False)

    SERVICE_NAME = _get_env_var("SERVICE_NAME", "precios-cr-backend")

    # Supabase Configuration (service-role key: the sync bypasses RLS)
    SUPABASE_URL = _get_env_var("SUPABASE_URL")
    SUPABASE_KEY = _get_env_var("SUPABASE_KEY") or _get_env_var("SUPABASE_SERVICE_ROLE_KEY")

    # Stripe Configuration
    STRIPE_SECRET_KEY = _get_env_var("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = _get_env_var("STRIPE_WEBHOOK_SECRET")
    STRIPE_MAX_NETWORK_RETRIES = _get_int_env(
        "STRIPE_MAX_NETWORK_RETRIES", 2, minimum=0, maximum=5
    )

    # Reconciliation job
    # Stripe caps list pages at 100 objects
    STRIPE_SYNC_PAGE_SIZE = _get_int_env("STRIPE_SYNC_PAGE_SIZE", 100, minimum=1, maximum=100)
    STRIPE_CHARGE_LOOKBACK = _get_int_env("STRIPE_CHARGE_LOOKBACK", 10, minimum=1, maximum=100)

    # CORS
    CORS_ALLOWED_ORIGINS = _split_csv(_get_env_var("CORS_ALLOWED_ORIGINS")) or ["*"]

    # Sentry Configuration
    SENTRY_DSN = _get_env_var("SENTRY_DSN")
    SENTRY_ENABLED = _get_bool_env("SENTRY_ENABLED", True)
    SENTRY_ENVIRONMENT = os.environ.get("SENTRY_ENVIRONMENT", APP_ENV)
    SENTRY_TRACES_SAMPLE_RATE = float(os.environ.get("SENTRY_TRACES_SAMPLE_RATE", "0.1"))
    SENTRY_RELEASE = os.environ.get("SENTRY_RELEASE", "1.0.0")

    # Grafana Loki Configuration
    LOKI_ENABLED = _get_bool_env("LOKI_ENABLED", False)
    LOKI_PUSH_URL = os.environ.get("LOKI_PUSH_URL", "http://loki:3100/loki/api/v1/push")

    @classmethod
    def validate(cls):
        """Validate that all required environment variables are set"""
        missing_vars = []

        if not cls.SUPABASE_URL:
            missing_vars.append("SUPABASE_URL")
        if not cls.SUPABASE_KEY:
            missing_vars.append("SUPABASE_KEY")

        if missing_vars:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing_vars)}\n"
                "Please create a .env file with the following variables:\n"
                "SUPABASE_URL=your_supabase_project_url\n"
                "SUPABASE_KEY=your_supabase_service_role_key\n"
                "STRIPE_SECRET_KEY=your_stripe_secret_key\n"
                "STRIPE_WEBHOOK_SECRET=your_stripe_webhook_signing_secret"
            )

        return True

    @classmethod
    def validate_payment_env(cls) -> tuple[bool, list[str]]:
        """
        Validate that the Stripe variables needed by the payment routes are set.

        Returns:
            tuple: (is_valid, missing_vars)
        """
        required = {
            "STRIPE_SECRET_KEY": cls.STRIPE_SECRET_KEY,
            "STRIPE_WEBHOOK_SECRET": cls.STRIPE_WEBHOOK_SECRET,
        }

        missing = [name for name, value in required.items() if not value]
        return len(missing) == 0, missing
