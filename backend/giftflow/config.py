# backend/giftflow/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.environ.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///giftflow.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Payment provider (checkout sessions, payment intents, webhooks)
    PAYMENTS_PROVIDER = os.environ.get("PAYMENTS_PROVIDER", "stripe")
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")

    # Marketplace order API
    MARKETPLACE_PROVIDER = os.environ.get("MARKETPLACE_PROVIDER", "zinc")
    MARKETPLACE_API_URL = os.environ.get("MARKETPLACE_API_URL", "https://api.zinc.io/v1")
    MARKETPLACE_TIMEOUT_SECONDS = _env_int("MARKETPLACE_TIMEOUT_SECONDS", 30)
    MARKETPLACE_RETAILER = os.environ.get("MARKETPLACE_RETAILER", "amazon")
    MARKETPLACE_MAX_SHIPPING_DAYS = _env_int("MARKETPLACE_MAX_SHIPPING_DAYS", 5)
    WEBHOOK_BASE_URL = os.environ.get("WEBHOOK_BASE_URL", "")
    MARKETPLACE_WEBHOOK_SECRET = os.environ.get("MARKETPLACE_WEBHOOK_SECRET", "")
    DEGRADED_CARDHOLDER_NAME = os.environ.get("DEGRADED_CARDHOLDER_NAME", "Gift Orders")

    # Order confirmation / receipt emails
    NOTIFICATIONS_PROVIDER = os.environ.get("NOTIFICATIONS_PROVIDER", "disabled")
    NOTIFICATIONS_URL = os.environ.get("NOTIFICATIONS_URL", "")
    NOTIFICATIONS_TIMEOUT_SECONDS = _env_int("NOTIFICATIONS_TIMEOUT_SECONDS", 10)

    # Delivery scheduling: orders due further out than this are held
    SCHEDULING_THRESHOLD_DAYS = _env_int("SCHEDULING_THRESHOLD_DAYS", 4)

    # Guard layer limits (amounts are decimal strings)
    GUARD_MAX_ORDERS_PER_HOUR = _env_int("GUARD_MAX_ORDERS_PER_HOUR", 5)
    GUARD_MAX_ORDERS_PER_DAY = _env_int("GUARD_MAX_ORDERS_PER_DAY", 20)
    GUARD_DAILY_COST_LIMIT = os.environ.get("GUARD_DAILY_COST_LIMIT", "500.00")
    GUARD_MONTHLY_COST_LIMIT = os.environ.get("GUARD_MONTHLY_COST_LIMIT", "2000.00")
    GUARD_COST_WARNING_RATIO = os.environ.get("GUARD_COST_WARNING_RATIO", "0.8")
    GUARD_DUPLICATE_WINDOW_HOURS = _env_int("GUARD_DUPLICATE_WINDOW_HOURS", 24)
    GUARD_SUSPICIOUS_DUPLICATE_COUNT = _env_int("GUARD_SUSPICIOUS_DUPLICATE_COUNT", 3)
    GUARD_MAX_RETRIES = _env_int("GUARD_MAX_RETRIES", 3)
    GUARD_MAX_CONSECUTIVE_FAILURES = _env_int("GUARD_MAX_CONSECUTIVE_FAILURES", 5)
    GUARD_BEHAVIOR_MAX_HOURLY_ORDERS = _env_int("GUARD_BEHAVIOR_MAX_HOURLY_ORDERS", 5)
    GUARD_BEHAVIOR_MAX_HOURLY_AMOUNT = os.environ.get("GUARD_BEHAVIOR_MAX_HOURLY_AMOUNT", "1000.00")
    GUARD_BEHAVIOR_RAPID_MINUTES = _env_int("GUARD_BEHAVIOR_RAPID_MINUTES", 5)

    # Recovery / reconciliation sweeps
    RECOVERY_LOOKBACK_DAYS = _env_int("RECOVERY_LOOKBACK_DAYS", 7)
    RECOVERY_BATCH_LIMIT = _env_int("RECOVERY_BATCH_LIMIT", 20)
    RECONCILIATION_LOOKBACK_HOURS = _env_int("RECONCILIATION_LOOKBACK_HOURS", 24)
    RECONCILIATION_BATCH_LIMIT = _env_int("RECONCILIATION_BATCH_LIMIT", 50)

    # Bearer tokens for operator and service-to-service endpoints
    OPERATOR_API_TOKEN = os.environ.get("OPERATOR_API_TOKEN", "")
    SERVICE_API_TOKEN = os.environ.get("SERVICE_API_TOKEN", "")

    MARKETPLACE_TEST_MODE = _env_bool("MARKETPLACE_TEST_MODE", False)


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    PAYMENTS_PROVIDER = "mock"
    MARKETPLACE_PROVIDER = "mock"
    NOTIFICATIONS_PROVIDER = "mock"
    OPERATOR_API_TOKEN = "operator-test-token"
    SERVICE_API_TOKEN = "service-test-token"
    WEBHOOK_BASE_URL = "https://hooks.test.local"
    MARKETPLACE_WEBHOOK_SECRET = "zinc-hook-test"
    STRIPE_WEBHOOK_SECRET = "whsec_test"
