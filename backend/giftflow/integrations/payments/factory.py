from __future__ import annotations

from giftflow.integrations.common import (
    IntegrationMisconfiguredError,
    provider_name,
    settings_value,
)
from giftflow.integrations.payments.base import PaymentsProvider
from giftflow.integrations.payments.mock_provider import MockPaymentsProvider
from giftflow.integrations.payments.stripe_provider import StripePaymentsProvider


def build_payments_provider(settings) -> PaymentsProvider:
    provider = provider_name(settings, "PAYMENTS_PROVIDER", "stripe")
    webhook_secret = (settings_value(settings, "STRIPE_WEBHOOK_SECRET") or "").strip() or None

    if provider == "mock":
        return MockPaymentsProvider(webhook_secret=webhook_secret)

    if provider != "stripe":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payments_provider={provider}")

    secret_key = (settings_value(settings, "STRIPE_SECRET_KEY") or "").strip()
    if not secret_key:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing STRIPE_SECRET_KEY")

    return StripePaymentsProvider(secret_key=secret_key, webhook_secret=webhook_secret)


def payments_health(settings) -> dict:
    provider = provider_name(settings, "PAYMENTS_PROVIDER", "stripe")
    missing = []
    if provider == "stripe":
        if not (settings_value(settings, "STRIPE_SECRET_KEY") or "").strip():
            missing.append("STRIPE_SECRET_KEY")
        if not (settings_value(settings, "STRIPE_WEBHOOK_SECRET") or "").strip():
            missing.append("STRIPE_WEBHOOK_SECRET")
    return {
        "status": "misconfigured" if missing else "configured",
        "provider": provider,
        "missing": missing,
    }
