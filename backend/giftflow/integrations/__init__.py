# Overview: Builds the external collaborators from app config and hands them to services.

from __future__ import annotations

from flask import current_app

from giftflow.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from giftflow.integrations.marketplace.factory import build_marketplace_client
from giftflow.integrations.notifications.factory import build_notification_dispatcher
from giftflow.integrations.payments.factory import build_payments_provider


PAYMENTS_KEY = "giftflow.payments"
MARKETPLACE_KEY = "giftflow.marketplace"
NOTIFICATIONS_KEY = "giftflow.notifications"


def init_integrations(app) -> None:
    """
    Build each provider once per app.

    A misconfigured provider is stored as None and logged; the first service
    call that needs it fails with IntegrationMisconfiguredError instead of the
    whole app refusing to boot.
    """
    builders = (
        (PAYMENTS_KEY, build_payments_provider),
        (MARKETPLACE_KEY, build_marketplace_client),
        (NOTIFICATIONS_KEY, build_notification_dispatcher),
    )
    for key, build in builders:
        try:
            app.extensions[key] = build(app.config)
        except (IntegrationDisabledError, IntegrationMisconfiguredError) as e:
            app.logger.warning("Integration %s unavailable: %s", key, e)
            app.extensions[key] = None


def _get(key: str):
    provider = current_app.extensions.get(key)
    if provider is None:
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:{key}")
    return provider


def get_payments_provider():
    return _get(PAYMENTS_KEY)


def get_marketplace_client():
    return _get(MARKETPLACE_KEY)


def get_notification_dispatcher():
    return _get(NOTIFICATIONS_KEY)
