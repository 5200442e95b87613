from __future__ import annotations

from giftflow.integrations.common import (
    IntegrationMisconfiguredError,
    provider_name,
    settings_value,
)
from giftflow.integrations.notifications.base import DisabledNotificationDispatcher, NotificationDispatcher
from giftflow.integrations.notifications.http_dispatcher import HttpNotificationDispatcher
from giftflow.integrations.notifications.mock_provider import MockNotificationDispatcher


def build_notification_dispatcher(settings) -> NotificationDispatcher:
    provider = provider_name(settings, "NOTIFICATIONS_PROVIDER", "disabled")

    if provider == "disabled":
        return DisabledNotificationDispatcher()

    if provider == "mock":
        return MockNotificationDispatcher()

    if provider != "http":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:notifications_provider={provider}")

    url = (settings_value(settings, "NOTIFICATIONS_URL") or "").strip()
    if not url:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing NOTIFICATIONS_URL")
    timeout = float(settings_value(settings, "NOTIFICATIONS_TIMEOUT_SECONDS", 10) or 10)
    return HttpNotificationDispatcher(url=url, timeout=timeout)
