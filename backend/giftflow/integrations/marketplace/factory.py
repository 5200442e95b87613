from __future__ import annotations

from giftflow.integrations.common import (
    IntegrationMisconfiguredError,
    provider_name,
    settings_value,
)
from giftflow.integrations.marketplace.base import MarketplaceClient
from giftflow.integrations.marketplace.mock_client import MockMarketplaceClient
from giftflow.integrations.marketplace.zinc_client import DEFAULT_ZINC_URL, ZincMarketplaceClient


def build_marketplace_client(settings) -> MarketplaceClient:
    provider = provider_name(settings, "MARKETPLACE_PROVIDER", "zinc")

    if provider == "mock":
        return MockMarketplaceClient()

    if provider != "zinc":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:marketplace_provider={provider}")

    base_url = (settings_value(settings, "MARKETPLACE_API_URL") or DEFAULT_ZINC_URL).strip()
    timeout = float(settings_value(settings, "MARKETPLACE_TIMEOUT_SECONDS", 30) or 30)
    return ZincMarketplaceClient(base_url=base_url, timeout=timeout)
