from __future__ import annotations

import httpx

from giftflow.integrations.marketplace.base import (
    MarketplaceClient,
    MarketplaceResponse,
    MarketplaceTransportError,
)


DEFAULT_ZINC_URL = "https://api.zinc.io/v1"


class ZincMarketplaceClient(MarketplaceClient):
    """Zinc v1 purchase-on-behalf API. Auth is HTTP Basic with the api key as username."""
    name = "zinc"

    def __init__(self, *, base_url: str = DEFAULT_ZINC_URL, timeout: float = 30.0, transport: httpx.BaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    def submit_order(self, request: dict, *, api_key: str) -> MarketplaceResponse:
        try:
            with self._client() as client:
                r = client.post("/orders", json=request, auth=(api_key, ""))
        except httpx.TransportError as e:
            raise MarketplaceTransportError(f"ZINC_TRANSPORT_FAILED:{type(e).__name__}:{e}") from e

        try:
            body = r.json() if r.content else None
        except ValueError:
            body = r.text
        return MarketplaceResponse(status_code=r.status_code, body=body)
