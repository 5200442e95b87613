from __future__ import annotations

import json
from dataclasses import dataclass


@dataclass
class MarketplaceResponse:
    status_code: int
    body: dict | str | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def request_id(self) -> str | None:
        if isinstance(self.body, dict):
            return self.body.get("request_id") or self.body.get("id")
        return None

    def body_text(self) -> str:
        if self.body is None:
            return ""
        if isinstance(self.body, str):
            return self.body
        return json.dumps(self.body, sort_keys=True, default=str)


class MarketplaceTransportError(RuntimeError):
    """
    The request may or may not have reached the marketplace.

    Raised for timeouts and connection failures after the request was handed
    to the transport, so callers must treat the outcome as unknown.
    """


class MarketplaceClient:
    name = "unknown"

    def submit_order(self, request: dict, *, api_key: str) -> MarketplaceResponse:
        raise NotImplementedError
