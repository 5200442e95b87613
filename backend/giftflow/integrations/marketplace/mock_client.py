from __future__ import annotations

from itertools import count

from giftflow.integrations.marketplace.base import (
    MarketplaceClient,
    MarketplaceResponse,
    MarketplaceTransportError,
)


class MockMarketplaceClient(MarketplaceClient):
    """
    Records every request. Responses are taken from a queue; an empty queue
    accepts the order with a generated request id. Queue an exception
    instance to simulate a transport failure.
    """
    name = "mock"

    def __init__(self):
        self.requests: list[dict] = []
        self.api_keys: list[str] = []
        self._queue: list = []
        self._ids = count(1)

    def queue_response(self, status_code: int, body=None) -> None:
        self._queue.append(MarketplaceResponse(status_code=status_code, body=body))

    def queue_transport_error(self, message: str = "timed out") -> None:
        self._queue.append(MarketplaceTransportError(message))

    def reset(self) -> None:
        self.requests.clear()
        self.api_keys.clear()
        self._queue.clear()

    def submit_order(self, request: dict, *, api_key: str) -> MarketplaceResponse:
        self.requests.append(request)
        self.api_keys.append(api_key)
        if self._queue:
            nxt = self._queue.pop(0)
            if isinstance(nxt, Exception):
                raise nxt
            return nxt
        return MarketplaceResponse(status_code=200, body={"request_id": f"mock_{next(self._ids)}"})
