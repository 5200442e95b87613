from __future__ import annotations

import httpx

from giftflow.integrations.notifications.base import NotificationDispatcher, NotificationResult


class HttpNotificationDispatcher(NotificationDispatcher):
    """POSTs {type, order_id, payload} to the notification endpoint."""
    name = "http"

    def __init__(self, *, url: str, timeout: float = 10.0, transport: httpx.BaseTransport | None = None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    def send(self, *, kind: str, order_id: str, payload: dict) -> NotificationResult:
        body = {"type": kind, "order_id": order_id, "payload": payload}
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            r = client.post(self.url, json=body)
        if 200 <= r.status_code < 300:
            return NotificationResult(ok=True, code="OK", message="sent")
        return NotificationResult(ok=False, code=f"HTTP_{r.status_code}", message=r.text[:200])
