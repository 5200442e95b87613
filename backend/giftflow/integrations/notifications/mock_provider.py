from __future__ import annotations

from giftflow.integrations.notifications.base import NotificationDispatcher, NotificationResult


class MockNotificationDispatcher(NotificationDispatcher):
    name = "mock"

    def __init__(self):
        self.sent: list[dict] = []
        self.fail = False

    def reset(self) -> None:
        self.sent.clear()
        self.fail = False

    def send(self, *, kind: str, order_id: str, payload: dict) -> NotificationResult:
        if self.fail:
            raise RuntimeError("mock notification failure")
        self.sent.append({"kind": kind, "order_id": order_id, "payload": payload})
        return NotificationResult(ok=True, code="OK", message="mock_sent")
