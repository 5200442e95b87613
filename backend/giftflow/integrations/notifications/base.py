from __future__ import annotations

from dataclasses import dataclass


@dataclass
class NotificationResult:
    ok: bool
    code: str = ""
    message: str = ""


class NotificationDispatcher:
    name = "unknown"

    def send(self, *, kind: str, order_id: str, payload: dict) -> NotificationResult:
        raise NotImplementedError


class DisabledNotificationDispatcher(NotificationDispatcher):
    name = "disabled"

    def send(self, *, kind: str, order_id: str, payload: dict) -> NotificationResult:
        return NotificationResult(ok=True, code="DISABLED", message="notifications disabled")
