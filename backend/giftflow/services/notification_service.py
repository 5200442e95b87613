# Overview: Service-layer operations for customer notifications; fire-and-forget after fulfillment.

from __future__ import annotations

from flask import current_app

from ..integrations import get_notification_dispatcher
from ..models import Order


NOTIFY_ORDER_CONFIRMATION = "order_confirmation"
NOTIFY_ORDER_RECEIPT = "order_receipt"


def _payload(order: Order) -> dict:
    return {
        "order_number": order.order_number,
        "customer_email": order.customer_email,
        "total_amount": str(order.total_amount),
        "currency": order.currency,
        "marketplace_order_id": order.marketplace_order_id,
        "is_gift": order.is_gift,
        "items": [item.to_dict() for item in order.items],
    }


def send_order_notifications(order: Order, *, dispatcher=None) -> list[str]:
    """
    Send confirmation + receipt. Never raises: a notification failure must
    not undo or block the order state change that preceded it.

    Returns the kinds that were accepted.
    """
    sent = []
    try:
        dispatcher = dispatcher or get_notification_dispatcher()
        payload = _payload(order)
    except Exception:
        current_app.logger.exception("Notifications unavailable for order %s", order.id)
        return sent

    for kind in (NOTIFY_ORDER_CONFIRMATION, NOTIFY_ORDER_RECEIPT):
        try:
            result = dispatcher.send(kind=kind, order_id=order.id, payload=payload)
        except Exception:
            current_app.logger.exception("Notification %s failed for order %s", kind, order.id)
            continue
        if result.ok:
            sent.append(kind)
        else:
            current_app.logger.warning(
                "Notification %s rejected for order %s: %s %s", kind, order.id, result.code, result.message
            )
    return sent
