from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class CheckoutSession:
    id: str
    payment_status: str  # paid, unpaid, no_payment_required
    payment_intent_id: str | None = None
    amount_total: int | None = None  # minor units (cents)
    currency: str | None = None
    customer_email: str | None = None
    metadata: dict = field(default_factory=dict)
    raw: dict | None = None


@dataclass
class PaymentIntentInfo:
    id: str
    status: str  # succeeded, processing, requires_payment_method, canceled, ...
    amount: int | None = None  # minor units (cents)
    currency: str | None = None
    raw: dict | None = None


@dataclass
class WebhookEvent:
    id: str
    type: str
    data_object: dict
    raw: dict | None = None


class PaymentProviderUnavailable(RuntimeError):
    """The provider could not be reached or rejected the lookup."""


class WebhookSignatureError(ValueError):
    pass


class PaymentsProvider:
    name = "unknown"

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        raise NotImplementedError

    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentInfo:
        raise NotImplementedError

    def construct_webhook_event(self, payload: bytes, signature: str) -> WebhookEvent:
        raise NotImplementedError
