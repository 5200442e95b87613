from __future__ import annotations

import hashlib
import hmac
import json

from giftflow.integrations.payments.base import (
    CheckoutSession,
    PaymentIntentInfo,
    PaymentProviderUnavailable,
    PaymentsProvider,
    WebhookEvent,
    WebhookSignatureError,
)


class MockPaymentsProvider(PaymentsProvider):
    """
    In-memory provider for tests and local runs.

    Webhook signatures are hex HMAC-SHA256 of the raw payload with the
    configured secret.
    """
    name = "mock"

    def __init__(self, *, webhook_secret: str | None = None):
        self.webhook_secret = webhook_secret or "whsec_mock"
        self.sessions: dict[str, CheckoutSession] = {}
        self.intents: dict[str, PaymentIntentInfo] = {}
        self.unavailable = False

    def add_session(
        self,
        session_id: str,
        *,
        payment_status: str = "paid",
        payment_intent_id: str | None = None,
        amount_total: int | None = None,
        currency: str = "usd",
        customer_email: str | None = None,
        metadata: dict | None = None,
    ) -> CheckoutSession:
        session = CheckoutSession(
            id=session_id,
            payment_status=payment_status,
            payment_intent_id=payment_intent_id,
            amount_total=amount_total,
            currency=currency,
            customer_email=customer_email,
            metadata=metadata or {},
        )
        self.sessions[session_id] = session
        return session

    def add_intent(self, payment_intent_id: str, *, status: str = "succeeded", amount: int | None = None, currency: str = "usd") -> PaymentIntentInfo:
        intent = PaymentIntentInfo(id=payment_intent_id, status=status, amount=amount, currency=currency)
        self.intents[payment_intent_id] = intent
        return intent

    def reset(self) -> None:
        self.sessions.clear()
        self.intents.clear()
        self.unavailable = False

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        if self.unavailable:
            raise PaymentProviderUnavailable("MOCK_PROVIDER_DOWN")
        session = self.sessions.get(session_id)
        if session is None:
            raise PaymentProviderUnavailable(f"No such checkout.session: {session_id}")
        return session

    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentInfo:
        if self.unavailable:
            raise PaymentProviderUnavailable("MOCK_PROVIDER_DOWN")
        intent = self.intents.get(payment_intent_id)
        if intent is None:
            raise PaymentProviderUnavailable(f"No such payment_intent: {payment_intent_id}")
        return intent

    def sign(self, payload: bytes) -> str:
        return hmac.new(self.webhook_secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    def construct_webhook_event(self, payload: bytes, signature: str) -> WebhookEvent:
        if not hmac.compare_digest(self.sign(payload), signature or ""):
            raise WebhookSignatureError("Invalid signature")
        try:
            body = json.loads(payload.decode("utf-8"))
        except ValueError as e:
            raise WebhookSignatureError("Invalid payload") from e
        return WebhookEvent(
            id=body.get("id", ""),
            type=body.get("type", ""),
            data_object=(body.get("data") or {}).get("object") or {},
            raw=body,
        )
