from __future__ import annotations

import stripe

from giftflow.integrations.payments.base import (
    CheckoutSession,
    PaymentIntentInfo,
    PaymentProviderUnavailable,
    PaymentsProvider,
    WebhookEvent,
    WebhookSignatureError,
)


def _plain(obj) -> dict:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _intent_id(value) -> str | None:
    # payment_intent is an id unless the caller expanded it
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return getattr(value, "id", None)


class StripePaymentsProvider(PaymentsProvider):
    name = "stripe"

    def __init__(self, *, secret_key: str, webhook_secret: str | None = None):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self.secret_key)
        except stripe.StripeError as e:
            raise PaymentProviderUnavailable(f"STRIPE_SESSION_LOOKUP_FAILED:{e.user_message or e}") from e

        details = getattr(session, "customer_details", None)
        email = getattr(details, "email", None) if details is not None else None
        return CheckoutSession(
            id=session.id,
            payment_status=(session.payment_status or "").strip().lower(),
            payment_intent_id=_intent_id(session.payment_intent),
            amount_total=session.amount_total,
            currency=session.currency,
            customer_email=email or getattr(session, "customer_email", None),
            metadata=_plain(session.metadata),
            raw=_plain(session),
        )

    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentInfo:
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id, api_key=self.secret_key)
        except stripe.StripeError as e:
            raise PaymentProviderUnavailable(f"STRIPE_INTENT_LOOKUP_FAILED:{e.user_message or e}") from e
        return PaymentIntentInfo(
            id=intent.id,
            status=(intent.status or "").strip().lower(),
            amount=intent.amount,
            currency=intent.currency,
            raw=_plain(intent),
        )

    def construct_webhook_event(self, payload: bytes, signature: str) -> WebhookEvent:
        if not self.webhook_secret:
            raise WebhookSignatureError("STRIPE_WEBHOOK_SECRET not configured")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            raise WebhookSignatureError("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError("Invalid signature") from e
        return WebhookEvent(
            id=event.id,
            type=event.type,
            data_object=_plain(event.data.object),
            raw=_plain(event),
        )
