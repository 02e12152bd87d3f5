from __future__ import annotations

"""
EMBED_SUMMARY: Payment gateway adapters (fake and Stripe) plus webhook signature verification.
EMBED_TAGS: payments, stripe, refunds, checkout, webhooks, provider
"""

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import stripe

from .config import get_settings
from .errors import PaymentGatewayError, ValidationError, WebhookSignatureError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayPaymentIntent:
    id: str
    client_secret: Optional[str]
    amount: int
    currency: str
    status: str


@dataclass(frozen=True)
class GatewayCheckoutSession:
    id: str
    url: Optional[str]


@dataclass(frozen=True)
class GatewaySubscription:
    id: str
    status: str


class PaymentGateway:
    def create_customer(self, *, email: Optional[str], name: str, metadata: Dict[str, str]) -> str:  # pragma: no cover - interface
        raise NotImplementedError

    def create_ephemeral_key(self, customer_id: str) -> str:  # pragma: no cover - interface
        raise NotImplementedError

    def create_payment_intent(
        self, *, amount: int, currency: str, customer_id: str, metadata: Dict[str, str]
    ) -> GatewayPaymentIntent:  # pragma: no cover - interface
        raise NotImplementedError

    def cancel_payment_intent(self, payment_intent_id: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def refund(self, payment_intent_id: str, amount: int, metadata: Optional[Dict[str, str]] = None) -> str:  # pragma: no cover - interface
        raise NotImplementedError

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        amount: int,
        currency: str,
        product_name: str,
        metadata: Dict[str, str],
    ) -> GatewayCheckoutSession:  # pragma: no cover - interface
        raise NotImplementedError

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def create_subscription_checkout(
        self,
        *,
        customer_id: str,
        amount: int,
        currency: str,
        product_name: str,
        metadata: Dict[str, str],
    ) -> GatewayCheckoutSession:  # pragma: no cover - interface
        raise NotImplementedError

    def change_subscription_price(
        self,
        subscription_id: str,
        *,
        amount: int,
        currency: str,
        product_name: str,
        metadata: Dict[str, str],
        cancel_at_period_end: Optional[bool] = None,
    ) -> None:  # pragma: no cover - interface
        """Swap the monthly price from the next billing cycle on, without proration."""
        raise NotImplementedError

    def cancel_subscription_now(self, subscription_id: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def create_subscription(
        self,
        *,
        customer_id: str,
        amount: int,
        currency: str,
        product_name: str,
        metadata: Dict[str, str],
    ) -> GatewaySubscription:  # pragma: no cover - interface
        """Start a monthly subscription charged immediately; status is "active" only if the first payment succeeded."""
        raise NotImplementedError


def _fake_id(prefix: str) -> str:
    return f"{prefix}_fake_{uuid.uuid4().hex[:16]}"


class FakePaymentGateway(PaymentGateway):
    """In-memory gateway for development and tests.

    Set `fail_refunds` to simulate provider outages and `decline_subscriptions` to leave new subscriptions unpaid.
    """

    def __init__(self, fail_refunds: bool = False, decline_subscriptions: bool = False) -> None:
        self.fail_refunds = fail_refunds
        self.decline_subscriptions = decline_subscriptions
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.intents: Dict[str, GatewayPaymentIntent] = {}
        self.cancelled_intents: List[str] = []
        self.refunds: List[Dict[str, Any]] = []
        self.checkout_sessions: Dict[str, Dict[str, Any]] = {}
        self.subscription_flags: Dict[str, bool] = {}
        self.price_changes: List[Dict[str, Any]] = []
        self.cancelled_subscriptions: List[str] = []
        self.subscriptions: Dict[str, Dict[str, Any]] = {}

    def create_customer(self, *, email: Optional[str], name: str, metadata: Dict[str, str]) -> str:
        customer_id = _fake_id("cus")
        self.customers[customer_id] = {"email": email, "name": name, "metadata": metadata}
        return customer_id

    def create_ephemeral_key(self, customer_id: str) -> str:
        return _fake_id("ek")

    def create_payment_intent(
        self, *, amount: int, currency: str, customer_id: str, metadata: Dict[str, str]
    ) -> GatewayPaymentIntent:
        intent_id = _fake_id("pi")
        intent = GatewayPaymentIntent(
            id=intent_id,
            client_secret=f"{intent_id}_secret",
            amount=amount,
            currency=currency,
            status="requires_payment_method",
        )
        self.intents[intent_id] = intent
        return intent

    def cancel_payment_intent(self, payment_intent_id: str) -> None:
        self.cancelled_intents.append(payment_intent_id)

    def refund(self, payment_intent_id: str, amount: int, metadata: Optional[Dict[str, str]] = None) -> str:
        if self.fail_refunds:
            raise PaymentGatewayError("Refund rejected by fake gateway")
        refund_id = _fake_id("re")
        self.refunds.append(
            {"id": refund_id, "payment_intent": payment_intent_id, "amount": amount, "metadata": metadata or {}}
        )
        return refund_id

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        amount: int,
        currency: str,
        product_name: str,
        metadata: Dict[str, str],
    ) -> GatewayCheckoutSession:
        session_id = _fake_id("cs")
        self.checkout_sessions[session_id] = {"customer": customer_id, "amount": amount, "metadata": metadata}
        return GatewayCheckoutSession(id=session_id, url=f"https://checkout.invalid/{session_id}")

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> None:
        self.subscription_flags[subscription_id] = cancel

    def create_subscription_checkout(
        self,
        *,
        customer_id: str,
        amount: int,
        currency: str,
        product_name: str,
        metadata: Dict[str, str],
    ) -> GatewayCheckoutSession:
        session_id = _fake_id("cs")
        self.checkout_sessions[session_id] = {
            "customer": customer_id,
            "amount": amount,
            "metadata": metadata,
            "mode": "subscription",
        }
        return GatewayCheckoutSession(id=session_id, url=f"https://checkout.invalid/{session_id}")

    def change_subscription_price(
        self,
        subscription_id: str,
        *,
        amount: int,
        currency: str,
        product_name: str,
        metadata: Dict[str, str],
        cancel_at_period_end: Optional[bool] = None,
    ) -> None:
        self.price_changes.append({"subscription": subscription_id, "amount": amount, "metadata": metadata})
        if cancel_at_period_end is not None:
            self.subscription_flags[subscription_id] = cancel_at_period_end

    def cancel_subscription_now(self, subscription_id: str) -> None:
        self.cancelled_subscriptions.append(subscription_id)

    def create_subscription(
        self,
        *,
        customer_id: str,
        amount: int,
        currency: str,
        product_name: str,
        metadata: Dict[str, str],
    ) -> GatewaySubscription:
        subscription = GatewaySubscription(
            id=_fake_id("sub"), status="incomplete" if self.decline_subscriptions else "active"
        )
        self.subscriptions[subscription.id] = {"customer": customer_id, "amount": amount, "metadata": metadata}
        return subscription


class StripePaymentGateway(PaymentGateway):
    def __init__(self, api_key: str, ephemeral_key_version: str, success_url: str, cancel_url: str) -> None:
        stripe.api_key = api_key
        self.ephemeral_key_version = ephemeral_key_version
        self.success_url = success_url
        self.cancel_url = cancel_url

    def _call(self, action: str, fn: Callable[..., Any], **kwargs: Any) -> Any:
        try:
            return fn(**kwargs)
        except stripe.StripeError as exc:
            logger.error("stripe %s failed: %s", action, exc)
            raise PaymentGatewayError(getattr(exc, "user_message", None) or str(exc)) from exc

    def create_customer(self, *, email: Optional[str], name: str, metadata: Dict[str, str]) -> str:
        customer = self._call("customer.create", stripe.Customer.create, email=email, name=name, metadata=metadata)
        return customer.id

    def create_ephemeral_key(self, customer_id: str) -> str:
        key = self._call(
            "ephemeral_key.create",
            stripe.EphemeralKey.create,
            customer=customer_id,
            stripe_version=self.ephemeral_key_version,
        )
        return key.secret

    def create_payment_intent(
        self, *, amount: int, currency: str, customer_id: str, metadata: Dict[str, str]
    ) -> GatewayPaymentIntent:
        intent = self._call(
            "payment_intent.create",
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency,
            customer=customer_id,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
        )
        return GatewayPaymentIntent(
            id=intent.id,
            client_secret=intent.client_secret,
            amount=intent.amount,
            currency=intent.currency,
            status=intent.status,
        )

    def cancel_payment_intent(self, payment_intent_id: str) -> None:
        self._call("payment_intent.cancel", stripe.PaymentIntent.cancel, intent=payment_intent_id)

    def refund(self, payment_intent_id: str, amount: int, metadata: Optional[Dict[str, str]] = None) -> str:
        refund = self._call(
            "refund.create",
            stripe.Refund.create,
            payment_intent=payment_intent_id,
            amount=amount,
            metadata=metadata or {},
        )
        return refund.id

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        amount: int,
        currency: str,
        product_name: str,
        metadata: Dict[str, str],
    ) -> GatewayCheckoutSession:
        session = self._call(
            "checkout.session.create",
            stripe.checkout.Session.create,
            mode="payment",
            customer=customer_id,
            line_items=[
                {
                    "price_data": {
                        "currency": currency,
                        "unit_amount": amount,
                        "product_data": {"name": product_name},
                    },
                    "quantity": 1,
                }
            ],
            metadata=metadata,
            payment_intent_data={"metadata": metadata},
            success_url=self.success_url,
            cancel_url=self.cancel_url,
        )
        return GatewayCheckoutSession(id=session.id, url=session.url)

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> None:
        self._call(
            "subscription.modify",
            stripe.Subscription.modify,
            id=subscription_id,
            cancel_at_period_end=cancel,
        )

    def _monthly_line(self, amount: int, currency: str, product_name: str) -> Dict[str, Any]:
        return {
            "currency": currency,
            "unit_amount": amount,
            "product_data": {"name": product_name},
            "recurring": {"interval": "month"},
        }

    def _monthly_price(self, amount: int, currency: str, product_name: str, metadata: Dict[str, str]) -> str:
        price = self._call(
            "price.create",
            stripe.Price.create,
            metadata=metadata,
            **self._monthly_line(amount, currency, product_name),
        )
        return price.id

    def create_subscription_checkout(
        self,
        *,
        customer_id: str,
        amount: int,
        currency: str,
        product_name: str,
        metadata: Dict[str, str],
    ) -> GatewayCheckoutSession:
        session = self._call(
            "checkout.session.create",
            stripe.checkout.Session.create,
            mode="subscription",
            customer=customer_id,
            line_items=[{"price_data": self._monthly_line(amount, currency, product_name), "quantity": 1}],
            metadata=metadata,
            # customer.subscription.created carries these to settlement
            subscription_data={"metadata": metadata},
            success_url=self.success_url,
            cancel_url=self.cancel_url,
        )
        return GatewayCheckoutSession(id=session.id, url=session.url)

    def change_subscription_price(
        self,
        subscription_id: str,
        *,
        amount: int,
        currency: str,
        product_name: str,
        metadata: Dict[str, str],
        cancel_at_period_end: Optional[bool] = None,
    ) -> None:
        price_id = self._monthly_price(amount, currency, product_name, metadata)
        current = self._call("subscription.retrieve", stripe.Subscription.retrieve, id=subscription_id)
        params: Dict[str, Any] = {
            "items": [{"id": current["items"]["data"][0]["id"], "price": price_id}],
            "proration_behavior": "none",
            "metadata": metadata,
        }
        if cancel_at_period_end is not None:
            params["cancel_at_period_end"] = cancel_at_period_end
        self._call("subscription.modify", stripe.Subscription.modify, id=subscription_id, **params)

    def cancel_subscription_now(self, subscription_id: str) -> None:
        self._call(
            "subscription.cancel",
            stripe.Subscription.cancel,
            subscription_exposed_id=subscription_id,
            prorate=False,
            invoice_now=False,
        )

    def create_subscription(
        self,
        *,
        customer_id: str,
        amount: int,
        currency: str,
        product_name: str,
        metadata: Dict[str, str],
    ) -> GatewaySubscription:
        price_id = self._monthly_price(amount, currency, product_name, metadata)
        subscription = self._call(
            "subscription.create",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": price_id}],
            payment_behavior="error_if_incomplete",
            metadata=metadata,
        )
        return GatewaySubscription(id=subscription.id, status=subscription.status)


def get_payment_gateway() -> PaymentGateway:
    settings = get_settings()
    if settings.payments_provider == "stripe":
        if not settings.stripe_secret_key:
            raise RuntimeError("Stripe secret key not configured")
        return StripePaymentGateway(
            api_key=settings.stripe_secret_key,
            ephemeral_key_version=settings.stripe_ephemeral_key_version,
            success_url=settings.checkout_success_url,
            cancel_url=settings.checkout_cancel_url,
        )
    return FakePaymentGateway()


def verify_webhook(payload: bytes, signature: Optional[str], secret: Optional[str], tolerance: int = 300) -> dict:
    """Return the decoded event, checking the Stripe-Signature header when a secret is configured."""
    if secret:
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, signature, secret, tolerance=tolerance)
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError() from exc
        except ValueError as exc:
            raise ValidationError("Webhook payload is not valid JSON") from exc
    try:
        event = json.loads(payload or b"{}")
    except ValueError as exc:
        raise ValidationError("Webhook payload is not valid JSON") from exc
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise ValidationError("Webhook payload is missing id or type")
    return event
