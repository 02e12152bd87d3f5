from __future__ import annotations

"""
EMBED_SUMMARY: Typed gateway webhook events as a pydantic discriminated union on the event `type`.
EMBED_TAGS: stripe, webhooks, events, pydantic
"""

from typing import Annotated, Any, Dict, Literal, Optional, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class GatewayObject(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SubscriptionObject(GatewayObject):
    customer: Optional[str] = None
    status: str
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None
    ended_at: Optional[int] = None


class InvoiceObject(GatewayObject):
    customer: Optional[str] = None
    subscription: Optional[str] = None
    billing_reason: Optional[str] = None
    amount_paid: int = 0
    parent: Optional[Dict[str, Any]] = None

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        # Newer API versions nest it under parent.subscription_details
        details = (self.parent or {}).get("subscription_details") or {}
        return details.get("subscription")


class CheckoutSessionObject(GatewayObject):
    payment_intent: Optional[str] = None
    mode: Optional[str] = None
    amount_total: Optional[int] = None


class PaymentIntentObject(GatewayObject):
    amount: int = 0
    amount_received: int = 0
    currency: Optional[str] = None


class SubscriptionData(BaseModel):
    object: SubscriptionObject


class InvoiceData(BaseModel):
    object: InvoiceObject


class CheckoutSessionData(BaseModel):
    object: CheckoutSessionObject


class PaymentIntentData(BaseModel):
    object: PaymentIntentObject


class GatewayEventBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    created: Optional[int] = None


class SubscriptionCreated(GatewayEventBase):
    type: Literal["customer.subscription.created"]
    data: SubscriptionData


class SubscriptionUpdated(GatewayEventBase):
    type: Literal["customer.subscription.updated"]
    data: SubscriptionData


class SubscriptionDeleted(GatewayEventBase):
    type: Literal["customer.subscription.deleted"]
    data: SubscriptionData


class InvoicePaymentSucceeded(GatewayEventBase):
    type: Literal["invoice.payment_succeeded"]
    data: InvoiceData


class InvoicePaid(GatewayEventBase):
    type: Literal["invoice.paid"]
    data: InvoiceData


class InvoicePaymentFailed(GatewayEventBase):
    type: Literal["invoice.payment_failed"]
    data: InvoiceData


class CheckoutSessionCompleted(GatewayEventBase):
    type: Literal["checkout.session.completed"]
    data: CheckoutSessionData


class PaymentIntentSucceeded(GatewayEventBase):
    type: Literal["payment_intent.succeeded"]
    data: PaymentIntentData


class PaymentIntentFailed(GatewayEventBase):
    type: Literal["payment_intent.payment_failed"]
    data: PaymentIntentData


class UnhandledEvent(GatewayEventBase):
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


EVENT_MODELS = (
    SubscriptionCreated,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaymentSucceeded,
    InvoicePaid,
    InvoicePaymentFailed,
    CheckoutSessionCompleted,
    PaymentIntentSucceeded,
    PaymentIntentFailed,
)

GatewayEvent = Annotated[
    Union[
        SubscriptionCreated,
        SubscriptionUpdated,
        SubscriptionDeleted,
        InvoicePaymentSucceeded,
        InvoicePaid,
        InvoicePaymentFailed,
        CheckoutSessionCompleted,
        PaymentIntentSucceeded,
        PaymentIntentFailed,
    ],
    Field(discriminator="type"),
]

_event_adapter = TypeAdapter(GatewayEvent)

HANDLED_EVENT_TYPES = frozenset(get_args(model.model_fields["type"].annotation)[0] for model in EVENT_MODELS)


def parse_event(payload: Dict[str, Any]) -> GatewayEventBase:
    """Validate a decoded event. Types without a model parse as UnhandledEvent."""
    if payload.get("type") in HANDLED_EVENT_TYPES:
        return _event_adapter.validate_python(payload)
    return UnhandledEvent.model_validate(payload)
