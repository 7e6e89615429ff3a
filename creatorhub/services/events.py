"""
Webhook signature verification and event parsing.

Raw bodies are decoded exactly once into an ``EventEnvelope`` whose payload
is one of the variant dataclasses below; handlers dispatch on the variant
class, never on loose dict access.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

import stripe

from .errors import MalformedEvent, SignatureInvalid
from .processor import object_id

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 300


# ---- payload variants ----

@dataclass(frozen=True)
class PaymentIntentSucceeded:
    intent_id: str
    amount: int
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentIntentFailed:
    intent_id: str
    metadata: Dict[str, str] = field(default_factory=dict)
    failure_code: Optional[str] = None


@dataclass(frozen=True)
class PaymentIntentCanceled:
    intent_id: str
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ChargeCaptured:
    charge_id: str
    intent_id: Optional[str]
    amount_captured: int
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ChargeRefunded:
    charge_id: str
    intent_id: Optional[str]
    amount: int
    amount_refunded: int
    fully_refunded: bool
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SubscriptionChanged:
    subscription_id: str
    status: Optional[str]
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SubscriptionDeleted:
    subscription_id: str


@dataclass(frozen=True)
class InvoiceSettled:
    invoice_id: str
    subscription_id: Optional[str]
    paid: bool


@dataclass(frozen=True)
class UnhandledEvent:
    type: str


EventPayload = Union[
    PaymentIntentSucceeded,
    PaymentIntentFailed,
    PaymentIntentCanceled,
    ChargeCaptured,
    ChargeRefunded,
    SubscriptionChanged,
    SubscriptionDeleted,
    InvoiceSettled,
    UnhandledEvent,
]

EVENT_VARIANTS = (
    PaymentIntentSucceeded,
    PaymentIntentFailed,
    PaymentIntentCanceled,
    ChargeCaptured,
    ChargeRefunded,
    SubscriptionChanged,
    SubscriptionDeleted,
    InvoiceSettled,
    UnhandledEvent,
)


@dataclass(frozen=True)
class EventEnvelope:
    id: str
    type: str
    created: Optional[int]
    payload: EventPayload
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


# ---- signature ----

def verify_signature(raw_body: bytes, signature_header: Optional[str], secret: Optional[str],
                     tolerance: int = DEFAULT_TOLERANCE) -> None:
    """Raise SignatureInvalid unless the body was signed with ``secret`` recently."""
    if not secret:
        # Fail closed: an unconfigured secret must never accept events
        raise SignatureInvalid("webhook secret not configured")
    if not signature_header:
        raise SignatureInvalid("missing signature header")
    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise SignatureInvalid("body is not utf-8") from e
    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise SignatureInvalid(str(e)) from e


# ---- parsing ----

def _require(obj: Dict[str, Any], key: str, ev_type: str) -> Any:
    value = obj.get(key)
    if value in (None, ""):
        raise MalformedEvent(f"{ev_type}: missing data.object.{key}")
    return value


def _metadata(obj: Dict[str, Any]) -> Dict[str, str]:
    md = obj.get("metadata") or {}
    if not isinstance(md, dict):
        return {}
    return {str(k): str(v) for k, v in md.items()}


def _invoice_subscription_id(obj: Dict[str, Any]) -> Optional[str]:
    sub = object_id(obj.get("subscription"))
    if sub:
        return sub
    # Newer API versions moved the link under parent.subscription_details
    parent = obj.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return object_id(details.get("subscription"))


def _payment_intent_succeeded(obj, ev_type):
    return PaymentIntentSucceeded(
        intent_id=_require(obj, "id", ev_type),
        amount=int(obj.get("amount_received") or obj.get("amount") or 0),
        metadata=_metadata(obj),
    )


def _payment_intent_failed(obj, ev_type):
    last_error = obj.get("last_payment_error") or {}
    return PaymentIntentFailed(
        intent_id=_require(obj, "id", ev_type),
        metadata=_metadata(obj),
        failure_code=last_error.get("code") if isinstance(last_error, dict) else None,
    )


def _payment_intent_canceled(obj, ev_type):
    return PaymentIntentCanceled(intent_id=_require(obj, "id", ev_type), metadata=_metadata(obj))


def _charge_captured(obj, ev_type):
    return ChargeCaptured(
        charge_id=_require(obj, "id", ev_type),
        intent_id=object_id(obj.get("payment_intent")),
        amount_captured=int(obj.get("amount_captured") or 0),
        metadata=_metadata(obj),
    )


def _charge_refunded(obj, ev_type):
    amount = int(obj.get("amount") or 0)
    refunded_amount = int(obj.get("amount_refunded") or 0)
    return ChargeRefunded(
        charge_id=_require(obj, "id", ev_type),
        intent_id=object_id(obj.get("payment_intent")),
        amount=amount,
        amount_refunded=refunded_amount,
        fully_refunded=bool(obj.get("refunded")) or (amount > 0 and refunded_amount >= amount),
        metadata=_metadata(obj),
    )


def _subscription_changed(obj, ev_type):
    return SubscriptionChanged(
        subscription_id=_require(obj, "id", ev_type),
        status=obj.get("status"),
        metadata=_metadata(obj),
    )


def _subscription_deleted(obj, ev_type):
    return SubscriptionDeleted(subscription_id=_require(obj, "id", ev_type))


def _invoice_paid(obj, ev_type):
    return InvoiceSettled(
        invoice_id=_require(obj, "id", ev_type),
        subscription_id=_invoice_subscription_id(obj),
        paid=True,
    )


def _invoice_failed(obj, ev_type):
    return InvoiceSettled(
        invoice_id=_require(obj, "id", ev_type),
        subscription_id=_invoice_subscription_id(obj),
        paid=False,
    )


_PARSERS = {
    "payment_intent.succeeded": _payment_intent_succeeded,
    "payment_intent.payment_failed": _payment_intent_failed,
    "payment_intent.canceled": _payment_intent_canceled,
    "charge.captured": _charge_captured,
    "charge.refunded": _charge_refunded,
    "customer.subscription.created": _subscription_changed,
    "customer.subscription.updated": _subscription_changed,
    "customer.subscription.deleted": _subscription_deleted,
    "invoice.paid": _invoice_paid,
    "invoice.payment_succeeded": _invoice_paid,
    "invoice.payment_failed": _invoice_failed,
}

HANDLED_TYPES = frozenset(_PARSERS)


def parse_event(raw_body: bytes) -> EventEnvelope:
    """Decode a verified body into an envelope; raise MalformedEvent on bad shape."""
    try:
        data = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedEvent("body is not valid JSON") from e
    if not isinstance(data, dict):
        raise MalformedEvent("event is not an object")

    ev_id = data.get("id")
    ev_type = data.get("type")
    if not ev_id or not ev_type or not isinstance(ev_id, str) or not isinstance(ev_type, str):
        raise MalformedEvent("missing id or type")

    created = data.get("created")
    parser = _PARSERS.get(ev_type)
    if parser is None:
        return EventEnvelope(id=ev_id, type=ev_type, created=created, payload=UnhandledEvent(ev_type), raw=data)

    envelope = data.get("data")
    obj = envelope.get("object") if isinstance(envelope, dict) else None
    if not isinstance(obj, dict):
        raise MalformedEvent(f"{ev_type}: missing data.object")
    try:
        payload = parser(obj, ev_type)
    except (TypeError, ValueError) as e:
        raise MalformedEvent(f"{ev_type}: {e}") from e
    return EventEnvelope(id=ev_id, type=ev_type, created=created, payload=payload, raw=data)
