"""
Inbound processor events: verify, parse, dedupe, dispatch.

Every payload variant maps to exactly one handler; commission handlers need
only the event, subscription handlers also re-fetch from the processor.
"""
import logging
from typing import Any, Dict, Optional

from . import commissions, ledger, subscriptions
from .errors import DuplicateEvent
from .events import (
    EVENT_VARIANTS,
    ChargeCaptured,
    ChargeRefunded,
    EventEnvelope,
    InvoiceSettled,
    PaymentIntentCanceled,
    PaymentIntentFailed,
    PaymentIntentSucceeded,
    SubscriptionChanged,
    SubscriptionDeleted,
    UnhandledEvent,
    parse_event,
    verify_signature,
)

logger = logging.getLogger(__name__)

_COMMISSION_HANDLERS = {
    PaymentIntentSucceeded: commissions.on_payment_intent_succeeded,
    PaymentIntentFailed: commissions.on_payment_intent_failed,
    PaymentIntentCanceled: commissions.on_payment_intent_canceled,
    ChargeCaptured: commissions.on_charge_captured,
    ChargeRefunded: commissions.on_charge_refunded,
}

_SUBSCRIPTION_HANDLERS = {
    SubscriptionChanged: subscriptions.on_subscription_changed,
    SubscriptionDeleted: subscriptions.on_subscription_deleted,
    InvoiceSettled: subscriptions.on_invoice_settled,
}

assert set(_COMMISSION_HANDLERS) | set(_SUBSCRIPTION_HANDLERS) | {UnhandledEvent} == set(EVENT_VARIANTS), \
    "every event variant needs a handler"


def dispatch(envelope: EventEnvelope, *, processor) -> Optional[str]:
    payload = envelope.payload
    handler = _COMMISSION_HANDLERS.get(type(payload))
    if handler is not None:
        return handler(payload)
    return _SUBSCRIPTION_HANDLERS[type(payload)](payload, processor=processor)


def handle_event(raw_body: bytes, signature_header: Optional[str], *, secret: Optional[str],
                 tolerance: int, processor) -> Dict[str, Any]:
    """
    Returns the response body for an accepted delivery. SignatureInvalid and
    MalformedEvent propagate (4xx); anything else propagating means the
    delivery must be retried (5xx).
    """
    verify_signature(raw_body, signature_header, secret, tolerance)
    envelope = parse_event(raw_body)

    if isinstance(envelope.payload, UnhandledEvent):
        logger.info("webhook.ignored", extra={"event_id": envelope.id, "type": envelope.type})
        return {"ok": True, "ignored": True}

    try:
        entry = ledger.apply_once(envelope, lambda env: dispatch(env, processor=processor))
    except DuplicateEvent:
        logger.info("webhook.duplicate", extra={"event_id": envelope.id, "type": envelope.type})
        return {"ok": True, "duplicate": True}

    return {"ok": True, "event_id": envelope.id, "notes": entry.notes}
