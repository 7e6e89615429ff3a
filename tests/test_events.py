import json
import time

import pytest
from creatorhub.services.errors import MalformedEvent, SignatureInvalid
from creatorhub.services.events import (
    HANDLED_TYPES,
    ChargeCaptured,
    ChargeRefunded,
    InvoiceSettled,
    PaymentIntentFailed,
    PaymentIntentSucceeded,
    SubscriptionChanged,
    SubscriptionDeleted,
    UnhandledEvent,
    parse_event,
    verify_signature,
)
from conftest import WEBHOOK_SECRET, event_body, sign

def _bytes(s):
    return s.encode("utf-8")

def test_verify_signature_accepts_fresh_signed_body():
    body = event_body("evt_1", "charge.captured", {"id": "ch_1"})
    verify_signature(_bytes(body), sign(body), WEBHOOK_SECRET, 300)

def test_verify_signature_rejects_tampered_body():
    body = event_body("evt_1", "charge.captured", {"id": "ch_1"})
    header = sign(body)
    with pytest.raises(SignatureInvalid):
        verify_signature(_bytes(body.replace("ch_1", "ch_2")), header, WEBHOOK_SECRET, 300)

def test_verify_signature_rejects_wrong_secret_and_stale_timestamp():
    body = event_body("evt_1", "charge.captured", {"id": "ch_1"})
    with pytest.raises(SignatureInvalid):
        verify_signature(_bytes(body), sign(body, secret="whsec_other"), WEBHOOK_SECRET, 300)
    old = int(time.time()) - 3600
    with pytest.raises(SignatureInvalid):
        verify_signature(_bytes(body), sign(body, timestamp=old), WEBHOOK_SECRET, 300)

@pytest.mark.parametrize("header,secret", [(None, WEBHOOK_SECRET), ("t=1,v1=abc", None), ("", WEBHOOK_SECRET)])
def test_verify_signature_fails_closed(header, secret):
    with pytest.raises(SignatureInvalid):
        verify_signature(b"{}", header, secret, 300)

def test_parse_payment_intent_variants():
    env = parse_event(_bytes(event_body("evt_a", "payment_intent.succeeded", {
        "id": "pi_1", "amount": 10000, "amount_received": 10000,
        "metadata": {"commission_request_id": 7, "type": "commission_payment"},
    })))
    assert env.id == "evt_a" and env.type == "payment_intent.succeeded"
    assert env.payload == PaymentIntentSucceeded(
        intent_id="pi_1", amount=10000, metadata={"commission_request_id": "7", "type": "commission_payment"}
    )

    env = parse_event(_bytes(event_body("evt_b", "payment_intent.payment_failed", {
        "id": "pi_1", "last_payment_error": {"code": "card_declined"},
    })))
    assert isinstance(env.payload, PaymentIntentFailed)
    assert env.payload.failure_code == "card_declined"

def test_parse_charge_variants():
    env = parse_event(_bytes(event_body("evt_c", "charge.captured", {
        "id": "ch_1", "payment_intent": "pi_1", "amount_captured": 10000,
    })))
    assert env.payload == ChargeCaptured(charge_id="ch_1", intent_id="pi_1", amount_captured=10000, metadata={})

    partial = parse_event(_bytes(event_body("evt_d", "charge.refunded", {
        "id": "ch_1", "payment_intent": {"id": "pi_1"}, "amount": 10000, "amount_refunded": 2500, "refunded": False,
    })))
    assert isinstance(partial.payload, ChargeRefunded)
    assert partial.payload.intent_id == "pi_1"
    assert partial.payload.fully_refunded is False

    full = parse_event(_bytes(event_body("evt_e", "charge.refunded", {
        "id": "ch_1", "payment_intent": "pi_1", "amount": 10000, "amount_refunded": 10000,
    })))
    assert full.payload.fully_refunded is True

def test_parse_subscription_and_invoice_variants():
    env = parse_event(_bytes(event_body("evt_f", "customer.subscription.updated", {
        "id": "sub_1", "status": "past_due", "metadata": {"user_id": "3"},
    })))
    assert env.payload == SubscriptionChanged(subscription_id="sub_1", status="past_due", metadata={"user_id": "3"})

    env = parse_event(_bytes(event_body("evt_g", "customer.subscription.deleted", {"id": "sub_1"})))
    assert env.payload == SubscriptionDeleted(subscription_id="sub_1")

    # Newer API shape: subscription under parent.subscription_details
    env = parse_event(_bytes(event_body("evt_h", "invoice.paid", {
        "id": "in_1", "parent": {"subscription_details": {"subscription": "sub_9"}},
    })))
    assert env.payload == InvoiceSettled(invoice_id="in_1", subscription_id="sub_9", paid=True)

    env = parse_event(_bytes(event_body("evt_i", "invoice.payment_failed", {"id": "in_2", "subscription": "sub_9"})))
    assert env.payload.paid is False and env.payload.subscription_id == "sub_9"

def test_unknown_type_is_unhandled_not_malformed():
    env = parse_event(_bytes(event_body("evt_x", "customer.created", {"id": "cus_1"})))
    assert env.payload == UnhandledEvent("customer.created")
    assert "customer.created" not in HANDLED_TYPES

@pytest.mark.parametrize("raw", [
    b"not json",
    b"[]",
    json.dumps({"type": "charge.captured", "data": {"object": {"id": "ch_1"}}}).encode(),
    json.dumps({"id": "evt_1", "type": "charge.captured", "data": {}}).encode(),
    json.dumps({"id": "evt_1", "type": "charge.captured", "data": [{"object": {"id": "ch_1"}}]}).encode(),
    json.dumps({"id": "evt_1", "type": "charge.captured", "data": "ch_1"}).encode(),
    json.dumps({"id": "evt_1", "type": "charge.captured", "data": {"object": {"payment_intent": "pi_1"}}}).encode(),
])
def test_parse_rejects_malformed(raw):
    with pytest.raises(MalformedEvent):
        parse_event(raw)
