import types

import pytest
import stripe
from creatorhub.services import processor as proc_mod
from creatorhub.services.errors import (
    InvalidStateTransition,
    NotFound,
    PaymentSetupError,
    ProcessorRejected,
    ProcessorUnavailable,
)
from creatorhub.services.processor import StripeProcessor, make_idempotency_key, object_id

class _Recorder:
    """Stands in for one StripeClient service (payment_intents, refunds...)."""
    def __init__(self, result=None, error=None):
        self.result, self.error, self.calls = result, error, []

    def __getattr__(self, name):
        def _call(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            if self.error is not None:
                raise self.error
            return self.result
        return _call

def _processor(**services):
    p = StripeProcessor("sk_test_x", timeout=3, currency="eur")
    p._client = types.SimpleNamespace(**services)
    return p

def test_idempotency_key_stable_and_distinct():
    assert make_idempotency_key("commission-auth", 1, "") == make_idempotency_key("commission-auth", 1, "")
    assert make_idempotency_key("commission-auth", 1, "") != make_idempotency_key("commission-auth", 2, "")
    assert make_idempotency_key("x").startswith("ch:")

def test_object_id_accepts_ids_and_expanded_objects():
    assert object_id("pi_1") == "pi_1"
    assert object_id({"id": "pi_2"}) == "pi_2"
    assert object_id(None) is None and object_id("") is None

def test_authorize_is_manual_capture_with_keyed_params():
    intents = _Recorder(result={"id": "pi_1", "status": "requires_payment_method"})
    p = _processor(payment_intents=intents)
    out = p.authorize(10000, customer_id="cus_1", metadata={"a": "1"}, idempotency_key="ch:abc")

    assert out["id"] == "pi_1"
    name, _, kwargs = intents.calls[0]
    assert name == "create"
    assert kwargs["params"]["capture_method"] == "manual"
    assert kwargs["params"]["currency"] == "eur"
    assert kwargs["params"]["customer"] == "cus_1"
    assert kwargs["options"]["idempotency_key"].startswith("ch:abc:")

def test_charge_key_changes_with_amount():
    intents = _Recorder(result={"id": "pi_1"})
    p = _processor(payment_intents=intents)
    p.charge(2000, customer_id=None, metadata={}, idempotency_key="ch:k")
    p.charge(2500, customer_id=None, metadata={}, idempotency_key="ch:k")
    keys = [c[2]["options"]["idempotency_key"] for c in intents.calls]
    assert keys[0] != keys[1]
    assert "capture_method" not in intents.calls[0][2]["params"]

@pytest.mark.parametrize("error,expected", [
    (stripe.APIConnectionError("network down"), ProcessorUnavailable),
    (stripe.RateLimitError("slow down"), ProcessorUnavailable),
    (stripe.APIError("boom", http_status=500), ProcessorUnavailable),
    (stripe.CardError("declined", None, "card_declined"), PaymentSetupError),
    (stripe.InvalidRequestError("state", None, code="payment_intent_unexpected_state"), InvalidStateTransition),
    (stripe.InvalidRequestError("captured", None, code="charge_already_captured"), InvalidStateTransition),
    (stripe.InvalidRequestError("missing", None, code="resource_missing"), NotFound),
    (stripe.InvalidRequestError("bad", "amount", code="parameter_invalid_integer"), ProcessorRejected),
    (stripe.AuthenticationError("bad key", http_status=401), ProcessorRejected),
])
def test_errors_map_onto_taxonomy(error, expected):
    p = _processor(payment_intents=_Recorder(error=error))
    with pytest.raises(expected) as exc:
        p.capture("pi_1", idempotency_key="ch:cap")
    # Raw processor text stays out of the client-facing message
    assert exc.value.to_dict()["message"] == expected.user_message
    assert exc.value.__cause__ is error

def test_refund_sends_reason_as_metadata():
    refunds = _Recorder(result={"id": "re_1"})
    p = _processor(refunds=refunds)
    p.refund("pi_1", idempotency_key="ch:r", reason="client asked")
    params = refunds.calls[0][2]["params"]
    assert params["payment_intent"] == "pi_1"
    assert params["metadata"] == {"refund_reason": "client asked"}

def test_missing_key_refused():
    with pytest.raises(RuntimeError):
        StripeProcessor("")

def test_get_processor_reads_app_extension(app, processor):
    with app.app_context():
        assert proc_mod.get_processor() is processor
