import pytest
from creatorhub.models import BillingCustomer, PaymentMethodCache
from creatorhub.services import payment_methods as svc
from creatorhub.services.errors import NotFound, ProcessorUnavailable
from conftest import login, make_user

@pytest.fixture()
def user(ctx):
    return make_user("cards@example.test")

def _customer(processor, user):
    return svc.ensure_customer(user, processor=processor)

def test_ensure_customer_creates_mapping_once(user, processor):
    first = _customer(processor, user)
    second = _customer(processor, user)
    assert first == second
    assert processor.count("find_or_create_customer") == 1
    assert BillingCustomer.query.filter_by(user_id=user.id).one().processor_customer_id == first

def test_list_rebuilds_masked_cache(user, processor):
    cus = _customer(processor, user)
    processor.add_card(cus, "pm_a", brand="visa", last4="4242")
    processor.add_card(cus, "pm_b", brand="mastercard", last4="4444")
    processor.default_pm[cus] = "pm_b"

    methods = svc.list_payment_methods(user, processor=processor)
    assert methods == [
        {"id": "pm_a", "brand": "visa", "last4": "4242", "expiry": svc.MASKED_EXPIRY, "is_default": False},
        {"id": "pm_b", "brand": "mastercard", "last4": "4444", "expiry": svc.MASKED_EXPIRY, "is_default": True},
    ]
    assert PaymentMethodCache.query.filter_by(user_id=user.id).count() == 2

    # Removed at the processor: next read drops it from the cache
    processor.payment_methods[cus].pop(0)
    assert [m["id"] for m in svc.list_payment_methods(user, processor=processor)] == ["pm_b"]
    assert PaymentMethodCache.query.filter_by(user_id=user.id).count() == 1

def test_list_failure_keeps_previous_cache(user, processor):
    cus = _customer(processor, user)
    processor.add_card(cus, "pm_a")
    svc.list_payment_methods(user, processor=processor)

    processor.fail["list_payment_methods"] = ProcessorUnavailable("down")
    with pytest.raises(ProcessorUnavailable):
        svc.list_payment_methods(user, processor=processor)
    assert PaymentMethodCache.query.filter_by(user_id=user.id).count() == 1

def test_set_default_and_delete_require_ownership(user, processor):
    cus = _customer(processor, user)
    processor.add_card(cus, "pm_a")
    processor.add_card(cus, "pm_b")
    processor.add_card("cus_stranger", "pm_theirs")
    svc.list_payment_methods(user, processor=processor)

    assert svc.set_default_payment_method(user, "pm_b", processor=processor) == {"id": "pm_b", "is_default": True}
    assert processor.default_pm[cus] == "pm_b"
    assert PaymentMethodCache.query.filter_by(user_id=user.id, is_default=True).one().processor_payment_method_id == "pm_b"

    with pytest.raises(NotFound):
        svc.set_default_payment_method(user, "pm_theirs", processor=processor)
    with pytest.raises(NotFound):
        svc.delete_payment_method(user, "pm_theirs", processor=processor)
    assert processor.count("detach_payment_method") == 0

    svc.delete_payment_method(user, "pm_a", processor=processor)
    assert processor.count("detach_payment_method") == 1
    assert [r.processor_payment_method_id for r in PaymentMethodCache.query.filter_by(user_id=user.id)] == ["pm_b"]

def test_routes(app, client, user, processor):
    cus = _customer(processor, user)
    processor.add_card(cus, "pm_a", last4="1111")
    login(client, user.id)

    r = client.get("/payment-methods")
    assert r.status_code == 200
    assert r.json["payment_methods"][0]["last4"] == "1111"
    assert "exp_month" not in r.json["payment_methods"][0]

    r = client.post("/payment-methods/setup-intent")
    assert r.status_code == 201 and r.json["client_secret"].startswith("seti_")

    r = client.post("/payment-methods/pm_nope/default")
    assert r.status_code == 404 and r.json["error"] == "not_found"

    r = client.delete("/payment-methods/pm_a")
    assert r.status_code == 200 and r.json == {"id": "pm_a", "deleted": True}

def test_routes_require_login(client, processor):
    r = client.get("/payment-methods")
    assert r.status_code == 401 and r.json["error"] == "unauthorized"
