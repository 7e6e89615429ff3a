import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

import hashlib
import hmac
import itertools
import json
import time
from decimal import Decimal

import pytest
from flask import g, has_app_context
from creatorhub import create_app
from creatorhub.extensions import db
from creatorhub.models import CommissionType, Creator, MembershipTier, User
from creatorhub.services.errors import PaymentError

WEBHOOK_SECRET = "whsec_test_x"

class FakeProcessor:
    """
    In-memory stand-in for StripeProcessor. Returns plain dicts shaped like
    the processor's, records every call, and replays the same object for a
    repeated idempotency key.
    """
    def __init__(self):
        self.calls = []
        self.fail = {}           # method name -> PaymentError instance to raise
        self.intents = {}
        self.subscriptions = {}
        self.customers = {}
        self.payment_methods = {}  # customer id -> list of pm dicts
        self.default_pm = {}
        self._by_key = {}
        self._seq = itertools.count(1)

    def _next(self, prefix):
        return f"{prefix}_{next(self._seq)}"

    def _record(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        err = self.fail.get(name)
        if err is not None:
            raise err

    def count(self, name):
        return sum(1 for c in self.calls if c[0] == name)

    # ---- payment intents ----

    def _create_intent(self, name, amount_minor, metadata, idempotency_key, capture_method):
        if idempotency_key in self._by_key:
            return dict(self._by_key[idempotency_key])
        intent_id = self._next("pi")
        intent = {
            "id": intent_id,
            "object": "payment_intent",
            "amount": amount_minor,
            "capture_method": capture_method,
            "status": "requires_payment_method",
            "client_secret": f"{intent_id}_secret",
            "metadata": dict(metadata),
        }
        self.intents[intent_id] = intent
        self._by_key[idempotency_key] = intent
        return dict(intent)

    def authorize(self, amount_minor, *, customer_id, metadata, idempotency_key, description=None):
        self._record("authorize", amount_minor, customer_id=customer_id, metadata=metadata,
                     idempotency_key=idempotency_key)
        return self._create_intent("authorize", amount_minor, metadata, idempotency_key, "manual")

    def charge(self, amount_minor, *, customer_id, metadata, idempotency_key, description=None):
        self._record("charge", amount_minor, customer_id=customer_id, metadata=metadata,
                     idempotency_key=idempotency_key)
        return self._create_intent("charge", amount_minor, metadata, idempotency_key, "automatic")

    def retrieve_payment_intent(self, intent_id):
        self._record("retrieve_payment_intent", intent_id)
        return dict(self.intents[intent_id])

    def capture(self, intent_id, *, idempotency_key):
        self._record("capture", intent_id, idempotency_key=idempotency_key)
        self.intents[intent_id]["status"] = "succeeded"
        return dict(self.intents[intent_id])

    def cancel(self, intent_id, *, idempotency_key):
        self._record("cancel", intent_id, idempotency_key=idempotency_key)
        self.intents[intent_id]["status"] = "canceled"
        return dict(self.intents[intent_id])

    def refund(self, intent_id, *, idempotency_key, reason=None):
        self._record("refund", intent_id, idempotency_key=idempotency_key, reason=reason)
        return {"id": self._next("re"), "payment_intent": intent_id, "status": "succeeded"}

    # ---- customers ----

    def find_or_create_customer(self, email, *, user_id):
        self._record("find_or_create_customer", email, user_id=user_id)
        for cus in self.customers.values():
            if cus.get("email") == email:
                return dict(cus)
        cus_id = self._next("cus")
        self.customers[cus_id] = {"id": cus_id, "email": email, "invoice_settings": {}}
        return dict(self.customers[cus_id])

    def retrieve_customer(self, customer_id):
        self._record("retrieve_customer", customer_id)
        cus = dict(self.customers.get(customer_id) or {"id": customer_id, "deleted": True})
        cus["invoice_settings"] = {"default_payment_method": self.default_pm.get(customer_id)}
        return cus

    def set_default_payment_method(self, customer_id, payment_method_id):
        self._record("set_default_payment_method", customer_id, payment_method_id)
        self.default_pm[customer_id] = payment_method_id
        return self.retrieve_customer(customer_id)

    # ---- subscriptions ----

    def add_subscription(self, sub_id, *, customer, price_id, status="active", period_end=None,
                         cancel_at_period_end=False, metadata=None):
        now = int(time.time())
        self.subscriptions[sub_id] = {
            "id": sub_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "cancel_at_period_end": cancel_at_period_end,
            "metadata": dict(metadata or {}),
            "items": {"data": [{
                "id": f"si_{sub_id}",
                "price": {"id": price_id},
                "current_period_start": now - 86400,
                "current_period_end": period_end or now + 30 * 86400,
            }]},
        }
        return self.subscriptions[sub_id]

    def create_subscription(self, customer_id, price_id, *, metadata, idempotency_key):
        self._record("create_subscription", customer_id, price_id, metadata=metadata,
                     idempotency_key=idempotency_key)
        if idempotency_key in self._by_key:
            return dict(self._by_key[idempotency_key])
        sub = self.add_subscription(self._next("sub"), customer=customer_id, price_id=price_id,
                                    status="incomplete", metadata=metadata)
        out = dict(sub, latest_invoice={"id": self._next("in"),
                                        "confirmation_secret": {"client_secret": f"{sub['id']}_secret"}})
        self._by_key[idempotency_key] = out
        return dict(out)

    def retrieve_subscription(self, subscription_id):
        self._record("retrieve_subscription", subscription_id)
        return json.loads(json.dumps(self.subscriptions[subscription_id]))

    def update_subscription_price(self, subscription_id, item_id, price_id, *, idempotency_key, metadata=None):
        self._record("update_subscription_price", subscription_id, item_id, price_id,
                     idempotency_key=idempotency_key)
        sub = self.subscriptions[subscription_id]
        sub["items"]["data"][0]["price"] = {"id": price_id}
        sub["cancel_at_period_end"] = False
        if metadata:
            sub["metadata"] = dict(metadata)
        return self.retrieve_subscription(subscription_id)

    def set_cancel_at_period_end(self, subscription_id, flag):
        self._record("set_cancel_at_period_end", subscription_id, flag)
        self.subscriptions[subscription_id]["cancel_at_period_end"] = bool(flag)
        return self.retrieve_subscription(subscription_id)

    def cancel_subscription(self, subscription_id):
        self._record("cancel_subscription", subscription_id)
        self.subscriptions[subscription_id]["status"] = "canceled"
        return self.retrieve_subscription(subscription_id)

    def list_subscriptions(self, price_id):
        self._record("list_subscriptions", price_id)
        return [
            json.loads(json.dumps(s)) for s in self.subscriptions.values()
            if s["items"]["data"][0]["price"]["id"] == price_id
        ]

    # ---- payment methods ----

    def add_card(self, customer_id, pm_id, brand="visa", last4="4242"):
        self.payment_methods.setdefault(customer_id, []).append({
            "id": pm_id,
            "type": "card",
            "card": {"brand": brand, "last4": last4, "exp_month": 12, "exp_year": 2030, "fingerprint": "fp_x"},
        })

    def list_payment_methods(self, customer_id):
        self._record("list_payment_methods", customer_id)
        return [dict(pm) for pm in self.payment_methods.get(customer_id, [])]

    def detach_payment_method(self, payment_method_id):
        self._record("detach_payment_method", payment_method_id)
        for cards in self.payment_methods.values():
            cards[:] = [pm for pm in cards if pm["id"] != payment_method_id]
        return {"id": payment_method_id, "customer": None}

    def create_setup_intent(self, customer_id):
        self._record("create_setup_intent", customer_id)
        seti = self._next("seti")
        return {"id": seti, "client_secret": f"{seti}_secret", "customer": customer_id}

    # ---- catalog ----

    def create_price(self, amount_minor, *, product_name, metadata, idempotency_key):
        self._record("create_price", amount_minor, product_name=product_name)
        return {"id": self._next("price"), "product": self._next("prod"), "unit_amount": amount_minor}

    def archive_price(self, price_id):
        self._record("archive_price", price_id)
        return {"id": price_id, "active": False}


@pytest.fixture(scope="session")
def app():
    app = create_app()
    app.config.update(
        TESTING=True,
        WTF_CSRF_ENABLED=False,
        RATELIMIT_ENABLED=False,
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()

@pytest.fixture()
def client(app):
    return app.test_client()

@pytest.fixture()
def processor(app):
    fake = FakeProcessor()
    real = app.extensions.get("processor")
    app.extensions["processor"] = fake
    yield fake
    app.extensions["processor"] = real

@pytest.fixture()
def ctx(app):
    with app.app_context():
        yield

@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()


# ---- helpers ----

def login(client, user_id):
    with client.session_transaction() as sess:
        sess["_user_id"] = str(user_id)
        sess["_fresh"] = True
    # Requests reuse a pushed app context, where Flask-Login caches the user on g
    if has_app_context():
        g.pop("_login_user", None)

def sign(payload, secret=WEBHOOK_SECRET, timestamp=None):
    """Stripe-Signature header value for ``payload`` (str)."""
    ts = int(timestamp if timestamp is not None else time.time())
    mac = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"

def event_body(event_id, ev_type, obj):
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": ev_type,
        "created": int(time.time()),
        "data": {"object": obj},
    })

def make_user(email, **kw):
    user = User(email=email, **kw)
    db.session.add(user)
    db.session.commit()
    return user

def make_creator(user, name="Studio"):
    creator = Creator(user_id=user.id, display_name=name)
    db.session.add(creator)
    db.session.commit()
    return creator

def make_commission_type(creator, base_price="100.00", max_revisions=2, price_per_revision="20.00"):
    ctype = CommissionType(
        creator_id=creator.id,
        name="Portrait",
        base_price=Decimal(base_price),
        max_revisions=max_revisions,
        price_per_revision=Decimal(price_per_revision) if price_per_revision is not None else None,
    )
    db.session.add(ctype)
    db.session.commit()
    return ctype

def make_tier(creator, title="Gold", price="5.00", price_id="price_gold"):
    tier = MembershipTier(creator_id=creator.id, title=title, price=Decimal(price), processor_price_id=price_id)
    db.session.add(tier)
    db.session.commit()
    return tier

def raise_on(processor, method, error: PaymentError):
    processor.fail[method] = error

def reload(model, pk):
    """Fresh read past any conditional UPDATE the identity map has not seen."""
    db.session.expire_all()
    return db.session.get(model, pk)
