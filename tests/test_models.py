from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError
from creatorhub.extensions import db
from creatorhub.models import CommissionRequest, CommissionType, UserSubscription
from creatorhub.utils.helpers import from_minor_units, to_decimal, to_minor_units, utcnow
from conftest import make_commission_type, make_creator, make_tier, make_user

@pytest.fixture()
def base(ctx):
    fan = make_user("fan@example.test")
    creator = make_creator(make_user("artist@example.test"))
    return fan, creator, make_tier(creator)

def _sub(fan, creator, tier, sub_id, status="active", **kw):
    row = UserSubscription(user_id=fan.id, creator_id=creator.id, tier_id=tier.id,
                           processor_subscription_id=sub_id, status=status, **kw)
    db.session.add(row)
    return row

def test_one_active_row_per_user_creator_tier(base):
    _sub(*base, "sub_a")
    db.session.commit()
    _sub(*base, "sub_b")
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()

def test_inactive_history_rows_allowed(base):
    _sub(*base, "sub_a", status="cancelled")
    _sub(*base, "sub_b", status="expired")
    _sub(*base, "sub_c")
    db.session.commit()
    assert UserSubscription.query.count() == 3

def test_subscription_status_check(base):
    _sub(*base, "sub_a", status="paused")
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()

def test_commission_cannot_leave_pending_without_intent(base):
    fan, creator, _ = base
    ctype = make_commission_type(creator)
    db.session.add(CommissionRequest(
        customer_id=fan.id, creator_id=creator.id, commission_type_id=ctype.id,
        description="x", reference_images=[], agreed_price=Decimal("100.00"), status="accepted",
    ))
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()

def test_commission_type_price_must_be_positive(base):
    _, creator, _ = base
    db.session.add(CommissionType(creator_id=creator.id, name="Free", base_price=Decimal("0")))
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()

def test_entitlement_respects_period_end(base):
    row = _sub(*base, "sub_a", cancel_at_period_end=True, current_period_end=utcnow() + timedelta(days=2))
    db.session.commit()
    assert row.is_entitled()
    assert not row.is_entitled(utcnow() + timedelta(days=3))
    row.cancel_at_period_end = False
    assert row.is_entitled(utcnow() + timedelta(days=3))
    row.status = "pending"
    assert not row.is_entitled()

def test_money_helpers():
    assert to_decimal("19.999") == Decimal("20.00")
    assert to_decimal("abc") is None
    assert to_minor_units(Decimal("20.00")) == 2000
    assert from_minor_units(1999) == Decimal("19.99")
