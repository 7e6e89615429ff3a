import json
from datetime import timedelta

from creatorhub.extensions import db
from creatorhub.models import UserSubscription
from creatorhub.services import ledger
from creatorhub.services.events import parse_event
from creatorhub.utils.helpers import utcnow
from conftest import event_body, make_creator, make_tier, make_user

def test_ledger_show(app, ctx):
    runner = app.test_cli_runner()
    r = runner.invoke(args=["ledger", "show", "--event-id", "evt_missing"])
    assert r.exit_code != 0 and "Event not in ledger" in r.output

    env = parse_event(event_body("evt_1", "charge.captured", {"id": "ch_1"}).encode())
    ledger.apply_once(env, lambda e: "noted")
    r = runner.invoke(args=["ledger", "show", "--event-id", "evt_1"])
    assert r.exit_code == 0
    out = json.loads(r.output)
    assert out["event_id"] == "evt_1" and out["notes"] == "noted"

def test_subscriptions_expire(app, ctx):
    fan = make_user("fan@example.test")
    creator = make_creator(make_user("artist@example.test"))
    tier = make_tier(creator)
    db.session.add(UserSubscription(
        user_id=fan.id, creator_id=creator.id, tier_id=tier.id, processor_subscription_id="sub_1",
        status="active", cancel_at_period_end=True, current_period_end=utcnow() - timedelta(days=1),
    ))
    db.session.commit()

    r = app.test_cli_runner().invoke(args=["subscriptions", "expire"])
    assert r.exit_code == 0 and "Expired 1 subscription(s)" in r.output

def test_subscriptions_sync_unknown_creator(app, ctx, processor):
    r = app.test_cli_runner().invoke(args=["subscriptions", "sync", "--creator-id", "999"])
    assert r.exit_code != 0 and "not_found" in r.output

def test_commissions_reconcile_unknown_request(app, ctx, processor):
    r = app.test_cli_runner().invoke(args=["commissions", "reconcile", "--request-id", "999"])
    assert r.exit_code != 0 and "not_found" in r.output
