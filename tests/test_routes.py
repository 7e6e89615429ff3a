import pytest
from creatorhub.extensions import db
from creatorhub.models import ReconciliationMismatchLog
from creatorhub.services.reconciliation import record_mismatch
from conftest import login, make_commission_type, make_creator, make_tier, make_user

@pytest.fixture()
def people(ctx):
    buyer = make_user("buyer@example.test")
    artist = make_user("artist@example.test")
    operator = make_user("ops@example.test", is_operator=True)
    creator = make_creator(artist)
    ctype = make_commission_type(creator)
    return buyer, artist, operator, creator, ctype

def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200 and r.json == {"status": "ok"}

def test_unknown_route_is_json_404(client):
    r = client.get("/nope")
    assert r.status_code == 404 and r.json["error"] == "not_found"

def test_commission_flow_over_http(client, people, processor):
    buyer, artist, _, creator, ctype = people
    login(client, buyer.id)
    r = client.post("/commissions", json={
        "creator_id": creator.id, "commission_type_id": ctype.id, "description": "A fox",
    })
    assert r.status_code == 201
    req_id = r.json["id"]

    r = client.post(f"/commissions/{req_id}/authorize", json={"amount": "100.00"})
    assert r.status_code == 202 and r.json["pending_confirmation"] is True

    r = client.get(f"/commissions/{req_id}")
    assert r.status_code == 200 and r.json["status"] == "pending"

    login(client, artist.id)
    r = client.post(f"/commissions/{req_id}/decision", json={"decision": "accept"})
    # Funds are not authorized yet
    assert r.status_code == 409 and r.json["error"] == "invalid_state_transition"
    assert processor.count("capture") == 0

def test_commission_validation_errors(client, people, processor):
    buyer, _, _, creator, ctype = people
    login(client, buyer.id)
    r = client.post("/commissions", json={"creator_id": "x", "commission_type_id": ctype.id})
    assert r.status_code == 400 and r.json["errors"] == ["creator_id: must be an integer"]

    r = client.post("/commissions", json={
        "creator_id": creator.id, "commission_type_id": ctype.id, "description": "",
        "reference_images": ["ftp://nope"],
    })
    assert r.status_code == 400
    assert "description: required" in r.json["errors"]

def test_commission_requires_login(client):
    r = client.post("/commissions", json={})
    assert r.status_code == 401

def test_subscription_routes(client, people, processor):
    buyer, _, _, creator, _ = people
    tier = make_tier(creator)
    login(client, buyer.id)

    r = client.post("/subscriptions", json={"tier_id": tier.id, "creator_id": creator.id})
    assert r.status_code == 202 and r.json["status"] == "pending"

    r = client.get("/subscriptions")
    assert r.status_code == 200 and r.json == {"subscriptions": []}

    r = client.get(f"/subscriptions/creators/{creator.id}/entitlement")
    assert r.json == {"creator_id": creator.id, "entitled": False}

    r = client.post(f"/subscriptions/creators/{creator.id}/sync")
    assert r.status_code == 403 and r.json["error"] == "forbidden"

def test_creator_can_sync_own_tiers(client, people, processor):
    _, artist, _, creator, _ = people
    make_tier(creator)
    login(client, artist.id)
    r = client.post(f"/subscriptions/creators/{creator.id}/sync")
    assert r.status_code == 200
    assert r.json == {"creator_id": creator.id, "synced": 0, "skipped": 0, "mismatches": 0}

def test_creator_adds_tier(client, people, processor):
    buyer, artist, _, creator, _ = people
    login(client, buyer.id)
    r = client.post(f"/subscriptions/creators/{creator.id}/tiers", json={"title": "Gold", "price": "9.00"})
    assert r.status_code == 403

    login(client, artist.id)
    r = client.post(f"/subscriptions/creators/{creator.id}/tiers", json={"title": "Gold", "price": "9.00"})
    assert r.status_code == 201
    assert r.json["price"] == "9.00" and r.json["processor_price_id"].startswith("price_")

    r = client.post(f"/subscriptions/creators/{creator.id}/tiers", json={"title": "Free", "price": "0"})
    assert r.status_code == 400

def test_reconciliation_queue_operator_only(client, people, processor):
    buyer, _, operator, _, _ = people
    record_mismatch("commission", local_id=1, processor_ref="pi_1", local_state="accepted",
                    processor_state="canceled", detail="test")
    db.session.commit()

    r = client.get("/admin/reconciliation")
    assert r.status_code == 401
    login(client, buyer.id)
    r = client.get("/admin/reconciliation")
    assert r.status_code == 404

    login(client, operator.id)
    r = client.get("/admin/reconciliation?kind=commission")
    assert r.status_code == 200
    [row] = r.json["mismatches"]
    assert row["processor_ref"] == "pi_1"

    r = client.post(f"/admin/reconciliation/{row['id']}/resolve")
    assert r.status_code == 200
    assert ReconciliationMismatchLog.query.filter(ReconciliationMismatchLog.resolved_at.is_(None)).count() == 0
    assert client.get("/admin/reconciliation").json == {"mismatches": []}

def test_record_mismatch_dedupes_open_rows(ctx):
    for _ in range(2):
        record_mismatch("subscription", local_id=5, processor_ref="sub_5", local_state="active",
                        processor_state="not_active", detail="x")
        db.session.commit()
    assert ReconciliationMismatchLog.query.count() == 1
