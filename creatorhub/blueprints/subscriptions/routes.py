from flask import request, jsonify
from flask_login import login_required, current_user
from . import bp
from creatorhub.extensions import limiter
from creatorhub.services import subscriptions as subscription_service
from creatorhub.services.errors import ValidationFailed
from creatorhub.services.processor import get_processor

def _payload() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationFailed(["body: must be a JSON object"])
    return data

def _int_field(data: dict, name: str) -> int:
    try:
        return int(data.get(name))
    except (TypeError, ValueError):
        raise ValidationFailed([f"{name}: must be an integer"]) from None

@bp.get("")
@bp.get("/")
@login_required
def mine():
    return jsonify({"subscriptions": subscription_service.list_user_subscriptions(current_user.id)})

@bp.post("")
@bp.post("/")
@limiter.limit("10/minute")
@login_required
def create():
    data = _payload()
    result = subscription_service.create_subscription(
        current_user, _int_field(data, "tier_id"), _int_field(data, "creator_id"), processor=get_processor()
    )
    return jsonify(result), 202

@bp.post("/<int:subscription_id>/cancel")
@limiter.limit("10/minute")
@login_required
def cancel(subscription_id: int):
    data = _payload()
    result = subscription_service.cancel_subscription(
        subscription_id, actor=current_user, processor=get_processor(), immediately=bool(data.get("immediately"))
    )
    return jsonify(result)

@bp.post("/<int:subscription_id>/change-tier")
@limiter.limit("10/minute")
@login_required
def change_tier(subscription_id: int):
    data = _payload()
    result = subscription_service.change_tier(
        subscription_id, _int_field(data, "tier_id"), actor=current_user, processor=get_processor()
    )
    return jsonify(result)

@bp.post("/<int:subscription_id>/reactivate")
@limiter.limit("10/minute")
@login_required
def reactivate(subscription_id: int):
    result = subscription_service.reactivate_subscription(
        subscription_id, actor=current_user, processor=get_processor()
    )
    return jsonify(result)

@bp.get("/creators/<int:creator_id>/subscribers")
@login_required
def subscribers(creator_id: int):
    rows = subscription_service.list_creator_subscribers(creator_id, actor=current_user)
    return jsonify({"creator_id": creator_id, "subscribers": rows})

@bp.post("/creators/<int:creator_id>/sync")
@limiter.limit("5/minute")
@login_required
def sync(creator_id: int):
    subscription_service.require_creator_owner(creator_id, current_user)
    result = subscription_service.sync_tier_subscriptions(creator_id, processor=get_processor())
    return jsonify(result.to_dict())

@bp.get("/creators/<int:creator_id>/entitlement")
@login_required
def entitlement(creator_id: int):
    entitled = subscription_service.is_entitled(current_user.id, creator_id)
    return jsonify({"creator_id": creator_id, "entitled": entitled})

@bp.delete("/tiers/<int:tier_id>")
@limiter.limit("10/minute")
@login_required
def delete_tier(tier_id: int):
    return jsonify(subscription_service.delete_tier(tier_id, actor=current_user, processor=get_processor()))

@bp.post("/creators/<int:creator_id>/tiers")
@limiter.limit("10/minute")
@login_required
def create_tier(creator_id: int):
    data = _payload()
    result = subscription_service.create_tier(
        creator_id, data.get("title"), data.get("price"), actor=current_user, processor=get_processor()
    )
    return jsonify(result), 201
