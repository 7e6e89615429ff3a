from flask import request, jsonify
from flask_login import login_required, current_user
from . import bp
from creatorhub.extensions import limiter
from creatorhub.services import commissions as commission_service
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

@bp.post("")
@bp.post("/")
@limiter.limit("20/minute")
@login_required
def submit():
    data = _payload()
    request_id = commission_service.submit_commission(
        current_user,
        _int_field(data, "creator_id"),
        _int_field(data, "commission_type_id"),
        data,
    )
    return jsonify({"id": request_id, "status": "pending"}), 201

@bp.get("/<int:request_id>")
@login_required
def detail(request_id: int):
    return jsonify(commission_service.get_commission(request_id, actor=current_user))

@bp.post("/<int:request_id>/authorize")
@limiter.limit("10/minute")
@login_required
def authorize(request_id: int):
    data = _payload()
    result = commission_service.authorize_payment(
        request_id, data.get("amount"), actor=current_user, processor=get_processor()
    )
    return jsonify(result), 202

@bp.post("/<int:request_id>/decision")
@limiter.limit("10/minute")
@login_required
def decision(request_id: int):
    data = _payload()
    result = commission_service.creator_decision(
        request_id, (data.get("decision") or "").strip().lower(), actor=current_user, processor=get_processor()
    )
    return jsonify(result), 202

@bp.post("/<int:request_id>/revisions")
@limiter.limit("10/minute")
@login_required
def request_revision(request_id: int):
    data = _payload()
    result = commission_service.request_revision(
        request_id, data.get("notes"), actor=current_user, processor=get_processor()
    )
    return jsonify(result), (202 if result.get("pending_confirmation") else 201)

@bp.post("/<int:request_id>/refund")
@limiter.limit("5/minute")
@login_required
def refund(request_id: int):
    data = _payload()
    result = commission_service.refund(
        request_id, actor=current_user, processor=get_processor(), reason=data.get("reason")
    )
    return jsonify(result), 202

@bp.post("/<int:request_id>/resubmit")
@limiter.limit("10/minute")
@login_required
def resubmit(request_id: int):
    new_id = commission_service.resubmit_commission(request_id, actor=current_user)
    return jsonify({"id": new_id, "status": "pending", "resubmitted_from_id": request_id}), 201
