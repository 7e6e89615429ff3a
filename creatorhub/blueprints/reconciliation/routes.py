from flask import request, jsonify
from . import bp
from creatorhub.services import commissions as commission_service
from creatorhub.services import reconciliation as reconciliation_service
from creatorhub.services.policy import operator_required
from creatorhub.services.processor import get_processor

@bp.get("")
@bp.get("/")
@operator_required
def index():
    kind = (request.args.get("kind") or "").strip() or None
    rows = reconciliation_service.list_open_mismatches(kind=kind)
    return jsonify({"mismatches": [r.to_dict() for r in rows]})

@bp.post("/<int:mismatch_id>/resolve")
@operator_required
def resolve(mismatch_id: int):
    row = reconciliation_service.resolve_mismatch(mismatch_id)
    return jsonify(row.to_dict())

@bp.post("/commissions/<int:request_id>")
@operator_required
def reconcile_commission(request_id: int):
    return jsonify(commission_service.reconcile_commission(request_id, processor=get_processor()))
