from flask import jsonify
from flask_login import login_required, current_user
from . import bp
from creatorhub.extensions import limiter
from creatorhub.services import payment_methods as pm_service
from creatorhub.services.processor import get_processor

@bp.get("")
@bp.get("/")
@limiter.limit("30/minute")
@login_required
def index():
    methods = pm_service.list_payment_methods(current_user, processor=get_processor())
    return jsonify({"payment_methods": methods})

@bp.post("/setup-intent")
@limiter.limit("10/minute")
@login_required
def setup_intent():
    return jsonify(pm_service.create_setup_intent(current_user, processor=get_processor())), 201

@bp.post("/<pm_id>/default")
@limiter.limit("10/minute")
@login_required
def make_default(pm_id: str):
    return jsonify(pm_service.set_default_payment_method(current_user, pm_id, processor=get_processor()))

@bp.delete("/<pm_id>")
@limiter.limit("10/minute")
@login_required
def delete(pm_id: str):
    return jsonify(pm_service.delete_payment_method(current_user, pm_id, processor=get_processor()))
