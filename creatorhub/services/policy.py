from functools import wraps
from flask import jsonify
from flask_login import current_user

_ERRORS = {401: "unauthorized", 403: "forbidden", 404: "not_found"}

def operator_required(fn):
    """Operator-only views (reconciliation queue)."""
    @wraps(fn)
    def _wrap(*args, **kwargs):
        if not current_user.is_authenticated:
            return _abort_smart(401)
        if not getattr(current_user, "is_operator", False):
            return _abort_smart(404)  # anti-enumeration
        return fn(*args, **kwargs)
    return _wrap

def _abort_smart(code: int):
    # JSON-only surface; keep the same shape as the login_manager handler
    return jsonify({"error": _ERRORS[code], "code": code}), code
