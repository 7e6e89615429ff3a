from flask import Blueprint

bp = Blueprint("payment_methods", __name__)

from . import routes  # noqa: E402,F401
