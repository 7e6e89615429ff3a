from flask import Blueprint

bp = Blueprint("commissions", __name__)

from . import routes  # noqa: E402,F401
