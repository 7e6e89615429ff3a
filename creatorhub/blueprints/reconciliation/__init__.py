from flask import Blueprint

bp = Blueprint("reconciliation", __name__)

from . import routes  # noqa: E402,F401
