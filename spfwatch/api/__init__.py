"""API blueprint - JSON endpoints for SPF analysis, flattening and monitoring."""

from __future__ import annotations

from flask import Blueprint

bp: Blueprint = Blueprint("api", __name__, url_prefix="/api/v1")

from spfwatch.api import routes  # noqa: E402, F401
