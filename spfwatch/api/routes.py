"""
API blueprint routes.

Provides JSON endpoints for SPF record analysis, include flattening,
ESP stability ratings, change monitoring and flattening history.

The owning user is identified by the ``X-User-Id`` header set by the
fronting application.  Requests without it get a JSON 401.
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
from functools import wraps
from typing import Any

from flask import current_app, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from spfwatch.api import bp
from spfwatch.models import FlatteningOperation
from spfwatch.spf.history import approve_operation, list_operations, revert_operation
from spfwatch.spf.macros import preview_expansion
from spfwatch.spf.monitor import InvalidSpfRecordError
from spfwatch.spf.parser import is_valid_domain, parse_spf_string
from spfwatch.spf.service import SpfService
from spfwatch.spf.types import FlatteningOptions, MacroContext
from spfwatch.utils.rate_limit import is_rate_limited

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _user_required(f):
    """Decorator that returns JSON 401 when no owning user is supplied."""

    @wraps(f)
    def decorated(*args, **kwargs):
        user_id = (request.headers.get("X-User-Id") or "").strip()
        if not user_id:
            return jsonify({"error": "Authentication required"}), 401
        g.user_id = user_id
        return f(*args, **kwargs)

    return decorated


def _service() -> SpfService:
    return SpfService(g.user_id)


def _bad_domain(domain: str):
    if not is_valid_domain(domain) or "." not in domain.strip("."):
        return jsonify({"error": f"Invalid domain: {domain}"}), 400
    return None


def _to_json(value: Any) -> Any:
    """Convert dataclass output (tuples, datetimes) into JSON-ready values."""
    if isinstance(value, dict):
        return {k: _to_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _record_json(record) -> dict[str, Any]:
    data = _to_json(asdict(record))
    data["mechanisms"] = [
        {**m, "lookup_cost": mech.lookup_cost, "text": str(mech)}
        for m, mech in zip(data["mechanisms"], record.mechanisms)
    ]
    data["modifier_lookups"] = record.modifier_lookups
    data["effective_lookups"] = record.effective_lookups
    return data


def _operation_json(op: FlatteningOperation) -> dict[str, Any]:
    return {
        "id": op.id,
        "domain": op.domain,
        "trigger_type": op.trigger_type,
        "status": op.status,
        "original_record": op.original_record,
        "original_lookup_count": op.original_lookup_count,
        "flattened_record": op.flattened_record,
        "new_lookup_count": op.new_lookup_count,
        "target_includes": op.get_target_includes(),
        "ip_count": op.ip_count,
        "warnings": op.get_warnings(),
        "errors": op.get_errors(),
        "rollback_plan": op.get_rollback_plan(),
        "created_at": op.created_at.isoformat() if op.created_at else None,
        "completed_at": op.completed_at.isoformat() if op.completed_at else None,
        "reverted_at": op.reverted_at.isoformat() if op.reverted_at else None,
    }


# ---------------------------------------------------------------------------
# Public endpoint
# ---------------------------------------------------------------------------


@bp.route("/health")
def health():
    """Public health-check endpoint -- no authentication required."""
    return jsonify(
        {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": "SPF Watch",
        }
    )


# ---------------------------------------------------------------------------
# SPF analysis and flattening
# ---------------------------------------------------------------------------


@bp.route("/spf/<domain>")
@_user_required
def spf_record(domain: str):
    """Return the parsed SPF record of *domain*."""
    error = _bad_domain(domain)
    if error:
        return error
    return jsonify(_record_json(_service().parse_spf_record(domain)))


@bp.route("/spf/<domain>/analysis")
@_user_required
def spf_analysis(domain: str):
    """Return the record with optimisation suggestions and risk assessment."""
    error = _bad_domain(domain)
    if error:
        return error
    analysis = _service().analyze(domain)
    data = _to_json(asdict(analysis))
    data["record"] = _record_json(analysis.record)
    data["breakdown"]["total"] = analysis.breakdown.total
    if analysis.macros is not None:
        data["macros"]["readability_score"] = analysis.macros.readability_score
    return jsonify(data)


@bp.route("/spf/<domain>/flatten", methods=["POST"])
@_user_required
def spf_flatten(domain: str):
    """Flatten selected includes of *domain*'s record.

    Request body (JSON):
        includes: list of include domains to flatten (required)
        record:   SPF text to flatten instead of the published record
        options:  FlatteningOptions fields
        save:     store the run in the flattening history (default true)
    """
    error = _bad_domain(domain)
    if error:
        return error

    payload = request.get_json(silent=True) or {}
    includes = payload.get("includes")
    if not isinstance(includes, list) or not includes:
        return jsonify({"error": "'includes' must be a non-empty list"}), 400
    try:
        options = FlatteningOptions.from_dict(payload.get("options"))
    except (TypeError, ValueError) as exc:
        return jsonify({"error": f"Invalid options: {exc}"}), 400

    service = _service()
    if payload.get("record"):
        record = parse_spf_string(payload["record"], domain)
    else:
        record = service.parse_spf_record(domain)
    if not record.raw:
        return jsonify({"error": "No SPF record to flatten", "errors": list(record.errors)}), 422

    try:
        result = service.flatten(
            record, [str(i) for i in includes], options, persist=bool(payload.get("save", True)),
        )
    except SQLAlchemyError:
        current_app.logger.exception("Failed to store flattening operation for %s", domain)
        return jsonify({"error": "Flattening succeeded but could not be saved"}), 500

    return jsonify(_to_json(asdict(result)))


@bp.route("/esp/<include_domain>")
@_user_required
def esp_rating(include_domain: str):
    """Return the ESP stability profile of an include domain."""
    error = _bad_domain(include_domain)
    if error:
        return error
    profile = _service().get_esp_stability_rating(include_domain)
    return jsonify(_to_json(asdict(profile)))


@bp.route("/macros/expand", methods=["POST"])
@_user_required
def macro_expand():
    """Expand an SPF macro-string for a sample message.

    Request body (JSON):
        text:        the macro-string, e.g. ``%{ir}.%{v}._spf.%{d}`` (required)
        context:     MacroContext fields (sender_ip, sender, domain, helo, ...)
        explanation: allow the c, r and t letters of explanation text
    """
    payload = request.get_json(silent=True) or {}
    text = payload.get("text")
    if not isinstance(text, str) or not text.strip():
        return jsonify({"error": "'text' must be a non-empty string"}), 400
    try:
        context = MacroContext.from_dict(payload.get("context"))
    except (TypeError, ValueError) as exc:
        return jsonify({"error": f"Invalid context: {exc}"}), 400

    preview = preview_expansion(text.strip(), context, explanation=bool(payload.get("explanation")))
    return jsonify(_to_json(asdict(preview)))


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------


@bp.route("/spf/<domain>/check", methods=["POST"])
@_user_required
def spf_check(domain: str):
    """Run a monitoring check of *domain* now (rate-limited per user and domain)."""
    error = _bad_domain(domain)
    if error:
        return error

    window = current_app.config.get("SPF_CHECK_RATE_LIMIT_SECONDS", 60)
    if is_rate_limited(g.user_id, domain.lower(), window):
        return jsonify({"error": "Please wait before checking this domain again"}), 429

    try:
        result = _service().check_domain(domain)
    except InvalidSpfRecordError as exc:
        return jsonify({"error": str(exc), "errors": exc.errors}), 422

    data = _to_json(asdict(result))
    data["auto_update_eligible"] = result.auto_update_eligible
    return jsonify(data)


# ---------------------------------------------------------------------------
# Flattening history
# ---------------------------------------------------------------------------


@bp.route("/flattening")
@_user_required
def flattening_history():
    """Return the user's flattening operations, newest first."""
    domain = request.args.get("domain")
    limit = min(request.args.get("limit", current_app.config.get("ITEMS_PER_PAGE", 25), type=int), 100)
    operations = list_operations(g.user_id, domain)[:limit]
    return jsonify([_operation_json(op) for op in operations])


@bp.route("/flattening/<int:operation_id>/approve", methods=["POST"])
@_user_required
def flattening_approve(operation_id: int):
    try:
        operation = approve_operation(g.user_id, operation_id)
    except LookupError:
        return jsonify({"error": "Operation not found"}), 404
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 409
    return jsonify(_operation_json(operation))


@bp.route("/flattening/<int:operation_id>/revert", methods=["POST"])
@_user_required
def flattening_revert(operation_id: int):
    try:
        original = revert_operation(g.user_id, operation_id)
    except LookupError:
        return jsonify({"error": "Operation not found"}), 404
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 409
    return jsonify({"id": operation_id, "status": "reverted", "original_record": original})
