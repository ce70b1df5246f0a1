"""
Validation Blueprint.

Runs the rule engine against stored cases and manages rule definitions.

Endpoints:
    POST   /api/v1/cases/<case_id>/validation/run
    GET    /api/v1/cases/<case_id>/validation
    POST   /api/v1/cases/<case_id>/validation/acknowledge
           Body: { "result_ids": [1, 2], "notes": "..." }

    GET    /api/v1/validation/rules
           Query params: rule_type, severity, field_path, is_system, is_active, search
    POST   /api/v1/validation/rules                 (system.configure)
    GET    /api/v1/validation/rules/<rule_id>
    PUT    /api/v1/validation/rules/<rule_id>       (system.configure)
    DELETE /api/v1/validation/rules/<rule_id>       (system.configure)
    POST   /api/v1/validation/rules/<rule_id>/toggle (system.configure)
           Body: { "is_active": true }
    POST   /api/v1/validation/rules/test
           Body: { "rule": {...}, "sample_data": {...} }
    GET    /api/v1/validation/statistics

Layer contract:
    - Blueprint: parse input, call ValidationEngineService, return JSON.
    - Rule errors surface as ValidationError (422), ConflictError (409)
      and NotFoundError (404) through the shared handlers.
"""

import logging

from flask import Blueprint, g, jsonify, request

from icsr.auth import require_actor, require_permission
from icsr.blueprints import json_body, parse_bool, register_error_handlers
from icsr.models.auth import SYSTEM_CONFIGURE
from icsr.models.case import Case
from icsr.services.validation_engine import ValidationEngineService
from icsr.utils.errors import E, api_error
from icsr.utils.helpers import get_or_404

logger = logging.getLogger(__name__)

validation_bp = Blueprint("validation", __name__, url_prefix="/api/v1")
register_error_handlers(validation_bp)


# ── Case validation ──────────────────────────────────────────────────────────


@validation_bp.route("/cases/<case_id>/validation/run", methods=["POST"])
@require_actor
def run_validation(case_id):
    case, err = get_or_404(Case, case_id)
    if err:
        return err
    summary = ValidationEngineService().run_validation(case.to_snapshot(), validated_by=g.actor)
    return jsonify(summary.to_dict())


@validation_bp.route("/cases/<case_id>/validation", methods=["GET"])
@require_actor
def get_validation(case_id):
    return jsonify(ValidationEngineService().get_validation_results(case_id).to_dict())


@validation_bp.route("/cases/<case_id>/validation/acknowledge", methods=["POST"])
@require_actor
def acknowledge(case_id):
    data = json_body()
    result_ids = data.get("result_ids")
    if not isinstance(result_ids, list) or not result_ids:
        return api_error(E.VALIDATION_REQUIRED, "result_ids must be a non-empty list")
    count = ValidationEngineService().acknowledge_warnings(
        case_id, result_ids, notes=data.get("notes"), acknowledged_by=g.actor,
    )
    return jsonify({"acknowledged": count})


# ── Rules ────────────────────────────────────────────────────────────────────


@validation_bp.route("/validation/rules", methods=["GET"])
@require_actor
def list_rules():
    rules = ValidationEngineService().get_rules(
        rule_type=request.args.get("rule_type"),
        severity=request.args.get("severity"),
        field_path=request.args.get("field_path"),
        is_system=parse_bool(request.args.get("is_system")),
        is_active=parse_bool(request.args.get("is_active")),
        search=request.args.get("search"),
    )
    return jsonify([r.to_dict() for r in rules])


@validation_bp.route("/validation/rules", methods=["POST"])
@require_actor
@require_permission(SYSTEM_CONFIGURE)
def create_rule():
    rule = ValidationEngineService().create_rule(json_body(), created_by=g.actor)
    return jsonify(rule.to_dict()), 201


@validation_bp.route("/validation/rules/test", methods=["POST"])
@require_actor
def test_rule():
    data = json_body()
    rule = data.get("rule")
    if not isinstance(rule, dict):
        return api_error(E.VALIDATION_REQUIRED, "rule is required")
    sample = data.get("sample_data") if isinstance(data.get("sample_data"), dict) else {}
    return jsonify(ValidationEngineService().test_rule(rule, sample).to_dict())


@validation_bp.route("/validation/rules/<int:rule_id>", methods=["GET"])
@require_actor
def get_rule(rule_id):
    rule = ValidationEngineService().get_rule(rule_id)
    if rule is None:
        return api_error(E.NOT_FOUND, "ValidationRule not found")
    return jsonify(rule.to_dict())


@validation_bp.route("/validation/rules/<int:rule_id>", methods=["PUT"])
@require_actor
@require_permission(SYSTEM_CONFIGURE)
def update_rule(rule_id):
    rule = ValidationEngineService().update_rule(rule_id, json_body(), updated_by=g.actor)
    return jsonify(rule.to_dict())


@validation_bp.route("/validation/rules/<int:rule_id>", methods=["DELETE"])
@require_actor
@require_permission(SYSTEM_CONFIGURE)
def delete_rule(rule_id):
    ValidationEngineService().delete_rule(rule_id, deleted_by=g.actor)
    return jsonify({"deleted": True})


@validation_bp.route("/validation/rules/<int:rule_id>/toggle", methods=["POST"])
@require_actor
@require_permission(SYSTEM_CONFIGURE)
def toggle_rule(rule_id):
    data = json_body()
    if "is_active" not in data:
        return api_error(E.VALIDATION_REQUIRED, "is_active is required")
    rule = ValidationEngineService().toggle_rule(rule_id, bool(data["is_active"]), toggled_by=g.actor)
    return jsonify(rule.to_dict())


@validation_bp.route("/validation/statistics", methods=["GET"])
@require_actor
def statistics():
    return jsonify(ValidationEngineService().get_validation_statistics())
