"""
Case Workflow Blueprint.

HTTP surface over ``WorkflowService``: status queries, transitions,
assignments, comments, notes, history, work queues and due dates.

Every route requires an ``X-User-Id`` header (see ``icsr.auth``).

Endpoints:
    GET    /api/v1/workflow/statuses
    GET    /api/v1/cases/<case_id>/workflow
    GET    /api/v1/cases/<case_id>/workflow/actions
    POST   /api/v1/cases/<case_id>/workflow/transition
           Body: { "to_status": "...", "comment": "...", "assign_to": "<user id>",
                   "signature": { "password": "...", "meaning": "..." } }
           Returns: 200 { success, case } or the failure reason with a 4xx.

    GET    /api/v1/cases/<case_id>/assignments
    GET    /api/v1/cases/<case_id>/assignments/current
    POST   /api/v1/cases/<case_id>/assignments
    POST   /api/v1/cases/<case_id>/assignments/reassign
    GET    /api/v1/cases/<case_id>/comments
    POST   /api/v1/cases/<case_id>/comments
    GET    /api/v1/cases/<case_id>/notes
    POST   /api/v1/cases/<case_id>/notes
    POST   /api/v1/notes/<note_id>/resolve
    GET    /api/v1/cases/<case_id>/history
    GET    /api/v1/cases/<case_id>/due-date
    GET    /api/v1/my-cases
    GET    /api/v1/workload

Layer contract:
    - Blueprint: parse input, build request contracts, call service, return JSON.
    - NO db.session calls here; all writes are owned by WorkflowService.
"""

import logging

from flask import Blueprint, current_app, g, jsonify, request

from icsr.auth import require_actor, require_permission
from icsr.blueprints import json_body, register_error_handlers
from icsr.models.auth import SYSTEM_REPORTS
from icsr.models.case import Case
from icsr.models.workflow import WORKFLOW_STATUS_CONFIG, WORKFLOW_STATUSES, WORKFLOW_TRANSITIONS
from icsr.services.contracts import (
    CODE_CONFLICT,
    CODE_INVALID_TRANSITION,
    CODE_NOT_FOUND,
    CODE_PERMISSION_DENIED,
    CODE_PRECONDITION,
    SignatureInput,
    TransitionRequest,
)
from icsr.services.workflow_service import WorkflowService
from icsr.utils.errors import E, api_error
from icsr.utils.helpers import get_or_404, parse_date

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")
register_error_handlers(workflow_bp)

_FAILURE_CODES = {
    CODE_NOT_FOUND: E.NOT_FOUND,
    CODE_INVALID_TRANSITION: E.CONFLICT_STATE,
    CODE_PERMISSION_DENIED: E.FORBIDDEN,
    CODE_PRECONDITION: E.VALIDATION_RULE,
    CODE_CONFLICT: E.CONFLICT_VERSION,
}


def _service() -> WorkflowService:
    return WorkflowService.from_config(current_app.config)


def _case_or_404(case_id):
    case, err = get_or_404(Case, case_id)
    if err is None and case.deleted_at is not None:
        return None, api_error(E.NOT_FOUND, "Case not found")
    return case, err


# ── Statuses & actions ───────────────────────────────────────────────────────


@workflow_bp.route("/workflow/statuses", methods=["GET"])
@require_actor
def list_statuses():
    return jsonify({
        "statuses": [{"status": s, **WORKFLOW_STATUS_CONFIG[s]} for s in WORKFLOW_STATUSES],
        "transitions": [t.to_dict() for t in WORKFLOW_TRANSITIONS],
    })


@workflow_bp.route("/cases/<case_id>/workflow", methods=["GET"])
@require_actor
def get_workflow(case_id):
    details = _service().get_case_workflow_details(case_id)
    if details is None:
        return api_error(E.NOT_FOUND, "Case not found")
    return jsonify(details)


@workflow_bp.route("/cases/<case_id>/workflow/actions", methods=["GET"])
@require_actor
def get_actions(case_id):
    case, err = _case_or_404(case_id)
    if err:
        return err
    actions = WorkflowService.get_available_actions(
        case.workflow_status,
        g.permissions,
        is_assignee=case.current_assignee == g.actor.id,
        is_owner=case.current_owner == g.actor.id,
    )
    return jsonify({
        "case_id": case.id,
        "workflow_status": case.workflow_status,
        "actions": [t.to_dict() for t in actions],
    })


@workflow_bp.route("/cases/<case_id>/workflow/transition", methods=["POST"])
@require_actor
def transition_case(case_id):
    data = json_body()
    wrong_type = [f for f in ("to_status", "comment", "assign_to")
                  if data.get(f) is not None and not isinstance(data[f], str)]
    if wrong_type:
        return api_error(E.VALIDATION_INVALID, "Fields must be strings",
                         details={f: "must be a string" for f in wrong_type})
    to_status = (data.get("to_status") or "").strip()
    if not to_status:
        return api_error(E.VALIDATION_REQUIRED, "to_status is required")

    signature = None
    raw_sig = data.get("signature")
    if isinstance(raw_sig, dict):
        signature = SignatureInput(password=str(raw_sig.get("password") or ""),
                                   meaning=str(raw_sig.get("meaning") or ""))

    result = _service().transition(
        TransitionRequest(
            case_id=case_id,
            to_status=to_status,
            comment=data.get("comment"),
            assign_to=data.get("assign_to") or None,
            signature=signature,
        ),
        actor=g.actor,
        permissions=g.permissions,
        session_id=g.session_id,
    )
    if result.success:
        return jsonify(result.to_dict())
    return api_error(_FAILURE_CODES.get(result.code, E.INTERNAL), result.error)


# ── Assignments ──────────────────────────────────────────────────────────────


@workflow_bp.route("/cases/<case_id>/assignments", methods=["GET"])
@require_actor
def list_assignments(case_id):
    return jsonify([a.to_dict() for a in _service().get_assignment_history(case_id)])


@workflow_bp.route("/cases/<case_id>/assignments/current", methods=["GET"])
@require_actor
def current_assignment(case_id):
    assignment = _service().get_current_assignment(case_id)
    return jsonify(assignment.to_dict() if assignment else None)


@workflow_bp.route("/cases/<case_id>/assignments", methods=["POST"])
@require_actor
def assign_case(case_id):
    data = json_body()
    if not data.get("assigned_to"):
        return api_error(E.VALIDATION_REQUIRED, "assigned_to is required")
    due_date = None
    if data.get("due_date"):
        due_date = parse_date(data["due_date"])
        if due_date is None:
            return api_error(E.VALIDATION_INVALID, "due_date must be an ISO date")

    assignment = _service().assign_case(
        case_id, data["assigned_to"], g.actor, g.permissions,
        due_date=due_date,
        priority=data.get("priority") or "normal",
        notes=data.get("notes"),
        session_id=g.session_id,
    )
    return jsonify(assignment.to_dict() if assignment else None), 201


@workflow_bp.route("/cases/<case_id>/assignments/reassign", methods=["POST"])
@require_actor
def reassign_case(case_id):
    data = json_body()
    if not data.get("assigned_to"):
        return api_error(E.VALIDATION_REQUIRED, "assigned_to is required")
    assignment = _service().reassign_case(
        case_id, data["assigned_to"], data.get("reason"), g.actor, g.permissions,
        session_id=g.session_id,
    )
    return jsonify(assignment.to_dict() if assignment else None), 201


# ── Comments & notes ─────────────────────────────────────────────────────────


@workflow_bp.route("/cases/<case_id>/comments", methods=["GET"])
@require_actor
def list_comments(case_id):
    return jsonify([c.to_dict() for c in _service().get_comments(case_id)])


@workflow_bp.route("/cases/<case_id>/comments", methods=["POST"])
@require_actor
def add_comment(case_id):
    data = json_body()
    content = (data.get("content") or "").strip()
    if not content:
        return api_error(E.VALIDATION_REQUIRED, "content is required")
    comment = _service().add_comment(
        case_id, content, g.actor.id,
        comment_type=data.get("comment_type") or "general",
        mentions=data.get("mentions"),
    )
    return jsonify(comment.to_dict() if comment else None), 201


@workflow_bp.route("/cases/<case_id>/notes", methods=["GET"])
@require_actor
def list_notes(case_id):
    return jsonify([n.to_dict() for n in _service().get_notes(case_id, g.actor.id)])


@workflow_bp.route("/cases/<case_id>/notes", methods=["POST"])
@require_actor
def add_note(case_id):
    data = json_body()
    content = (data.get("content") or "").strip()
    if not content:
        return api_error(E.VALIDATION_REQUIRED, "content is required")
    note = _service().add_note(case_id, content, g.actor.id,
                               visibility=data.get("visibility") or "personal")
    return jsonify(note.to_dict() if note else None), 201


@workflow_bp.route("/notes/<int:note_id>/resolve", methods=["POST"])
@require_actor
def resolve_note(note_id):
    note = _service().resolve_note(note_id, g.actor, session_id=g.session_id)
    return jsonify(note.to_dict() if note else None)


# ── History, queues, due dates ───────────────────────────────────────────────


@workflow_bp.route("/cases/<case_id>/history", methods=["GET"])
@require_actor
def case_history(case_id):
    return jsonify(_service().get_case_history(case_id))


@workflow_bp.route("/cases/<case_id>/due-date", methods=["GET"])
@require_actor
def due_date_info(case_id):
    info = _service().get_due_date_info(case_id)
    if info is None:
        return api_error(E.NOT_FOUND, "Case not found")
    return jsonify(info)


@workflow_bp.route("/my-cases", methods=["GET"])
@require_actor
def my_cases():
    limit = min(request.args.get("limit", 50, type=int), 200)
    return jsonify(_service().get_my_cases(g.actor.id, limit=limit))


@workflow_bp.route("/workload", methods=["GET"])
@require_actor
@require_permission(SYSTEM_REPORTS)
def workload():
    return jsonify(_service().get_workload_summary())
