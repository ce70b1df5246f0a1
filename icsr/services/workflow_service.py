"""
Case Workflow Service

Owns the case status machine:
  - Transition legality (WORKFLOW_TRANSITIONS)
  - Permission and role checks
  - Preconditions: comment / assignment / electronic signature
  - Side effects: assignment, comment, audit row, notifications
  - History, "my cases", workload and due-date views

Check order in ``transition``:
    case exists → edge exists → permission → comment → assignment → signature

The status write, signature, assignment, comment and audit row are
committed together.  Notifications go out after the commit and never fail
a transition.

Usage:
    from icsr.services.workflow_service import WorkflowService

    service = WorkflowService.from_config(current_app.config)
    result = service.transition(
        TransitionRequest(case_id="abc", to_status="Rejected", comment="..."),
        actor=Actor(id="u-1", username="jdoe"),
        permissions={"workflow.reject"},
    )
"""

import logging
from datetime import date, timedelta

from sqlalchemy import and_, case as sql_case, func, select

from icsr.core.exceptions import NotFoundError, PermissionDenied, ValidationError
from icsr.models import db
from icsr.models.auth import CASE_ASSIGN, CASE_EDIT_ALL, CASE_VIEW_ALL, User
from icsr.models.case import Case
from icsr.models.workflow import (
    APPROVED,
    DUE_DATE_RULES,
    REJECTED,
    REVIEW_STATUSES,
    TERMINAL_STATUSES,
    WORKFLOW_TRANSITIONS,
    CaseAssignment,
    WorkflowTransition,
    find_transition,
)
from icsr.services.audit_service import AuditService
from icsr.services.case_activity import CaseActivityLog
from icsr.services.case_store import SqlCaseStore
from icsr.services.contracts import (
    ASSIGNMENT_REQUIRED,
    CASE_MODIFIED,
    CASE_NOT_FOUND,
    CODE_CONFLICT,
    CODE_ERROR,
    CODE_INVALID_TRANSITION,
    CODE_NOT_FOUND,
    CODE_PERMISSION_DENIED,
    CODE_PRECONDITION,
    COMMENT_REQUIRED,
    INVALID_SIGNATURE,
    PERMISSION_DENIED,
    SIGNATURE_REQUIRED,
    TRANSITION_FAILED_PREFIX,
    TransitionRequest,
    TransitionResult,
    invalid_transition_message,
)
from icsr.services.credentials import PasswordCredentialVerifier
from icsr.services.notification import NotificationService
from icsr.services.permission import check_permission, has_permission
from icsr.utils.helpers import parse_date

logger = logging.getLogger(__name__)

_PRIORITY_RANK = {"urgent": 0, "high": 1, "normal": 2, "low": 3}


def _text(value) -> str | None:
    """Stripped string form of a request field; None when blank."""
    if value is None:
        return None
    return str(value).strip() or None


def signature_action(to_status: str) -> str:
    """``Approved`` → ``workflow_approved``."""
    return "workflow_" + to_status.lower().replace(" ", "_")


def role_allows(transition: WorkflowTransition, permissions, *, is_assignee: bool, is_owner: bool) -> bool:
    """Assignee rule for review edges, owner rule for the rework edge."""
    if transition.is_review_action and not (is_assignee or has_permission(permissions, CASE_VIEW_ALL)):
        return False
    if transition.is_rework and not (is_owner or has_permission(permissions, CASE_EDIT_ALL)):
        return False
    return True


class WorkflowService:
    def __init__(self, *, case_store=None, audit=None, notifier=None, credential_verifier=None,
                 capabilities: dict | None = None, optimistic_locking: bool = True,
                 enforce_role_checks: bool = False):
        self.case_store = case_store or SqlCaseStore()
        self.audit = audit or AuditService()
        self.notifier = notifier or NotificationService()
        self.credential_verifier = credential_verifier or PasswordCredentialVerifier()
        self.activity = CaseActivityLog(capabilities)
        self.optimistic_locking = optimistic_locking
        self.enforce_role_checks = enforce_role_checks

    @classmethod
    def from_config(cls, config, **overrides) -> "WorkflowService":
        """Build a service from Flask app config (WORKFLOW_* keys)."""
        kwargs = {
            "capabilities": config.get("WORKFLOW_CAPABILITIES"),
            "optimistic_locking": config.get("WORKFLOW_OPTIMISTIC_LOCKING", True),
            "enforce_role_checks": config.get("WORKFLOW_ENFORCE_ROLE_CHECKS", False),
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    # ── Status queries ───────────────────────────────────────────────────

    def get_case_workflow_status(self, case_id: str) -> str | None:
        case = self.case_store.get(case_id)
        return case.workflow_status if case else None

    def get_case_workflow_details(self, case_id: str) -> dict | None:
        case = self.case_store.get(case_id)
        return case.workflow_details() if case else None

    @staticmethod
    def get_available_actions(current_status: str, permissions, is_assignee: bool = False,
                              is_owner: bool = False) -> list[WorkflowTransition]:
        """Edges leaving *current_status* that the caller may take."""
        actions = []
        for t in WORKFLOW_TRANSITIONS:
            if t.from_status != current_status:
                continue
            if not has_permission(permissions, t.required_permission):
                logger.debug("Action %s → %s blocked: missing %s",
                             t.from_status, t.to_status, t.required_permission)
                continue
            if not role_allows(t, permissions, is_assignee=is_assignee, is_owner=is_owner):
                logger.debug("Action %s → %s blocked: role check", t.from_status, t.to_status)
                continue
            actions.append(t)
        return actions

    # ── Transition ───────────────────────────────────────────────────────

    def transition(self, request: TransitionRequest, actor, permissions,
                   session_id: str | None = None) -> TransitionResult:
        """
        Move a case to ``request.to_status``.

        Returns:
            TransitionResult; failures carry one of the reason strings in
            ``icsr.services.contracts`` and never raise.
        """
        log_extra = {"case_id": request.case_id, "user_id": actor.id, "to_status": request.to_status}
        logger.debug("Transition requested", extra=log_extra)

        case = self.case_store.get(request.case_id)
        if case is None:
            return TransitionResult.failed(CODE_NOT_FOUND, CASE_NOT_FOUND)

        from_status = case.workflow_status
        read_version = case.version
        owner_id = case.current_owner
        to_status = request.to_status

        edge = find_transition(from_status, to_status)
        if edge is None:
            return TransitionResult.failed(CODE_INVALID_TRANSITION,
                                           invalid_transition_message(from_status, to_status))

        denied_reason = None
        if not has_permission(permissions, edge.required_permission):
            denied_reason = "missing_permission"
        elif self.enforce_role_checks and not role_allows(
            edge, permissions,
            is_assignee=case.current_assignee == actor.id,
            is_owner=case.current_owner == actor.id,
        ):
            denied_reason = "role_check"
        if denied_reason:
            self._record_denial(
                case.id, actor, session_id, f"workflow_transition:{from_status}->{to_status}",
                {"required_permission": edge.required_permission, "reason": denied_reason},
            )
            return TransitionResult.failed(CODE_PERMISSION_DENIED, PERMISSION_DENIED)

        comment = _text(request.comment)
        assign_to = _text(request.assign_to)
        if edge.requires_comment and not comment:
            return TransitionResult.failed(CODE_PRECONDITION, COMMENT_REQUIRED)

        if edge.requires_assignment and not assign_to:
            return TransitionResult.failed(CODE_PRECONDITION, ASSIGNMENT_REQUIRED)

        if edge.requires_signature:
            password = str(request.signature.password or "") if request.signature else ""
            if not password:
                return TransitionResult.failed(CODE_PRECONDITION, SIGNATURE_REQUIRED)
            if not self.credential_verifier.verify(actor.id, password):
                logger.warning("Invalid signature on transition", extra=log_extra)
                return TransitionResult.failed(CODE_PRECONDITION, INVALID_SIGNATURE)

        try:
            if edge.requires_signature:
                self.audit.create_signature(
                    actor=actor,
                    entity_type="case",
                    entity_id=case.id,
                    action=signature_action(to_status),
                    meaning=_text(request.signature.meaning) or edge.label,
                    record_version=read_version,
                    session_id=session_id,
                )

            fields = {"workflow_status": to_status}
            if assign_to:
                fields["current_assignee"] = assign_to
            elif to_status not in REVIEW_STATUSES:
                fields["current_assignee"] = None

            updated = self.case_store.update_workflow(
                case.id, fields,
                expected_version=read_version if self.optimistic_locking else None,
                increment_rejections=to_status == REJECTED,
            )
            if not updated:
                db.session.rollback()
                if self.optimistic_locking:
                    logger.warning("Version conflict on transition", extra=log_extra)
                    return TransitionResult.failed(CODE_CONFLICT, CASE_MODIFIED)
                return TransitionResult.failed(CODE_ERROR, f"{TRANSITION_FAILED_PREFIX}case row not updated")

            if assign_to:
                self.activity.create_assignment(case.id, assign_to, actor.id)
            if comment:
                self.activity.add_comment(
                    case.id, actor.id, comment,
                    comment_type="rejection" if to_status == REJECTED else "workflow",
                )
            self.audit.log_workflow_transition(
                case_id=case.id,
                from_status=from_status,
                to_status=to_status,
                actor=actor,
                session_id=session_id,
                comment=comment,
            )
            db.session.commit()
        except Exception as exc:
            db.session.rollback()
            logger.exception("Transition failed", extra=log_extra)
            return TransitionResult.failed(CODE_ERROR, f"{TRANSITION_FAILED_PREFIX}{exc}")

        logger.info("Case %s → %s", from_status, to_status,
                    extra={**log_extra, "from_status": from_status})

        self._send_notifications(case.id, owner_id, actor, to_status, assign_to, comment)

        refreshed = self.case_store.get(case.id)
        payload = refreshed.workflow_details() if refreshed else {"workflow_status": to_status}
        payload["id"] = case.id
        return TransitionResult(success=True, case=payload)

    def _record_denial(self, case_id, actor, session_id, attempted_action, details):
        """Commit a ``permission_denied`` audit row; best-effort."""
        logger.warning("Permission denied: %s", attempted_action,
                       extra={"case_id": case_id, "user_id": actor.id, "event_type": "permission_denied"})
        try:
            self.audit.log_permission_denied(
                actor=actor,
                session_id=session_id,
                attempted_action=attempted_action,
                entity_type="case",
                entity_id=case_id,
                details=details,
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.warning("Could not record permission denial", exc_info=True,
                           extra={"case_id": case_id})

    def _send_notifications(self, case_id, owner_id, actor, to_status, assign_to, comment):
        if not self.activity.enabled("notifications"):
            return
        sends = []
        if assign_to and assign_to != actor.id:
            sends.append(lambda: self.notifier.notify_case_assigned(
                case_id, assign_to, to_status))
        if owner_id and owner_id != actor.id:
            if to_status == REJECTED:
                sends.append(lambda: self.notifier.notify_case_rejected(case_id, owner_id, comment))
            elif to_status == APPROVED:
                sends.append(lambda: self.notifier.notify_case_approved(case_id, owner_id))
        for send in sends:
            try:
                send()
            except Exception:
                db.session.rollback()
                logger.warning("Notification dispatch failed", exc_info=True,
                               extra={"case_id": case_id, "event_type": "notification"})

    # ── Assignments ──────────────────────────────────────────────────────

    def create_assignment(self, case_id, assigned_to, assigned_by, due_date=None,
                          priority="normal", notes=None) -> CaseAssignment | None:
        assignment = self.activity.create_assignment(
            case_id, assigned_to, assigned_by, due_date=due_date, priority=priority, notes=notes,
        )
        db.session.commit()
        return assignment

    def assign_case(self, case_id, assigned_to, actor, permissions, *, due_date=None,
                    priority="normal", notes=None, session_id=None) -> CaseAssignment | None:
        """Assign a case (requires ``case.assign``) and set its current assignee."""
        return self._assign(case_id, assigned_to, actor, permissions, action_type="case_assign",
                            due_date=due_date, priority=priority, notes=notes, session_id=session_id)

    def reassign_case(self, case_id, new_assignee_id, reason, actor, permissions, *,
                      session_id=None) -> CaseAssignment | None:
        """Hand a case to someone else, recording the previous assignee and reason."""
        return self._assign(case_id, new_assignee_id, actor, permissions, action_type="case_reassign",
                            notes=reason, reason=reason, session_id=session_id)

    def _assign(self, case_id, assigned_to, actor, permissions, *, action_type, due_date=None,
                priority="normal", notes=None, reason=None, session_id=None):
        case = self.case_store.get(case_id)
        if case is None:
            raise NotFoundError(resource="Case", resource_id=case_id)
        try:
            check_permission(permissions, CASE_ASSIGN, user_id=actor.id)
        except PermissionDenied:
            self._record_denial(case_id, actor, session_id, action_type,
                                {"required_permission": CASE_ASSIGN, "reason": "missing_permission"})
            raise
        if not assigned_to:
            raise ValidationError("assigned_to is required")

        previous = case.current_assignee
        try:
            assignment = self.activity.create_assignment(
                case_id, assigned_to, actor.id, due_date=due_date, priority=priority, notes=notes,
            )
            self.case_store.update_workflow(case_id, {"current_assignee": assigned_to})
            details = {"previous_assignee": previous, "priority": priority}
            if reason is not None:
                details["reason"] = reason
            self.audit.log(
                action_type=action_type,
                actor=actor,
                session_id=session_id,
                entity_type="case",
                entity_id=case_id,
                old_value=previous,
                new_value=assigned_to,
                details=details,
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info("Case assigned to %s", assigned_to,
                    extra={"case_id": case_id, "user_id": actor.id, "event_type": action_type})
        if assigned_to != actor.id and self.activity.enabled("notifications"):
            try:
                self.notifier.notify_case_assigned(case_id, assigned_to, case.workflow_status)
            except Exception:
                db.session.rollback()
                logger.warning("Notification dispatch failed", exc_info=True, extra={"case_id": case_id})
        return assignment

    def get_current_assignment(self, case_id) -> CaseAssignment | None:
        return self.activity.get_current_assignment(case_id)

    def get_assignment_history(self, case_id) -> list[CaseAssignment]:
        return self.activity.get_assignment_history(case_id)

    # ── Comments & notes ─────────────────────────────────────────────────

    def add_comment(self, case_id, content, user_id, comment_type="general", mentions=None):
        if self.case_store.get(case_id) is None:
            raise NotFoundError(resource="Case", resource_id=case_id)
        comment = self.activity.add_comment(case_id, user_id, content,
                                            comment_type=comment_type, mentions=mentions)
        db.session.commit()
        return comment

    def get_comments(self, case_id):
        return self.activity.get_comments(case_id)

    def add_note(self, case_id, content, user_id, visibility="personal"):
        if self.case_store.get(case_id) is None:
            raise NotFoundError(resource="Case", resource_id=case_id)
        note = self.activity.add_note(case_id, user_id, content, visibility=visibility)
        db.session.commit()
        return note

    def get_notes(self, case_id, user_id):
        return self.activity.get_notes(case_id, user_id)

    def resolve_note(self, note_id, resolving_user, session_id=None):
        try:
            note = self.activity.resolve_note(note_id, resolving_user.id)
            self.audit.log(
                action_type="note_resolve",
                actor=resolving_user,
                session_id=session_id,
                entity_type="case",
                entity_id=note.case_id,
                details={"note_id": note.id},
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return note

    # ── History ──────────────────────────────────────────────────────────

    def get_case_history(self, case_id) -> list[dict]:
        """Audit trail entries for the case, newest first."""
        entries = []
        for row in self.audit.get_entity_history("case", case_id):
            details = row.details
            entries.append({
                "id": row.id,
                "case_id": case_id,
                "timestamp": row.timestamp.isoformat() if row.timestamp else None,
                "user_id": row.user_id,
                "username": row.username or "System",
                "action": row.action_type,
                "from_status": row.old_value if row.action_type == "workflow_transition" else None,
                "to_status": row.new_value if row.action_type == "workflow_transition" else None,
                "comment": details.get("comment"),
                "details": details,
            })
        return entries

    # ── Work queues ──────────────────────────────────────────────────────

    def get_my_cases(self, user_id, limit: int = 50, today: date | None = None) -> list[dict]:
        """Current assignments for *user_id*: overdue first, then due date, then priority."""
        if not self.activity.enabled("assignments"):
            return []
        today = today or date.today()
        overdue_first = sql_case((and_(Case.due_date.is_not(None), Case.due_date < today), 0), else_=1)
        undated_last = sql_case((Case.due_date.is_(None), 1), else_=0)
        priority_rank = sql_case(_PRIORITY_RANK, value=CaseAssignment.priority, else_=len(_PRIORITY_RANK))

        stmt = (
            select(CaseAssignment, Case)
            .join(Case, Case.id == CaseAssignment.case_id)
            .where(
                CaseAssignment.assigned_to == user_id,
                CaseAssignment.is_current.is_(True),
                Case.deleted_at.is_(None),
            )
            .order_by(overdue_first, undated_last, Case.due_date.asc(), priority_rank,
                      CaseAssignment.assigned_at.desc())
            .limit(limit)
        )
        results = []
        for assignment, case in db.session.execute(stmt).all():
            results.append({
                "case_id": case.id,
                "case_number": case.case_number,
                "workflow_status": case.workflow_status,
                "due_date": case.due_date.isoformat() if case.due_date else None,
                "due_date_type": case.due_date_type,
                "is_overdue": bool(case.due_date and case.due_date < today),
                "priority": assignment.priority,
                "assigned_at": assignment.assigned_at.isoformat() if assignment.assigned_at else None,
                "assigned_by": assignment.assigned_by,
            })
        return results

    def get_workload_summary(self, today: date | None = None) -> dict:
        """Per-user counts of current assignments plus unassigned open cases."""
        today = today or date.today()
        users: dict[str, dict] = {}
        if self.activity.enabled("assignments"):
            stmt = (
                select(CaseAssignment.assigned_to, CaseAssignment.priority,
                       Case.workflow_status, Case.due_date)
                .join(Case, Case.id == CaseAssignment.case_id)
                .where(CaseAssignment.is_current.is_(True), Case.deleted_at.is_(None))
            )
            for assigned_to, priority, status, due in db.session.execute(stmt).all():
                entry = users.setdefault(assigned_to, {
                    "user_id": assigned_to,
                    "total": 0,
                    "overdue": 0,
                    "by_status": {},
                    "by_priority": {},
                })
                entry["total"] += 1
                entry["by_status"][status] = entry["by_status"].get(status, 0) + 1
                entry["by_priority"][priority] = entry["by_priority"].get(priority, 0) + 1
                if due and due < today:
                    entry["overdue"] += 1

        if users:
            for user in User.query.filter(User.id.in_(list(users))).all():
                users[user.id]["username"] = user.username
                users[user.id]["full_name"] = user.full_name

        unassigned = db.session.execute(
            select(func.count(Case.id)).where(
                Case.current_assignee.is_(None),
                Case.deleted_at.is_(None),
                Case.workflow_status.not_in(sorted(TERMINAL_STATUSES)),
            )
        ).scalar_one()

        rows = sorted(users.values(), key=lambda u: (-u["total"], u["user_id"]))
        return {
            "users": rows,
            "unassigned_cases": unassigned,
            "total_overdue": sum(u["overdue"] for u in rows),
        }

    # ── Due dates ────────────────────────────────────────────────────────

    @staticmethod
    def calculate_due_date(receipt_date, due_date_type: str) -> date:
        """Receipt date plus 15 (expedited) or 90 (non-expedited) calendar days."""
        receipt = parse_date(receipt_date)
        if receipt is None:
            raise ValidationError("A valid receipt_date is required")
        if due_date_type not in DUE_DATE_RULES:
            raise ValidationError(f"Invalid due_date_type: {due_date_type}",
                                  details={"due_date_type": f"one of {', '.join(DUE_DATE_RULES)}"})
        return receipt + timedelta(days=DUE_DATE_RULES[due_date_type])

    def get_due_date_info(self, case_id, today: date | None = None) -> dict | None:
        case = self.case_store.get(case_id)
        if case is None:
            return None
        today = today or date.today()
        due = case.due_date
        if due is None and case.receipt_date and case.due_date_type in DUE_DATE_RULES:
            due = self.calculate_due_date(case.receipt_date, case.due_date_type)
        if due is None:
            return {"due_date": None, "due_date_type": case.due_date_type,
                    "days_remaining": None, "is_overdue": False}
        days_remaining = (due - today).days
        return {
            "due_date": due.isoformat(),
            "due_date_type": case.due_date_type,
            "days_remaining": days_remaining,
            "is_overdue": days_remaining < 0,
        }
