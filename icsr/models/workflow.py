"""
ICSR Workflow Service
Case workflow domain — status machine configuration and collaboration logs.

Static configuration (not persisted):
    - WORKFLOW_STATUSES / WORKFLOW_STATUS_CONFIG
    - WORKFLOW_TRANSITIONS: the fixed edge table
    - DUE_DATE_RULES

Models:
    - CaseAssignment: one row per assignment; exactly one current per case
    - CaseComment: append-only discussion log
    - CaseNote: append-only, resolvable once
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone

from icsr.models import db
from icsr.models.auth import (
    CASE_ASSIGN,
    CASE_EDIT_OWN,
    WORKFLOW_APPROVE,
    WORKFLOW_REJECT,
    WORKFLOW_SUBMIT_FDA,
    WORKFLOW_SUBMIT_REVIEW,
)

# ── Statuses ─────────────────────────────────────────────────────────────────

DRAFT = "Draft"
DATA_ENTRY_COMPLETE = "Data Entry Complete"
IN_MEDICAL_REVIEW = "In Medical Review"
MEDICAL_REVIEW_COMPLETE = "Medical Review Complete"
IN_QC_REVIEW = "In QC Review"
QC_COMPLETE = "QC Complete"
APPROVED = "Approved"
SUBMITTED = "Submitted"
ACKNOWLEDGED = "Acknowledged"
REJECTED = "Rejected"
# Periodic-report aggregation states; set by the aggregation flow only
PENDING_PSR = "Pending PSR"
INCLUDED_IN_PSR = "Included in PSR"

WORKFLOW_STATUSES = (
    DRAFT,
    DATA_ENTRY_COMPLETE,
    IN_MEDICAL_REVIEW,
    MEDICAL_REVIEW_COMPLETE,
    IN_QC_REVIEW,
    QC_COMPLETE,
    APPROVED,
    SUBMITTED,
    ACKNOWLEDGED,
    REJECTED,
    PENDING_PSR,
    INCLUDED_IN_PSR,
)

REVIEW_STATUSES = frozenset({IN_MEDICAL_REVIEW, IN_QC_REVIEW})
TERMINAL_STATUSES = frozenset({ACKNOWLEDGED})

WORKFLOW_STATUS_CONFIG = {
    DRAFT: {"label": "Draft", "description": "Case is being created or edited"},
    DATA_ENTRY_COMPLETE: {"label": "Data Entry Complete",
                          "description": "Data entry finished, ready for medical review"},
    IN_MEDICAL_REVIEW: {"label": "In Medical Review", "description": "Under medical review"},
    MEDICAL_REVIEW_COMPLETE: {"label": "Medical Review Complete",
                              "description": "Medical review finished, ready for QC"},
    IN_QC_REVIEW: {"label": "In QC Review", "description": "Under quality control review"},
    QC_COMPLETE: {"label": "QC Complete", "description": "QC finished, ready for approval"},
    APPROVED: {"label": "Approved", "description": "Approved for submission"},
    SUBMITTED: {"label": "Submitted", "description": "Submitted to FDA"},
    ACKNOWLEDGED: {"label": "Acknowledged", "description": "FDA acknowledgment received"},
    REJECTED: {"label": "Rejected", "description": "Returned for corrections"},
    PENDING_PSR: {"label": "Pending PSR", "description": "Awaiting inclusion in a periodic safety report"},
    INCLUDED_IN_PSR: {"label": "Included in PSR", "description": "Included in a periodic safety report"},
}

# ── Transitions ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class WorkflowTransition:
    """A directed edge of the case status machine."""

    from_status: str
    to_status: str
    required_permission: str
    label: str
    requires_comment: bool = False
    requires_assignment: bool = False
    requires_signature: bool = False

    @property
    def is_review_action(self) -> bool:
        """Edges leaving a review state need the assignee (or view-all)."""
        return self.from_status in REVIEW_STATUSES

    @property
    def is_rework(self) -> bool:
        """Rejected → Draft needs the case owner (or edit-all)."""
        return self.from_status == REJECTED and self.to_status == DRAFT

    def to_dict(self) -> dict:
        return {
            "from": self.from_status,
            "to": self.to_status,
            "required_permission": self.required_permission,
            "label": self.label,
            "requires_comment": self.requires_comment,
            "requires_assignment": self.requires_assignment,
            "requires_signature": self.requires_signature,
        }


WORKFLOW_TRANSITIONS: tuple[WorkflowTransition, ...] = (
    WorkflowTransition(DRAFT, DATA_ENTRY_COMPLETE, WORKFLOW_SUBMIT_REVIEW, "Submit for Review"),
    WorkflowTransition(DATA_ENTRY_COMPLETE, IN_MEDICAL_REVIEW, CASE_ASSIGN,
                       "Assign for Medical Review", requires_assignment=True),
    WorkflowTransition(IN_MEDICAL_REVIEW, MEDICAL_REVIEW_COMPLETE, WORKFLOW_APPROVE,
                       "Complete Medical Review"),
    WorkflowTransition(IN_MEDICAL_REVIEW, REJECTED, WORKFLOW_REJECT,
                       "Reject", requires_comment=True),
    WorkflowTransition(MEDICAL_REVIEW_COMPLETE, IN_QC_REVIEW, CASE_ASSIGN,
                       "Assign for QC Review", requires_assignment=True),
    WorkflowTransition(IN_QC_REVIEW, QC_COMPLETE, WORKFLOW_APPROVE, "Complete QC Review"),
    WorkflowTransition(IN_QC_REVIEW, REJECTED, WORKFLOW_REJECT,
                       "Reject", requires_comment=True),
    WorkflowTransition(QC_COMPLETE, APPROVED, WORKFLOW_APPROVE,
                       "Approve for Submission", requires_signature=True),
    WorkflowTransition(APPROVED, SUBMITTED, WORKFLOW_SUBMIT_FDA, "Submit to FDA"),
    WorkflowTransition(SUBMITTED, ACKNOWLEDGED, WORKFLOW_SUBMIT_FDA, "Record Acknowledgment"),
    WorkflowTransition(REJECTED, DRAFT, CASE_EDIT_OWN, "Return to Draft"),
)


def find_transition(from_status: str, to_status: str) -> WorkflowTransition | None:
    """Return the edge ``from_status → to_status`` or None."""
    for t in WORKFLOW_TRANSITIONS:
        if t.from_status == from_status and t.to_status == to_status:
            return t
    return None


# ── Assignment / comment / note vocabularies ─────────────────────────────────

ASSIGNMENT_PRIORITIES = ("urgent", "high", "normal", "low")
COMMENT_TYPES = frozenset({"general", "query", "response", "rejection", "workflow"})
NOTE_VISIBILITIES = frozenset({"personal", "team"})

# Calendar days from receipt date
DUE_DATE_RULES = {
    "expedited": 15,
    "non_expedited": 90,
}


def _iso(value):
    return value.isoformat() if value else None


class CaseAssignment(db.Model):
    """
    One row per assignment action.

    Immutable once written except for ``is_current``; creating a new
    assignment demotes the prior current row in the same transaction.
    """

    __tablename__ = "case_assignments"
    __table_args__ = (
        db.Index("ix_case_assignments_case_current", "case_id", "is_current"),
        db.Index("ix_case_assignments_assignee_current", "assigned_to", "is_current"),
    )

    id = db.Column(db.Integer, primary_key=True)
    case_id = db.Column(db.String(36), db.ForeignKey("cases.id", ondelete="CASCADE"), nullable=False)
    assigned_to = db.Column(db.String(36), nullable=False)
    assigned_by = db.Column(db.String(36), nullable=True)
    assigned_at = db.Column(db.DateTime(timezone=True), nullable=False,
                            default=lambda: datetime.now(timezone.utc))
    due_date = db.Column(db.Date, nullable=True)
    priority = db.Column(db.String(10), nullable=False, default="normal",
                         comment="low | normal | high | urgent")
    notes = db.Column(db.Text, nullable=True)
    is_current = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self):
        return {
            "id": self.id,
            "case_id": self.case_id,
            "assigned_to": self.assigned_to,
            "assigned_by": self.assigned_by,
            "assigned_at": _iso(self.assigned_at),
            "due_date": _iso(self.due_date),
            "priority": self.priority,
            "notes": self.notes,
            "is_current": self.is_current,
        }

    def __repr__(self):
        return f"<CaseAssignment {self.id}: {self.case_id} → {self.assigned_to}>"


class CaseComment(db.Model):
    """Append-only comment; never updated or deleted."""

    __tablename__ = "case_comments"

    id = db.Column(db.Integer, primary_key=True)
    case_id = db.Column(db.String(36), db.ForeignKey("cases.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    user_id = db.Column(db.String(36), nullable=True)
    comment_type = db.Column(db.String(20), nullable=False, default="general",
                             comment="general | query | response | rejection | workflow")
    content = db.Column(db.Text, nullable=False)
    mentions_json = db.Column(db.Text, nullable=True, comment="JSON list of mentioned user ids")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False,
                           default=lambda: datetime.now(timezone.utc))

    @property
    def mentions(self) -> list:
        if not self.mentions_json:
            return []
        try:
            return json.loads(self.mentions_json)
        except (json.JSONDecodeError, TypeError):
            return []

    def to_dict(self):
        return {
            "id": self.id,
            "case_id": self.case_id,
            "user_id": self.user_id,
            "comment_type": self.comment_type,
            "content": self.content,
            "mentions": self.mentions,
            "created_at": _iso(self.created_at),
        }


class CaseNote(db.Model):
    """
    Working note on a case.

    ``personal`` notes are visible to their author only; ``team`` notes to
    everyone.  ``resolved_at`` / ``resolved_by`` are set exactly once.
    """

    __tablename__ = "case_notes"

    id = db.Column(db.Integer, primary_key=True)
    case_id = db.Column(db.String(36), db.ForeignKey("cases.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    user_id = db.Column(db.String(36), nullable=False)
    visibility = db.Column(db.String(10), nullable=False, default="personal",
                           comment="personal | team")
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False,
                           default=lambda: datetime.now(timezone.utc))
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolved_by = db.Column(db.String(36), nullable=True)

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def to_dict(self):
        return {
            "id": self.id,
            "case_id": self.case_id,
            "user_id": self.user_id,
            "visibility": self.visibility,
            "content": self.content,
            "created_at": _iso(self.created_at),
            "resolved_at": _iso(self.resolved_at),
            "resolved_by": self.resolved_by,
            "is_resolved": self.is_resolved,
        }
