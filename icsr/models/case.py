"""
ICSR Workflow Service
Case domain model.

Models:
    - Case: an ICSR record with its workflow-relevant fields.  The clinical
      payload (seriousness flags, patient, reactions, drugs, reporters) is
      kept as JSON text in ``case_data``; the workflow engine only reads it
      through ``to_snapshot()``.
"""

import json
import uuid
from datetime import datetime, timezone

from icsr.models import db
from icsr.models.workflow import DRAFT


class Case(db.Model):
    """
    Individual Case Safety Report.

    Business rules:
    - Created in ``Draft``; status changes only through workflow transitions.
    - ``version`` increments on every workflow write and guards concurrent
      transitions.
    - ``rejection_count`` increments each time the status becomes ``Rejected``.
    - Soft-deleted rows (``deleted_at`` set) are invisible to the services.
    """

    __tablename__ = "cases"
    __table_args__ = (
        db.Index("ix_cases_status", "workflow_status"),
        db.Index("ix_cases_assignee", "current_assignee"),
    )

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    case_number = db.Column(db.String(50), nullable=True, unique=True)
    workflow_status = db.Column(db.String(30), nullable=False, default=DRAFT)
    current_owner = db.Column(db.String(36), nullable=True)
    current_assignee = db.Column(db.String(36), nullable=True)
    created_by = db.Column(db.String(36), nullable=True)

    receipt_date = db.Column(db.Date, nullable=True)
    due_date = db.Column(db.Date, nullable=True)
    due_date_type = db.Column(db.String(20), nullable=True, comment="expedited | non_expedited")

    version = db.Column(db.Integer, nullable=False, default=1)
    rejection_count = db.Column(db.Integer, nullable=False, default=0)

    case_data = db.Column(db.Text, default="{}",
                          comment="JSON: seriousness flags, patient, reactions, drugs, reporters")

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def data(self) -> dict:
        """Deserialise *case_data* to a dict."""
        try:
            return json.loads(self.case_data or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    @data.setter
    def data(self, value: dict):
        self.case_data = json.dumps(value or {}, default=str)

    def to_snapshot(self) -> dict:
        """Flat case view handed to the validation engine."""
        snapshot = dict(self.data)
        snapshot.update({
            "id": self.id,
            "case_number": self.case_number,
            "workflow_status": self.workflow_status,
            "receipt_date": (self.receipt_date.isoformat() if self.receipt_date
                             else snapshot.get("receipt_date")),
        })
        return snapshot

    def workflow_details(self) -> dict:
        return {
            "case_id": self.id,
            "workflow_status": self.workflow_status,
            "current_owner": self.current_owner,
            "current_assignee": self.current_assignee,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "due_date_type": self.due_date_type,
            "version": self.version,
        }

    def to_dict(self):
        d = self.workflow_details()
        d.update({
            "id": self.id,
            "case_number": self.case_number,
            "created_by": self.created_by,
            "receipt_date": self.receipt_date.isoformat() if self.receipt_date else None,
            "rejection_count": self.rejection_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        })
        return d

    def __repr__(self):
        return f"<Case {self.case_number or self.id} [{self.workflow_status}]>"
