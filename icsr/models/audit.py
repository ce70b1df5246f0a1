"""
ICSR Workflow Service
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for workflow and
      validation events.
"""

import json
from datetime import UTC, datetime

from icsr.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ACTIONS = {
    # Workflow
    "workflow_transition",
    "permission_denied",
    "electronic_signature",
    "case_assign",
    "case_reassign",
    "note_resolve",
    # Validation
    "validation_run",
    "warning_acknowledge",
    "rule_create",
    "rule_update",
    "rule_toggle",
    "rule_delete",
}


class AuditLog(db.Model):
    """
    Immutable audit trail entry.

    One row per action.  ``old_value`` / ``new_value`` carry the status pair
    for transitions; ``details_json`` carries anything else (comment,
    attempted transition, reassignment reason).
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_user", "user_id"),
        db.Index("idx_audit_action", "action_type"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )
    user_id = db.Column(db.String(36), nullable=True, comment="NULL for system entries")
    username = db.Column(db.String(100), nullable=True)
    session_id = db.Column(db.String(100), nullable=True)

    action_type = db.Column(
        db.String(40), nullable=False,
        comment="workflow_transition | permission_denied | electronic_signature | …",
    )
    entity_type = db.Column(db.String(30), nullable=True, comment="case | validation_rule | note | …")
    entity_id = db.Column(db.String(36), nullable=True)

    old_value = db.Column(db.Text, nullable=True)
    new_value = db.Column(db.Text, nullable=True)
    details_json = db.Column(db.Text, default="{}")

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def details(self) -> dict:
        """Deserialise *details_json* to a Python dict."""
        try:
            return json.loads(self.details_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "user_id": self.user_id,
            "username": self.username,
            "session_id": self.session_id,
            "action_type": self.action_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "details": self.details,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action_type} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    action_type: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    user_id: str | None = None,
    username: str | None = None,
    session_id: str | None = None,
    old_value: str | None = None,
    new_value: str | None = None,
    details: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    Raises ValueError for an action type outside AUDIT_ACTIONS.
    """
    if action_type not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action_type}")
    log = AuditLog(
        user_id=user_id,
        username=username,
        session_id=session_id,
        action_type=action_type,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        old_value=old_value,
        new_value=new_value,
        details_json=json.dumps(details or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
