"""
ICSR Workflow Service
Users and the role → permission matrix.

Models:
    - User: reviewer / data-entry account; carries the bcrypt hash used to
      re-verify electronic signatures.

Permission codes are plain dotted strings.  ``*`` grants everything.
"""

import uuid
from datetime import datetime, timezone

from icsr.models import db

# ── Permission codes ─────────────────────────────────────────────────────────

PERMISSION_WILDCARD = "*"

CASE_CREATE = "case.create"
CASE_VIEW_OWN = "case.view.own"
CASE_VIEW_ALL = "case.view.all"
CASE_EDIT_OWN = "case.edit.own"
CASE_EDIT_ALL = "case.edit.all"
CASE_ASSIGN = "case.assign"
WORKFLOW_SUBMIT_REVIEW = "workflow.submit_review"
WORKFLOW_APPROVE = "workflow.approve"
WORKFLOW_REJECT = "workflow.reject"
WORKFLOW_SUBMIT_FDA = "workflow.submit_fda"
SYSTEM_CONFIGURE = "system.configure"
SYSTEM_REPORTS = "system.reports"
USER_VIEW = "user.view"

# ── Role matrix ──────────────────────────────────────────────────────────────

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "admin": frozenset({PERMISSION_WILDCARD}),
    "manager": frozenset({CASE_VIEW_ALL, CASE_ASSIGN, SYSTEM_REPORTS, USER_VIEW}),
    "data_entry": frozenset({CASE_CREATE, CASE_VIEW_OWN, CASE_EDIT_OWN, WORKFLOW_SUBMIT_REVIEW}),
    "medical_reviewer": frozenset({CASE_VIEW_OWN, CASE_EDIT_OWN, WORKFLOW_APPROVE, WORKFLOW_REJECT}),
    "qc_reviewer": frozenset({CASE_VIEW_OWN, CASE_EDIT_OWN, WORKFLOW_APPROVE, WORKFLOW_REJECT}),
    "submitter": frozenset({CASE_VIEW_ALL, WORKFLOW_SUBMIT_FDA}),
    "read_only": frozenset({CASE_VIEW_ALL}),
}

USER_ROLES = frozenset(ROLE_PERMISSIONS)


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    username = db.Column(db.String(100), nullable=False, unique=True)
    full_name = db.Column(db.String(200))
    email = db.Column(db.String(200))
    password_hash = db.Column(db.String(256))
    role = db.Column(db.String(30), nullable=False, default="read_only",
                     comment="admin | manager | data_entry | medical_reviewer | qc_reviewer | submitter | read_only")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @property
    def permissions(self) -> frozenset[str]:
        """Permission codes granted by this user's role."""
        return ROLE_PERMISSIONS.get(self.role, frozenset())

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "full_name": self.full_name,
            "email": self.email,
            "role": self.role,
            "is_active": self.is_active,
            "permissions": sorted(self.permissions),
        }

    def __repr__(self):
        return f"<User {self.username} ({self.role})>"
