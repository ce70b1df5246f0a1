"""
Case activity logs — assignments, comments and notes.

These helpers only ``flush``.  ``WorkflowService`` decides when to commit:
inside a transition they share the status-change transaction, as
standalone operations they are committed immediately.

A feature switched off in ``capabilities`` degrades quietly: writes return
None and reads return an empty result.
"""

import json
from datetime import datetime, timezone

from sqlalchemy import or_, select

from icsr.core.exceptions import ConflictError, NotFoundError, ValidationError
from icsr.models import db
from icsr.models.workflow import (
    ASSIGNMENT_PRIORITIES,
    COMMENT_TYPES,
    NOTE_VISIBILITIES,
    CaseAssignment,
    CaseComment,
    CaseNote,
)
from icsr.utils.helpers import parse_date

DEFAULT_CAPABILITIES = {
    "assignments": True,
    "comments": True,
    "notes": True,
    "notifications": True,
}


class CaseActivityLog:
    def __init__(self, capabilities: dict | None = None):
        self.capabilities = {**DEFAULT_CAPABILITIES, **(capabilities or {})}

    def enabled(self, feature: str) -> bool:
        return bool(self.capabilities.get(feature, False))

    # ── Assignments ──────────────────────────────────────────────────────

    def create_assignment(self, case_id, assigned_to, assigned_by, *,
                          due_date=None, priority="normal", notes=None) -> CaseAssignment | None:
        """Demote the current assignment and add a new current one."""
        if not self.enabled("assignments"):
            return None
        if not assigned_to:
            raise ValidationError("assigned_to is required")
        priority = priority or "normal"
        if priority not in ASSIGNMENT_PRIORITIES:
            raise ValidationError(f"Invalid priority: {priority}",
                                  details={"priority": f"one of {', '.join(ASSIGNMENT_PRIORITIES)}"})

        CaseAssignment.query.filter_by(case_id=case_id, is_current=True).update(
            {"is_current": False}, synchronize_session="fetch",
        )
        assignment = CaseAssignment(
            case_id=case_id,
            assigned_to=assigned_to,
            assigned_by=assigned_by,
            due_date=parse_date(due_date),
            priority=priority,
            notes=notes,
            is_current=True,
        )
        db.session.add(assignment)
        db.session.flush()
        return assignment

    def get_current_assignment(self, case_id) -> CaseAssignment | None:
        if not self.enabled("assignments"):
            return None
        return CaseAssignment.query.filter_by(case_id=case_id, is_current=True).first()

    def get_assignment_history(self, case_id) -> list[CaseAssignment]:
        if not self.enabled("assignments"):
            return []
        stmt = (
            select(CaseAssignment)
            .where(CaseAssignment.case_id == case_id)
            .order_by(CaseAssignment.assigned_at.desc(), CaseAssignment.id.desc())
        )
        return list(db.session.execute(stmt).scalars())

    # ── Comments ─────────────────────────────────────────────────────────

    def add_comment(self, case_id, user_id, content, *, comment_type="general",
                    mentions=None) -> CaseComment | None:
        if not self.enabled("comments"):
            return None
        if not content or not content.strip():
            raise ValidationError("Comment content is required")
        if comment_type not in COMMENT_TYPES:
            raise ValidationError(f"Invalid comment type: {comment_type}")

        comment = CaseComment(
            case_id=case_id,
            user_id=user_id,
            comment_type=comment_type,
            content=content,
            mentions_json=json.dumps(sorted(set(mentions))) if mentions else None,
        )
        db.session.add(comment)
        db.session.flush()
        return comment

    def get_comments(self, case_id) -> list[CaseComment]:
        if not self.enabled("comments"):
            return []
        stmt = (
            select(CaseComment)
            .where(CaseComment.case_id == case_id)
            .order_by(CaseComment.created_at.asc(), CaseComment.id.asc())
        )
        return list(db.session.execute(stmt).scalars())

    # ── Notes ────────────────────────────────────────────────────────────

    def add_note(self, case_id, user_id, content, *, visibility="personal") -> CaseNote | None:
        if not self.enabled("notes"):
            return None
        if not content or not content.strip():
            raise ValidationError("Note content is required")
        if visibility not in NOTE_VISIBILITIES:
            raise ValidationError(f"Invalid note visibility: {visibility}")

        note = CaseNote(case_id=case_id, user_id=user_id, visibility=visibility, content=content)
        db.session.add(note)
        db.session.flush()
        return note

    def get_notes(self, case_id, user_id) -> list[CaseNote]:
        """Team notes plus *user_id*'s own personal notes, newest first."""
        if not self.enabled("notes"):
            return []
        stmt = (
            select(CaseNote)
            .where(
                CaseNote.case_id == case_id,
                or_(
                    CaseNote.visibility == "team",
                    (CaseNote.visibility == "personal") & (CaseNote.user_id == user_id),
                ),
            )
            .order_by(CaseNote.created_at.desc(), CaseNote.id.desc())
        )
        return list(db.session.execute(stmt).scalars())

    def resolve_note(self, note_id, resolving_user_id) -> CaseNote:
        note = db.session.get(CaseNote, note_id) if self.enabled("notes") else None
        if note is None:
            raise NotFoundError(resource="CaseNote", resource_id=note_id)
        if note.is_resolved:
            raise ConflictError("CaseNote", "resolved_at", message="Note is already resolved")
        note.resolved_at = datetime.now(timezone.utc)
        note.resolved_by = resolving_user_id
        db.session.flush()
        return note
