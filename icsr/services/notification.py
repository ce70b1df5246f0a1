"""
ICSR Workflow Service
Notification Service.

Creates in-app notifications for workflow events.  Every ``create`` commits
on its own so callers can send notifications after their main transaction
and treat a failure here as best-effort.
"""

from icsr.models import db
from icsr.models.notification import Notification


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, user_id, title, message="", type="workflow",
               entity_type="", entity_id=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (already committed).
        """
        notif = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    # ── Workflow event helpers ────────────────────────────────────────────

    @staticmethod
    def notify_case_assigned(case_id, assignee_id, to_status):
        return NotificationService.create(
            user_id=assignee_id,
            type="assignment",
            title="Case Assigned",
            message=f"You have been assigned case for {to_status}",
            entity_type="case",
            entity_id=case_id,
        )

    @staticmethod
    def notify_case_rejected(case_id, owner_id, reason=None):
        return NotificationService.create(
            user_id=owner_id,
            title="Case Rejected",
            message=f"Your case has been rejected: {reason or 'No reason provided'}",
            entity_type="case",
            entity_id=case_id,
        )

    @staticmethod
    def notify_case_approved(case_id, owner_id):
        return NotificationService.create(
            user_id=owner_id,
            title="Case Approved",
            message="Your case has been approved for submission",
            entity_type="case",
            entity_id=case_id,
        )
