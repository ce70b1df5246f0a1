"""
Audit Service — append-only audit trail and electronic signatures.

All writes use ``flush`` only; the caller owns the transaction.  The
workflow engine commits the transition audit row together with the status
change, so a rolled-back transition leaves no audit trace.
"""

import logging
from datetime import UTC, datetime

from sqlalchemy import select

from icsr.models import db
from icsr.models.audit import AuditLog, write_audit
from icsr.models.signature import ElectronicSignature
from icsr.utils.crypto import signature_digest

logger = logging.getLogger(__name__)


def _timestamp_key(ts: datetime) -> str:
    """Stable text form of a timestamp across backends (naive UTC)."""
    if ts.tzinfo is not None:
        ts = ts.astimezone(UTC).replace(tzinfo=None)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.%f")


def _signature_hash(sig: ElectronicSignature) -> str:
    return signature_digest(
        sig.user_id, sig.entity_type, sig.entity_id, sig.action,
        sig.meaning, sig.record_version, _timestamp_key(sig.timestamp),
    )


class AuditService:
    """Audit log writer and reader."""

    def log(self, *, action_type, actor=None, session_id=None, entity_type=None,
            entity_id=None, old_value=None, new_value=None, details=None) -> AuditLog:
        return write_audit(
            action_type=action_type,
            user_id=actor.id if actor else None,
            username=actor.username if actor else None,
            session_id=session_id,
            entity_type=entity_type,
            entity_id=entity_id,
            old_value=old_value,
            new_value=new_value,
            details=details,
        )

    def log_workflow_transition(self, *, case_id, from_status, to_status, actor,
                                session_id=None, comment=None) -> AuditLog:
        return self.log(
            action_type="workflow_transition",
            actor=actor,
            session_id=session_id,
            entity_type="case",
            entity_id=case_id,
            old_value=from_status,
            new_value=to_status,
            details={"comment": comment},
        )

    def log_permission_denied(self, *, actor, session_id=None, attempted_action,
                              entity_type=None, entity_id=None, details=None) -> AuditLog:
        payload = {"attempted_action": attempted_action}
        payload.update(details or {})
        return self.log(
            action_type="permission_denied",
            actor=actor,
            session_id=session_id,
            entity_type=entity_type,
            entity_id=entity_id,
            details=payload,
        )

    # ── Electronic signatures ────────────────────────────────────────────

    def create_signature(self, *, actor, entity_type, entity_id, action, meaning,
                         record_version, session_id=None) -> ElectronicSignature:
        """Write a signature record plus its ``electronic_signature`` audit row."""
        sig = ElectronicSignature(
            user_id=actor.id,
            username=actor.username,
            timestamp=datetime.now(UTC),
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            meaning=meaning,
            record_version=record_version,
        )
        sig.signature_hash = _signature_hash(sig)
        db.session.add(sig)
        db.session.flush()

        self.log(
            action_type="electronic_signature",
            actor=actor,
            session_id=session_id,
            entity_type=entity_type,
            entity_id=entity_id,
            details={
                "signature_id": sig.id,
                "action": action,
                "meaning": meaning,
                "record_version": record_version,
            },
        )
        return sig

    def verify_signature(self, signature_id: int) -> bool:
        """Recompute the digest of a stored signature and compare."""
        sig = db.session.get(ElectronicSignature, signature_id)
        if sig is None:
            return False
        return sig.signature_hash == _signature_hash(sig)

    # ── Queries ──────────────────────────────────────────────────────────

    def get_entity_history(self, entity_type: str, entity_id: str) -> list[AuditLog]:
        """Audit rows for one entity, newest first."""
        stmt = (
            select(AuditLog)
            .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == str(entity_id))
            .order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
        )
        return list(db.session.execute(stmt).scalars())
