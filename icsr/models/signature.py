"""
Electronic signatures — ElectronicSignature model.

A signature is written once, as a side effect of a transition that requires
one (QC Complete → Approved).  Records are never updated or deleted.

``signature_hash`` is the SHA-256 digest of
``user_id|entity_type|entity_id|action|meaning|record_version|timestamp``
so the record can be recomputed and checked for tampering.
"""

from datetime import datetime, timezone

from icsr.models import db


class ElectronicSignature(db.Model):
    """
    Write-once attestation bound to a case version.

    Business rules:
    - The signer's password is re-verified before the record is written.
    - ``record_version`` is the case version at signing time.
    - ``username`` is a snapshot so the record stays readable if the user
      row later changes.
    """

    __tablename__ = "electronic_signatures"
    __table_args__ = (
        db.Index("ix_esig_entity", "entity_type", "entity_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), nullable=False)
    username = db.Column(db.String(100), nullable=True)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False,
                          default=lambda: datetime.now(timezone.utc))

    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.String(36), nullable=False)
    action = db.Column(db.String(60), nullable=False, comment="workflow_<to_status> e.g. workflow_approved")
    meaning = db.Column(db.Text, nullable=False, comment="Free-text attestation")
    record_version = db.Column(db.Integer, nullable=False)

    signature_hash = db.Column(db.String(64), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "username": self.username,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "meaning": self.meaning,
            "record_version": self.record_version,
            "signature_hash": self.signature_hash,
        }

    def __repr__(self):
        return f"<ElectronicSignature {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"
