"""
ICSR Workflow Service
Validation rule domain model.

Models:
    - ValidationRule: configurable condition + check pair
    - ValidationResult: one row per triggered rule per run; each run
      replaces the previous result set for the case

Expressions use the restricted grammar of ``icsr.services.expression``.
"""

import json
from datetime import datetime, timezone

from icsr.models import db

# ── Constants ────────────────────────────────────────────────────────────────

RULE_TYPES = frozenset({"required", "format", "range", "cross_field", "date_logic", "custom"})
SEVERITIES = ("error", "warning", "info")


def _iso(value):
    return value.isoformat() if value else None


class ValidationRule(db.Model):
    """
    Validation rule definition.

    Business rules:
    - ``rule_code`` is globally unique.
    - System rules can be toggled but never edited or deleted.
    - An empty condition (or ``"true"``) means the rule always applies.
    """

    __tablename__ = "validation_rules"

    id = db.Column(db.Integer, primary_key=True)
    rule_code = db.Column(db.String(50), nullable=False, unique=True)
    rule_name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    rule_type = db.Column(db.String(20), nullable=False, default="custom",
                          comment="required | format | range | cross_field | date_logic | custom")
    severity = db.Column(db.String(10), nullable=False, default="error", comment="error | warning | info")
    condition_expression = db.Column(db.Text, nullable=True)
    validation_expression = db.Column(db.Text, nullable=False)
    error_message = db.Column(db.Text, nullable=False)
    field_path = db.Column(db.String(100), nullable=True)
    related_fields_json = db.Column(db.Text, nullable=True)
    is_system = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.String(36), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    @property
    def related_fields(self) -> list:
        if not self.related_fields_json:
            return []
        try:
            return json.loads(self.related_fields_json)
        except (json.JSONDecodeError, TypeError):
            return []

    @related_fields.setter
    def related_fields(self, value):
        self.related_fields_json = json.dumps(list(value)) if value else None

    def to_dict(self):
        return {
            "id": self.id,
            "rule_code": self.rule_code,
            "rule_name": self.rule_name,
            "description": self.description,
            "rule_type": self.rule_type,
            "severity": self.severity,
            "condition_expression": self.condition_expression,
            "validation_expression": self.validation_expression,
            "error_message": self.error_message,
            "field_path": self.field_path,
            "related_fields": self.related_fields,
            "is_system": self.is_system,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<ValidationRule {self.rule_code} [{self.severity}]>"


class ValidationResult(db.Model):
    """Triggered rule for one case.  Only warnings may be acknowledged."""

    __tablename__ = "validation_results"
    __table_args__ = (
        db.Index("ix_validation_results_case", "case_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    case_id = db.Column(db.String(36), nullable=False)
    rule_id = db.Column(db.Integer, db.ForeignKey("validation_rules.id", ondelete="SET NULL"), nullable=True)
    rule_code = db.Column(db.String(50), nullable=False)
    rule_name = db.Column(db.String(200), nullable=True)
    severity = db.Column(db.String(10), nullable=False)
    message = db.Column(db.Text, nullable=False)
    field_path = db.Column(db.String(100), nullable=True)
    field_value = db.Column(db.Text, nullable=True, comment="JSON snapshot of the field at run time")
    is_acknowledged = db.Column(db.Boolean, nullable=False, default=False)
    acknowledged_by = db.Column(db.String(36), nullable=True)
    acknowledged_at = db.Column(db.DateTime(timezone=True), nullable=True)
    acknowledgment_notes = db.Column(db.Text, nullable=True)
    validated_at = db.Column(db.DateTime(timezone=True), nullable=False,
                             default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        try:
            value = json.loads(self.field_value) if self.field_value is not None else None
        except (json.JSONDecodeError, TypeError):
            value = self.field_value
        return {
            "id": self.id,
            "case_id": self.case_id,
            "rule_id": self.rule_id,
            "rule_code": self.rule_code,
            "rule_name": self.rule_name,
            "severity": self.severity,
            "message": self.message,
            "field_path": self.field_path,
            "field_value": value,
            "is_acknowledged": self.is_acknowledged,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": _iso(self.acknowledged_at),
            "acknowledgment_notes": self.acknowledgment_notes,
            "validated_at": _iso(self.validated_at),
        }


# ── Built-in rule set ────────────────────────────────────────────────────────

SYSTEM_VALIDATION_RULES = [
    {
        "rule_code": "SYS-AGE-001",
        "rule_name": "Age Consistency",
        "description": "Patient age should be consistent with date of birth and event date",
        "rule_type": "cross_field",
        "severity": "warning",
        "condition_expression": "isValidDate(patient_birthdate) and patient_age",
        "validation_expression": "abs(calculateAgeFromDOB(patient_birthdate, receipt_date) - patient_age) <= 1",
        "error_message": "Patient age does not match calculated age from date of birth",
        "field_path": "patient_age",
        "related_fields": ["patient_birthdate", "receipt_date"],
    },
    {
        "rule_code": "SYS-DATE-001",
        "rule_name": "Date Sequence",
        "description": "Start dates must be before or equal to end dates",
        "rule_type": "date_logic",
        "severity": "error",
        "condition_expression": "true",
        "validation_expression": (
            "not reaction_start_date or not reaction_end_date"
            " or toDate(reaction_start_date) <= toDate(reaction_end_date)"
        ),
        "error_message": "Reaction end date cannot be before start date",
        "field_path": "reaction_end_date",
        "related_fields": ["reaction_start_date"],
    },
    {
        "rule_code": "SYS-DEATH-001",
        "rule_name": "Death Requires Death Date",
        "description": "If patient death is indicated, death date should be provided",
        "rule_type": "cross_field",
        "severity": "warning",
        "condition_expression": "patient_death == 1",
        "validation_expression": "not isEmpty(death_date)",
        "error_message": "Death date is recommended when patient death is indicated",
        "field_path": "death_date",
        "related_fields": ["patient_death"],
    },
    {
        "rule_code": "SYS-SERIOUS-001",
        "rule_name": "Serious Requires Criterion",
        "description": "If case is marked serious, at least one seriousness criterion must be selected",
        "rule_type": "cross_field",
        "severity": "error",
        "condition_expression": "is_serious == 1",
        "validation_expression": (
            "serious_death or serious_life_threat or serious_hospitalization"
            " or serious_disability or serious_congenital or serious_other"
        ),
        "error_message": "At least one seriousness criterion must be selected for a serious case",
        "field_path": "is_serious",
        "related_fields": [
            "serious_death", "serious_life_threat", "serious_hospitalization",
            "serious_disability", "serious_congenital", "serious_other",
        ],
    },
    {
        "rule_code": "SYS-EVENT-001",
        "rule_name": "Event During Treatment",
        "description": "Reaction onset should be on or after drug start date",
        "rule_type": "date_logic",
        "severity": "warning",
        "condition_expression": "isValidDate(reaction_start_date) and isValidDate(drug_start_date)",
        "validation_expression": "toDate(reaction_start_date) >= toDate(drug_start_date)",
        "error_message": "Reaction onset date is before drug start date - please verify",
        "field_path": "reaction_start_date",
        "related_fields": ["drug_start_date"],
    },
    {
        "rule_code": "SYS-REPORTER-001",
        "rule_name": "Reporter Contact Information",
        "description": "Reporter phone or email recommended for follow-up cases",
        "rule_type": "cross_field",
        "severity": "info",
        "condition_expression": "initial_or_followup == 2",
        "validation_expression": "not isEmpty(reporter_phone) or not isEmpty(reporter_email)",
        "error_message": "Reporter contact information is recommended for follow-up cases",
        "field_path": "reporter_phone",
        "related_fields": ["reporter_email", "initial_or_followup"],
    },
    {
        "rule_code": "SYS-CODING-001",
        "rule_name": "MedDRA Coding Required",
        "description": "Reaction should be coded with MedDRA PT for submission",
        "rule_type": "required",
        "severity": "error",
        "condition_expression": "workflow_status in ('QC Complete', 'Approved')",
        "validation_expression": "not isEmpty(reaction_pt_code)",
        "error_message": "MedDRA coding (PT) is required for submission",
        "field_path": "reaction_pt_code",
        "related_fields": [],
    },
    {
        "rule_code": "SYS-AGE-002",
        "rule_name": "Age Limit",
        "description": "Patient age should not exceed 150 years",
        "rule_type": "range",
        "severity": "warning",
        "condition_expression": "patient_age and patient_age_unit == '801'",
        "validation_expression": "patient_age <= 150",
        "error_message": "Patient age exceeds 150 years - please verify",
        "field_path": "patient_age",
        "related_fields": [],
    },
    {
        "rule_code": "SYS-DATE-002",
        "rule_name": "No Future Dates",
        "description": "Event and report dates should not be in the future",
        "rule_type": "date_logic",
        "severity": "error",
        "condition_expression": "isValidDate(reaction_start_date)",
        "validation_expression": "toDate(reaction_start_date) <= today()",
        "error_message": "Reaction date cannot be in the future",
        "field_path": "reaction_start_date",
        "related_fields": [],
    },
    {
        "rule_code": "SYS-DOSE-001",
        "rule_name": "Dose Requires Unit",
        "description": "If dose value is provided, unit should also be specified",
        "rule_type": "cross_field",
        "severity": "warning",
        "condition_expression": "drug_dose",
        "validation_expression": "not isEmpty(drug_dose_unit)",
        "error_message": "Dose unit should be specified when dose value is provided",
        "field_path": "drug_dose_unit",
        "related_fields": ["drug_dose"],
    },
]
