"""
Validation Engine Service

Runs the active validation rules against a case snapshot and stores the
triggered results, replacing whatever the previous run stored.

Severity semantics:
  - error    blocks submission
  - warning  blocks submission until acknowledged
  - info     never blocks

A rule whose expression fails to evaluate yields a synthetic warning
("Rule evaluation failed: ...") instead of aborting the run.

Rule authoring:
  - ``rule_code`` is unique
  - system rules may be toggled, never edited or deleted
  - both expressions are dry-run against ``{"test": True}`` before any write
"""

import json
import logging
import time
from datetime import datetime, timezone

from icsr.core.exceptions import ConflictError, NotFoundError, ValidationError
from icsr.models import db
from icsr.models.validation import RULE_TYPES, SEVERITIES, ValidationResult, ValidationRule
from icsr.services.audit_service import AuditService
from icsr.services.contracts import RuleTestResult, ValidationSummary
from icsr.services.expression import ExpressionError, evaluate_bool, is_always_true
from icsr.services.validation_repository import ValidationRepository

logger = logging.getLogger(__name__)

DRY_RUN_CONTEXT = {"test": True}

_EDITABLE_FIELDS = (
    "rule_name", "description", "rule_type", "severity", "condition_expression",
    "validation_expression", "error_message", "field_path", "related_fields", "is_active",
)


# ── Case context ─────────────────────────────────────────────────────────────

def _first(items):
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return {}


def _flag(value) -> int:
    return 1 if value in (True, 1, "1", "true", "yes", "Y") else 0


def _number(value):
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            try:
                return float(text)
            except ValueError:
                return value
    return value


def build_case_context(case: dict) -> dict:
    """
    Flatten a case snapshot into the names rules refer to.

    Top-level scalar values are copied as-is, so a snapshot that is already
    flat works unchanged.  Only the first reaction, drug and reporter are
    inspected.
    """
    case = case or {}
    context = {k: v for k, v in case.items() if not isinstance(v, (dict, list))}

    seriousness = case.get("seriousness") or {}
    patient = case.get("patient") or {}
    reaction = _first(case.get("reactions"))
    drug = _first(case.get("drugs"))
    reporter = _first(case.get("reporters"))

    criteria = {
        "serious_death": _flag(seriousness.get("death")),
        "serious_life_threat": _flag(seriousness.get("life_threatening")),
        "serious_hospitalization": _flag(seriousness.get("hospitalization")),
        "serious_disability": _flag(seriousness.get("disability")),
        "serious_congenital": _flag(seriousness.get("congenital_anomaly")),
        "serious_other": _flag(seriousness.get("other")),
    }
    derived = dict(criteria) if seriousness else {}
    if "serious" in case or seriousness:
        derived["is_serious"] = 1 if _flag(case.get("serious")) or any(criteria.values()) else 0

    age_unit = patient.get("age_unit")
    derived.update({
        "initial_or_followup": _number(case.get("initial_or_followup")),
        "patient_initials": patient.get("initials"),
        "patient_age": _number(patient.get("age")),
        "patient_age_unit": str(age_unit) if age_unit is not None else None,
        "patient_sex": patient.get("sex"),
        "patient_birthdate": patient.get("birthdate"),
        "patient_death": _flag(patient.get("death")) if "death" in patient else None,
        "death_date": patient.get("death_date"),
        "reaction_term": reaction.get("term"),
        "reaction_pt_code": reaction.get("pt_code"),
        "reaction_start_date": reaction.get("start_date"),
        "reaction_end_date": reaction.get("end_date"),
        "reaction_outcome": reaction.get("outcome"),
        "drug_name": drug.get("name"),
        "drug_start_date": drug.get("start_date"),
        "drug_stop_date": drug.get("stop_date"),
        "drug_dose": _number(drug.get("dose")),
        "drug_dose_unit": drug.get("dose_unit"),
        "drug_route": drug.get("route"),
        "drug_indication": drug.get("indication"),
        "reporter_name": reporter.get("name"),
        "reporter_phone": reporter.get("phone"),
        "reporter_email": reporter.get("email"),
        "reporter_qualification": reporter.get("qualification"),
        "reporter_country": reporter.get("country"),
    })

    for key, value in derived.items():
        if value is not None or key not in context:
            context[key] = value
    return context


# ── Service ──────────────────────────────────────────────────────────────────

class ValidationEngineService:
    def __init__(self, repository: ValidationRepository | None = None, audit: AuditService | None = None):
        self.repository = repository or ValidationRepository()
        self.audit = audit or AuditService()

    def initialize_system_rules(self) -> int:
        added = self.repository.initialize_system_rules()
        db.session.commit()
        if added:
            logger.info("Seeded %d system validation rules", added)
        return added

    # ── Running ──────────────────────────────────────────────────────────

    def run_validation(self, case: dict, validated_by=None) -> ValidationSummary:
        """Evaluate every active rule against *case* and store the triggered results."""
        started = time.perf_counter()
        case_id = case["id"]
        context = build_case_context(case)

        results = []
        for rule in self.repository.get_active_rules():
            result = self._evaluate_rule(rule, context)
            if result is not None:
                results.append(result)

        try:
            stored = self.repository.replace_results(case_id, results)
            self.audit.log(
                action_type="validation_run",
                actor=validated_by,
                entity_type="case",
                entity_id=case_id,
                details={"triggered": len(stored)},
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        duration_ms = int((time.perf_counter() - started) * 1000)
        summary = self._summarize(case_id, stored, duration_ms)
        logger.info(
            "Validation run: %d errors, %d warnings, %d info in %dms",
            summary.error_count, summary.warning_count, summary.info_count, duration_ms,
            extra={"case_id": case_id, "duration_ms": duration_ms},
        )
        return summary

    def _evaluate_rule(self, rule: ValidationRule, context: dict) -> ValidationResult | None:
        try:
            if not is_always_true(rule.condition_expression) and \
                    not evaluate_bool(rule.condition_expression, context):
                return None
            if evaluate_bool(rule.validation_expression, context):
                return None
            severity, message = rule.severity, rule.error_message
        except Exception as exc:
            logger.warning("Rule evaluation failed: %s", exc,
                           extra={"rule_code": rule.rule_code, "case_id": context.get("id")})
            severity, message = "warning", f"Rule evaluation failed: {exc}"

        value = context.get(rule.field_path) if rule.field_path else None
        return ValidationResult(
            rule_id=rule.id,
            rule_code=rule.rule_code,
            rule_name=rule.rule_name,
            severity=severity,
            message=message,
            field_path=rule.field_path,
            field_value=json.dumps(value, default=str) if value is not None else None,
        )

    @staticmethod
    def _summarize(case_id, rows, duration_ms=0) -> ValidationSummary:
        summary = ValidationSummary(case_id=case_id, validation_duration_ms=duration_ms)
        latest = None
        for row in rows:
            bucket = {"error": summary.errors, "warning": summary.warnings}.get(row.severity, summary.info)
            bucket.append(row.to_dict())
            if row.validated_at and (latest is None or row.validated_at > latest):
                latest = row.validated_at
        summary.validated_at = (latest or datetime.now(timezone.utc)).isoformat()
        return summary

    def get_validation_results(self, case_id: str) -> ValidationSummary:
        """Summary of the last stored run (no re-evaluation)."""
        return self._summarize(case_id, self.repository.get_results(case_id))

    def acknowledge_warnings(self, case_id: str, result_ids, notes=None, acknowledged_by=None) -> int:
        """Acknowledge warnings; error and info results are ignored."""
        try:
            count = self.repository.acknowledge_warnings(
                case_id, result_ids,
                acknowledged_by=acknowledged_by.id if acknowledged_by else None,
                notes=notes,
            )
            if count:
                self.audit.log(
                    action_type="warning_acknowledge",
                    actor=acknowledged_by,
                    entity_type="case",
                    entity_id=case_id,
                    details={"result_ids": list(result_ids), "notes": notes},
                )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return count

    # ── Rule CRUD ────────────────────────────────────────────────────────

    def get_rules(self, **filters) -> list[ValidationRule]:
        return self.repository.get_rules(**filters)

    def get_rule(self, rule_id) -> ValidationRule | None:
        return self.repository.get_rule(rule_id)

    def _require_rule(self, rule_id) -> ValidationRule:
        rule = self.repository.get_rule(rule_id)
        if rule is None:
            raise NotFoundError(resource="ValidationRule", resource_id=rule_id)
        return rule

    @staticmethod
    def _check_fields(data: dict) -> None:
        severity = data.get("severity")
        if severity is not None and severity not in SEVERITIES:
            raise ValidationError(f"Invalid severity: {severity}",
                                  details={"severity": f"one of {', '.join(SEVERITIES)}"})
        rule_type = data.get("rule_type")
        if rule_type is not None and rule_type not in RULE_TYPES:
            raise ValidationError(f"Invalid rule type: {rule_type}",
                                  details={"rule_type": f"one of {', '.join(sorted(RULE_TYPES))}"})

    @staticmethod
    def dry_run(condition_expression, validation_expression) -> None:
        """Evaluate both expressions against a minimal context; raise ValidationError on failure."""
        try:
            if not is_always_true(condition_expression):
                evaluate_bool(condition_expression, DRY_RUN_CONTEXT)
            evaluate_bool(validation_expression, DRY_RUN_CONTEXT)
        except ExpressionError as exc:
            raise ValidationError(f"Invalid expression: {exc}") from exc

    def create_rule(self, data: dict, created_by=None) -> ValidationRule:
        missing = [f for f in ("rule_code", "rule_name", "validation_expression", "error_message")
                   if not str(data.get(f) or "").strip()]
        if missing:
            raise ValidationError("Missing required fields", details={f: "required" for f in missing})
        self._check_fields(data)

        code = data["rule_code"].strip()
        if self.repository.get_rule_by_code(code) is not None:
            raise ConflictError("ValidationRule", "rule_code", code,
                                message=f"Rule code {code} already exists")
        self.dry_run(data.get("condition_expression"), data["validation_expression"])

        rule = ValidationRule(
            rule_code=code,
            rule_name=data["rule_name"],
            description=data.get("description"),
            rule_type=data.get("rule_type") or "custom",
            severity=data.get("severity") or "error",
            condition_expression=data.get("condition_expression") or None,
            validation_expression=data["validation_expression"],
            error_message=data["error_message"],
            field_path=data.get("field_path"),
            is_system=False,
            is_active=bool(data.get("is_active", True)),
            created_by=created_by.id if created_by else None,
        )
        rule.related_fields = data.get("related_fields")
        try:
            self.repository.add_rule(rule)
            self.audit.log(action_type="rule_create", actor=created_by,
                           entity_type="validation_rule", entity_id=rule.id,
                           new_value=rule.rule_code)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info("Validation rule created", extra={"rule_code": rule.rule_code})
        return rule

    def update_rule(self, rule_id, data: dict, updated_by=None) -> ValidationRule:
        rule = self._require_rule(rule_id)
        changes = {k: data[k] for k in _EDITABLE_FIELDS if k in data}
        if rule.is_system:
            if set(changes) - {"is_active"}:
                raise ValidationError("System rules cannot be edited")
            if "is_active" in changes:
                return self.toggle_rule(rule_id, changes["is_active"], updated_by)
            return rule

        self._check_fields(changes)
        for field in ("rule_name", "validation_expression", "error_message"):
            if field in changes and not (changes[field] or "").strip():
                raise ValidationError(f"{field} cannot be empty", details={field: "required"})
        self.dry_run(
            changes.get("condition_expression", rule.condition_expression),
            changes.get("validation_expression", rule.validation_expression),
        )

        for key, value in changes.items():
            if key == "related_fields":
                rule.related_fields = value
            elif key == "is_active":
                rule.is_active = bool(value)
            elif key == "condition_expression":
                rule.condition_expression = value or None
            else:
                setattr(rule, key, value)
        try:
            self.audit.log(action_type="rule_update", actor=updated_by,
                           entity_type="validation_rule", entity_id=rule.id,
                           details={"fields": sorted(changes)})
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return rule

    def toggle_rule(self, rule_id, is_active: bool, toggled_by=None) -> ValidationRule:
        rule = self._require_rule(rule_id)
        previous = rule.is_active
        rule.is_active = bool(is_active)
        try:
            self.audit.log(action_type="rule_toggle", actor=toggled_by,
                           entity_type="validation_rule", entity_id=rule.id,
                           old_value=str(previous), new_value=str(rule.is_active))
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return rule

    def delete_rule(self, rule_id, deleted_by=None) -> bool:
        rule = self._require_rule(rule_id)
        if rule.is_system:
            raise ValidationError("System rules cannot be deleted")
        code = rule.rule_code
        try:
            self.repository.delete_rule(rule)
            self.audit.log(action_type="rule_delete", actor=deleted_by,
                           entity_type="validation_rule", entity_id=rule_id, old_value=code)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info("Validation rule deleted", extra={"rule_code": code})
        return True

    def test_rule(self, rule: dict, sample_data: dict) -> RuleTestResult:
        """Dry-run an unsaved rule against *sample_data*; nothing is stored."""
        context = build_case_context(sample_data or {})
        try:
            condition = rule.get("condition_expression")
            triggered = is_always_true(condition) or evaluate_bool(condition, context)
            if not triggered:
                return RuleTestResult(passed=True, triggered=False)
            passed = evaluate_bool(rule.get("validation_expression") or "", context)
        except ExpressionError as exc:
            return RuleTestResult(passed=False, triggered=False, error=str(exc))

        if passed:
            return RuleTestResult(passed=True, triggered=True)
        field_path = rule.get("field_path")
        return RuleTestResult(passed=False, triggered=True, result={
            "case_id": "test",
            "rule_code": rule.get("rule_code"),
            "rule_name": rule.get("rule_name"),
            "severity": rule.get("severity") or "error",
            "message": rule.get("error_message"),
            "field_path": field_path,
            "field_value": context.get(field_path) if field_path else None,
            "is_acknowledged": False,
            "validated_at": datetime.now(timezone.utc).isoformat(),
        })

    def get_validation_statistics(self) -> dict:
        return self.repository.get_statistics()
