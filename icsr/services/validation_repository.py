"""
Validation Rule Repository — storage for rule definitions and per-case
results.  Writes ``flush`` only; ``ValidationEngineService`` commits.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import delete, func, or_, select

from icsr.models import db
from icsr.models.validation import SYSTEM_VALIDATION_RULES, ValidationResult, ValidationRule

logger = logging.getLogger(__name__)


class ValidationRepository:
    # ── Rules ────────────────────────────────────────────────────────────

    def initialize_system_rules(self, rules=None) -> int:
        """Insert built-in rules whose code is not stored yet.  Returns the number added."""
        rules = SYSTEM_VALIDATION_RULES if rules is None else rules
        existing = set(db.session.execute(select(ValidationRule.rule_code)).scalars())
        added = 0
        for definition in rules:
            if definition["rule_code"] in existing:
                continue
            rule = ValidationRule(
                rule_code=definition["rule_code"],
                rule_name=definition["rule_name"],
                description=definition.get("description"),
                rule_type=definition["rule_type"],
                severity=definition["severity"],
                condition_expression=definition.get("condition_expression"),
                validation_expression=definition["validation_expression"],
                error_message=definition["error_message"],
                field_path=definition.get("field_path"),
                is_system=True,
                is_active=True,
            )
            rule.related_fields = definition.get("related_fields")
            db.session.add(rule)
            added += 1
        db.session.flush()
        return added

    def get_rules(self, *, rule_type=None, severity=None, field_path=None,
                  is_system=None, is_active=None, search=None) -> list[ValidationRule]:
        stmt = select(ValidationRule)
        if rule_type:
            stmt = stmt.where(ValidationRule.rule_type == rule_type)
        if severity:
            stmt = stmt.where(ValidationRule.severity == severity)
        if field_path:
            stmt = stmt.where(ValidationRule.field_path == field_path)
        if is_system is not None:
            stmt = stmt.where(ValidationRule.is_system.is_(bool(is_system)))
        if is_active is not None:
            stmt = stmt.where(ValidationRule.is_active.is_(bool(is_active)))
        if search:
            pattern = f"%{search}%"
            stmt = stmt.where(or_(
                ValidationRule.rule_code.ilike(pattern),
                ValidationRule.rule_name.ilike(pattern),
                ValidationRule.description.ilike(pattern),
            ))
        stmt = stmt.order_by(ValidationRule.is_system.desc(), ValidationRule.rule_code.asc())
        return list(db.session.execute(stmt).scalars())

    def get_active_rules(self) -> list[ValidationRule]:
        return self.get_rules(is_active=True)

    def get_rule(self, rule_id) -> ValidationRule | None:
        return db.session.get(ValidationRule, rule_id)

    def get_rule_by_code(self, rule_code: str) -> ValidationRule | None:
        return ValidationRule.query.filter_by(rule_code=rule_code).first()

    def add_rule(self, rule: ValidationRule) -> ValidationRule:
        db.session.add(rule)
        db.session.flush()
        return rule

    def delete_rule(self, rule: ValidationRule) -> None:
        db.session.delete(rule)
        db.session.flush()

    # ── Results ──────────────────────────────────────────────────────────

    def replace_results(self, case_id: str, results: list[ValidationResult]) -> list[ValidationResult]:
        """Drop every stored result for *case_id* and store *results* instead."""
        db.session.execute(delete(ValidationResult).where(ValidationResult.case_id == case_id))
        for result in results:
            result.case_id = case_id
            db.session.add(result)
        db.session.flush()
        return results

    def get_results(self, case_id: str) -> list[ValidationResult]:
        stmt = (
            select(ValidationResult)
            .where(ValidationResult.case_id == case_id)
            .order_by(ValidationResult.id.asc())
        )
        return list(db.session.execute(stmt).scalars())

    def acknowledge_warnings(self, case_id: str, result_ids, acknowledged_by=None, notes=None) -> int:
        """Mark the given warning rows acknowledged.  Errors and info rows are left alone."""
        if not result_ids:
            return 0
        updated = (
            ValidationResult.query
            .filter(
                ValidationResult.case_id == case_id,
                ValidationResult.id.in_(list(result_ids)),
                ValidationResult.severity == "warning",
                ValidationResult.is_acknowledged.is_(False),
            )
            .update({
                "is_acknowledged": True,
                "acknowledged_by": acknowledged_by,
                "acknowledged_at": datetime.now(timezone.utc),
                "acknowledgment_notes": notes,
            }, synchronize_session="fetch")
        )
        return updated

    # ── Statistics ───────────────────────────────────────────────────────

    def get_statistics(self, top: int = 10) -> dict:
        total = db.session.execute(select(func.count(ValidationRule.id))).scalar_one()
        active = db.session.execute(
            select(func.count(ValidationRule.id)).where(ValidationRule.is_active.is_(True))
        ).scalar_one()
        system = db.session.execute(
            select(func.count(ValidationRule.id)).where(ValidationRule.is_system.is_(True))
        ).scalar_one()

        by_type = dict(db.session.execute(
            select(ValidationRule.rule_type, func.count(ValidationRule.id)).group_by(ValidationRule.rule_type)
        ).all())
        by_severity = dict(db.session.execute(
            select(ValidationRule.severity, func.count(ValidationRule.id)).group_by(ValidationRule.severity)
        ).all())

        hits = func.count(ValidationResult.id)
        most_triggered = [
            {"rule_code": code, "rule_name": name, "count": count}
            for code, name, count in db.session.execute(
                select(ValidationResult.rule_code, ValidationResult.rule_name, hits)
                .group_by(ValidationResult.rule_code, ValidationResult.rule_name)
                .order_by(hits.desc(), ValidationResult.rule_code.asc())
                .limit(top)
            ).all()
        ]

        return {
            "total_rules": total,
            "active_rules": active,
            "system_rules": system,
            "custom_rules": total - system,
            "by_type": by_type,
            "by_severity": by_severity,
            "most_triggered": most_triggered,
        }
