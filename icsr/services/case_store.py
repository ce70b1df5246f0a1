"""
Case Store — workflow-facing access to ``cases`` rows.

Reads ignore soft-deleted rows.  ``update_workflow`` is a single UPDATE
that bumps ``version``; when ``expected_version`` is given the UPDATE also
filters on it, so a concurrent writer makes it match zero rows.
"""

from datetime import datetime, timezone

from icsr.models import db
from icsr.models.case import Case


class SqlCaseStore:
    """SQLAlchemy-backed case store.  Does not commit."""

    def get(self, case_id: str) -> Case | None:
        return (
            Case.query
            .filter(Case.id == case_id, Case.deleted_at.is_(None))
            .first()
        )

    def update_workflow(self, case_id: str, fields: dict, *,
                        expected_version: int | None = None,
                        increment_rejections: bool = False) -> bool:
        """
        Apply *fields* to the case and increment its version.

        Returns:
            True if a row was updated, False if the case is gone or its
            version no longer matches *expected_version*.
        """
        values = dict(fields)
        values["version"] = Case.version + 1
        values["updated_at"] = datetime.now(timezone.utc)
        if increment_rejections:
            values["rejection_count"] = Case.rejection_count + 1

        q = Case.query.filter(Case.id == case_id, Case.deleted_at.is_(None))
        if expected_version is not None:
            q = q.filter(Case.version == expected_version)
        updated = q.update(values, synchronize_session="fetch")
        return updated == 1
