"""
ICSR Workflow Service
Blueprint registry and shared blueprint helpers.
"""

import logging

from flask import request

from icsr.core.exceptions import ConflictError, NotFoundError, PermissionDenied, ValidationError
from icsr.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def json_body() -> dict:
    """Request JSON as a dict (empty dict for a missing or non-object body)."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def parse_bool(value):
    """Query-string boolean: 'true'/'1'/'yes' → True, 'false'/'0'/'no' → False, else None."""
    if value is None:
        return None
    text = str(value).strip().lower()
    if text in ("true", "1", "yes"):
        return True
    if text in ("false", "0", "no"):
        return False
    return None


def register_error_handlers(bp):
    """Map service exceptions to JSON error responses for *bp*."""

    @bp.errorhandler(NotFoundError)
    def _not_found(exc):
        return api_error(E.NOT_FOUND, f"{exc.resource} not found")

    @bp.errorhandler(ValidationError)
    def _invalid(exc):
        return api_error(E.VALIDATION_RULE, str(exc), details=exc.details or None)

    @bp.errorhandler(ConflictError)
    def _conflict(exc):
        return api_error(E.CONFLICT_DUPLICATE, str(exc))

    @bp.errorhandler(PermissionDenied)
    def _forbidden(exc):
        logger.warning("Permission denied: %s", exc, extra={"user_id": exc.user_id})
        return api_error(E.FORBIDDEN, "Permission denied")
