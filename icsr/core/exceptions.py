"""
Service-wide exception hierarchy.

Services raise these types; blueprints register a handler per type once
and get consistent HTTP status codes everywhere.

The workflow transition path does not raise: it reports failures through
``TransitionResult`` so the caller always receives a typed outcome.

Usage:
    from icsr.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ValidationRule", resource_id=rule_id)
    raise ValidationError("Invalid expression: ...", details={"field": "..."})
"""


class NotFoundError(Exception):
    """Raised when a requested case, rule or note does not exist.

    Maps to HTTP 404.

    Args:
        resource: Human-readable entity name (e.g. "Case", "ValidationRule").
        resource_id: The key that was looked up. Included in logs, not in HTTP response.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule
    (invalid expression, system rule edit, missing required field).

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique value or act on
    a record whose state no longer allows it (e.g. a resolved note).

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None,
                 message: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(message or f"{resource} with {field}={value!r} already exists")


class PermissionDenied(Exception):
    """Raised when an actor lacks the permission an operation requires.

    Maps to HTTP 403.
    """

    def __init__(self, user_id: str | None, permission: str):
        self.user_id = user_id
        self.permission = permission
        super().__init__(f"User {user_id} lacks permission '{permission}'")
