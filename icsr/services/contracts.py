"""
Data contracts exchanged between callers and the workflow / validation
engines.  These are plain dataclasses, not persisted.
"""

from dataclasses import dataclass, field

# Reason strings returned in TransitionResult.error.  Callers match on these.
CASE_NOT_FOUND = "Case not found"
PERMISSION_DENIED = "Permission denied"
COMMENT_REQUIRED = "Comment is required for this action"
ASSIGNMENT_REQUIRED = "Assignment is required for this action"
SIGNATURE_REQUIRED = "Electronic signature is required for this action"
INVALID_SIGNATURE = "Invalid signature"
CASE_MODIFIED = "Case was modified by another user"
TRANSITION_FAILED_PREFIX = "Failed to transition case: "


def invalid_transition_message(from_status: str, to_status: str) -> str:
    return f"Invalid transition from {from_status} to {to_status}"


# TransitionResult.code values
CODE_NOT_FOUND = "not_found"
CODE_INVALID_TRANSITION = "invalid_transition"
CODE_PERMISSION_DENIED = "permission_denied"
CODE_PRECONDITION = "precondition_failed"
CODE_CONFLICT = "conflict"
CODE_ERROR = "error"


@dataclass(frozen=True)
class Actor:
    """The user performing an operation."""

    id: str
    username: str | None = None


@dataclass(frozen=True)
class SignatureInput:
    password: str
    meaning: str


@dataclass(frozen=True)
class TransitionRequest:
    case_id: str
    to_status: str
    comment: str | None = None
    assign_to: str | None = None
    signature: SignatureInput | None = None


@dataclass
class TransitionResult:
    success: bool
    case: dict | None = None
    error: str | None = None
    code: str | None = None

    @classmethod
    def failed(cls, code: str, error: str) -> "TransitionResult":
        return cls(success=False, error=error, code=code)

    def to_dict(self) -> dict:
        d = {"success": self.success}
        if self.case is not None:
            d["case"] = self.case
        if self.error is not None:
            d["error"] = self.error
        return d


@dataclass
class ValidationSummary:
    case_id: str
    errors: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    info: list = field(default_factory=list)
    validated_at: str | None = None
    validation_duration_ms: int = 0

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def warning_count(self) -> int:
        return len(self.warnings)

    @property
    def info_count(self) -> int:
        return len(self.info)

    @property
    def is_valid(self) -> bool:
        return self.error_count == 0

    @property
    def has_unacknowledged_warnings(self) -> bool:
        return any(not w.get("is_acknowledged") for w in self.warnings)

    @property
    def can_submit(self) -> bool:
        return self.is_valid and not self.has_unacknowledged_warnings

    def to_dict(self) -> dict:
        return {
            "case_id": self.case_id,
            "is_valid": self.is_valid,
            "error_count": self.error_count,
            "warning_count": self.warning_count,
            "info_count": self.info_count,
            "errors": self.errors,
            "warnings": self.warnings,
            "info": self.info,
            "has_unacknowledged_warnings": self.has_unacknowledged_warnings,
            "can_submit": self.can_submit,
            "validated_at": self.validated_at,
            "validation_duration_ms": self.validation_duration_ms,
        }


@dataclass
class RuleTestResult:
    passed: bool
    triggered: bool
    result: dict | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        d = {"passed": self.passed, "triggered": self.triggered}
        if self.result is not None:
            d["result"] = self.result
        if self.error is not None:
            d["error"] = self.error
        return d
