"""
Role-Based Access Control helpers.

Permissions are passed explicitly into every engine operation as a set of
dotted codes; the wildcard ``*`` satisfies any check.

Usage:
    from icsr.services.permission import check_permission, has_permission

    # Raises PermissionDenied if not allowed
    check_permission(permissions, "case.assign", user_id=actor.id)

    # Boolean check
    if has_permission(permissions, "workflow.approve"):
        ...
"""

from collections.abc import Iterable

from icsr.core.exceptions import PermissionDenied
from icsr.models.auth import PERMISSION_WILDCARD


def has_permission(permissions: Iterable[str] | None, permission: str) -> bool:
    """
    Check whether *permissions* grants *permission*.

    Args:
        permissions: The caller's permission codes.
        permission: Required code (e.g. 'workflow.reject').

    Returns:
        True if the code is present or the set contains ``*``.
    """
    if not permissions:
        return False
    granted = permissions if isinstance(permissions, (set, frozenset)) else set(permissions)
    return PERMISSION_WILDCARD in granted or permission in granted


def check_permission(permissions: Iterable[str] | None, permission: str,
                     user_id: str | None = None) -> None:
    """Raise PermissionDenied unless *permissions* grants *permission*."""
    if not has_permission(permissions, permission):
        raise PermissionDenied(user_id, permission)
