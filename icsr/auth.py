"""
ICSR Workflow Service
Request actor resolution and permission decorators.

Provides:
    - require_actor: resolve the acting user from the X-User-Id header
    - require_permission: enforce a permission code for an endpoint

The engines never read ambient state; blueprints pass ``g.actor``,
``g.permissions`` and ``g.session_id`` into every service call.

Headers:
    X-User-Id     — id of an active user (required)
    X-Session-Id  — opaque session id, recorded on audit rows (optional)
"""

import functools
import logging

from flask import g, request

from icsr.models import db
from icsr.models.auth import User
from icsr.services.contracts import Actor
from icsr.services.permission import has_permission
from icsr.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def require_actor(f):
    """
    Decorator: resolve the acting user.

    Sets g.current_user, g.actor, g.permissions and g.session_id.
    """
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        user_id = request.headers.get("X-User-Id", "").strip()
        if not user_id:
            return api_error(E.UNAUTHENTICATED, "Authentication required. Provide X-User-Id header.")

        user = db.session.get(User, user_id)
        if user is None or not user.is_active:
            logger.warning("Unknown or inactive user on %s", request.path, extra={"user_id": user_id})
            return api_error(E.UNAUTHENTICATED, "Unknown or inactive user")

        g.current_user = user
        g.actor = Actor(id=user.id, username=user.username)
        g.permissions = user.permissions
        g.session_id = request.headers.get("X-Session-Id") or None
        return f(*args, **kwargs)

    return decorated


def require_permission(permission: str):
    """
    Decorator: require a permission code (``*`` satisfies any).

    Usage:
        @require_actor
        @require_permission("system.configure")
        def create_rule(): ...
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            if not has_permission(getattr(g, "permissions", None), permission):
                logger.warning(
                    "Access denied: '%s' required for %s", permission, request.path,
                    extra={"user_id": getattr(getattr(g, "actor", None), "id", None)},
                )
                return api_error(E.FORBIDDEN, "Permission denied")
            return f(*args, **kwargs)
        return decorated
    return decorator
