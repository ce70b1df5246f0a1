"""
Credential verification for electronic signatures.

Signing re-checks the user's password against the stored hash, independent
of whatever session the request arrived on.
"""

import logging

from icsr.models import db
from icsr.models.auth import User
from icsr.utils.crypto import verify_password

logger = logging.getLogger(__name__)


class PasswordCredentialVerifier:
    """Verify a user's password against ``users.password_hash``."""

    def verify(self, user_id: str, secret: str) -> bool:
        user = db.session.get(User, user_id)
        if user is None or not user.is_active:
            logger.warning("Signature verification for unknown or inactive user",
                           extra={"user_id": user_id})
            return False
        return verify_password(secret, user.password_hash)
