"""
Crypto utilities — bcrypt password hashing and signature digests.

Password hashing:
  Supports both bcrypt ($2b$) and legacy werkzeug (scrypt/pbkdf2) hashes
  so accounts provisioned through other tooling still verify.

Signature digests:
  ``signature_digest`` produces the SHA-256 hex digest stored on every
  electronic signature.  The inputs are joined with ``|`` in a fixed order
  so a stored signature can be recomputed and compared later.
"""

import hashlib

import bcrypt
from flask import current_app, has_app_context
from werkzeug.security import check_password_hash


def _log_rounds() -> int:
    if has_app_context():
        return int(current_app.config.get("BCRYPT_LOG_ROUNDS", 12))
    return 12


def hash_password(plain_password: str) -> str:
    """Hash a plain-text password with bcrypt (BCRYPT_LOG_ROUNDS, default 12)."""
    salt = bcrypt.gensalt(rounds=_log_rounds())
    return bcrypt.hashpw(plain_password.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain_password: str, password_hash: str) -> bool:
    """Verify a plain-text password against its hash.

    Handles both bcrypt ($2b$/$2a$) and werkzeug (scrypt/pbkdf2) formats.
    """
    if not password_hash or plain_password is None:
        return False

    if password_hash.startswith(("$2b$", "$2a$", "$2y$")):
        return bcrypt.checkpw(
            plain_password.encode("utf-8"),
            password_hash.encode("utf-8"),
        )

    return check_password_hash(password_hash, plain_password)


def signature_digest(*parts) -> str:
    """SHA-256 hex digest of *parts* joined with ``|``."""
    payload = "|".join("" if p is None else str(p) for p in parts)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
