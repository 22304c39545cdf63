"""Credential primitives: password hashing and auth token key generation."""

import secrets
import bcrypt
from .config import settings


# ==================== Password Hashing ====================

def hash_password(password: str) -> str:
    """Hash a plain text password using bcrypt for secure storage."""
    # bcrypt requires bytes and returns bytes
    password_bytes = password.encode('utf-8')
    salt = bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    hashed = bcrypt.hashpw(password_bytes, salt)
    # Return as string for database storage
    return hashed.decode('utf-8')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plain text password against a hashed password.

    A stored value that is not a bcrypt hash never matches.
    """
    password_bytes = plain_password.encode('utf-8')
    hashed_bytes = hashed_password.encode('utf-8')
    try:
        return bcrypt.checkpw(password_bytes, hashed_bytes)
    except ValueError:
        return False


# ==================== Token Keys ====================

def generate_token_key() -> str:
    """Generate a random URL-safe key for an auth token."""
    return secrets.token_urlsafe(settings.TOKEN_KEY_BYTES)
