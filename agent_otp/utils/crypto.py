"""Token secret generation and hashing"""
import hashlib
import secrets

from agent_otp.config import settings


def generate_token_secret() -> str:
    """Generate a secure random token secret"""
    random_part = secrets.token_urlsafe(32)
    return f"{settings.TOKEN_PREFIX}{random_part}"


def hash_token(secret: str) -> str:
    """Hash a token secret using SHA256.

    Secrets carry full entropy and are never reused, so a plain digest is
    enough for lookup; no salt or key stretching.
    """
    return hashlib.sha256(secret.encode()).hexdigest()
