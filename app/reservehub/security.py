import hashlib
import hmac
import secrets

TOKEN_BYTES = 32  # 256 bits of entropy
MAX_TOKEN_LENGTH = 512


def new_session_token() -> str:
    """Generate an opaque, URL-safe session token."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def hash_token(raw_token: str) -> str:
    """Digest stored in place of the raw token."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def secrets_match(provided: str | None, expected: str | None) -> bool:
    """Constant-time comparison; an unset expected secret never matches."""
    if not expected or provided is None:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
