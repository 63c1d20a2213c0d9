"""
Service token hashing utilities.

Security notes:
  • SHA-256 is used. The token is a high-entropy random string, so a slow
    password hash would only add latency to every internal call.
  • Only the hash is configured on the server (SERVICE_TOKEN_HASH).
  • generate_service_token() returns the raw token exactly once; the
    operator must copy it into the AI agent service's environment.
"""

import hashlib
import secrets


_TOKEN_PREFIX = "krs_"


def hash_token(raw_token: str) -> str:
    """Return the SHA-256 hex digest of a raw token."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def token_matches(raw_token: str, expected_hash: str) -> bool:
    """Constant-time comparison of a raw token against a stored hash."""
    if not expected_hash:
        return False
    return secrets.compare_digest(hash_token(raw_token), expected_hash.lower())


def generate_service_token() -> tuple[str, str]:
    """
    Generate a new service token.

    Returns:
        (raw_token, token_hash) — raw_token is shown once, token_hash is configured.
    """
    raw_token = f"{_TOKEN_PREFIX}{secrets.token_hex(32)}"
    return raw_token, hash_token(raw_token)
