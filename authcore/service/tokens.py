from __future__ import annotations

import hashlib
import secrets

# 32 random bytes -> 64 hex characters, 256 bits of entropy
TOKEN_BYTES = 32


def generate_token() -> str:
    """Return an opaque single-use token (activation, password reset, OAuth state)."""
    return secrets.token_hex(TOKEN_BYTES)


def token_digest(token: str) -> str:
    """Fixed-length digest used where a raw credential would otherwise become a storage key."""
    return hashlib.sha256(token.encode()).hexdigest()


def token_prefix(token: str) -> str:
    """Short prefix that is safe to log."""
    return token[:8]
