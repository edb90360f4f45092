from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from authcore.logging import get_logger
from authcore.service.errors import SigningFailure

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
_PURPOSES = (ACCESS, REFRESH)


class CredentialError(Exception):
    """Base class for credential verification failures."""


class InvalidSignature(CredentialError):
    """Signature does not match, or the credential was not issued by us for this purpose."""


class ExpiredCredential(CredentialError):
    """Credential is past its expiry claim."""


class MalformedCredential(CredentialError):
    """Credential structure or claims cannot be parsed."""


@dataclass
class IssuedCredential:
    token: str
    purpose: str
    account_id: str
    jti: str
    expires_at: datetime


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class CredentialSigner:
    """Issue and verify HS256-signed access and refresh credentials.

    Each purpose has its own secret, so a leaked access key cannot mint
    refresh credentials and vice versa. Credentials carry ``sub`` (account id),
    ``exp``, ``iat``, ``jti``, ``typ`` (purpose), ``iss`` and ``aud``.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=1),
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise SigningFailure("credential signing secret is not configured")
        if hmac.compare_digest(access_secret.encode(), refresh_secret.encode()):
            raise SigningFailure("access and refresh credentials must use distinct secrets")
        if access_ttl >= refresh_ttl:
            raise SigningFailure("access credential lifetime must be shorter than refresh lifetime")
        self._secrets = {
            ACCESS: access_secret.encode(),
            REFRESH: refresh_secret.encode(),
        }
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    def _secret_for(self, purpose: str) -> bytes:
        if purpose not in _PURPOSES:
            raise ValueError(f"unknown credential purpose: {purpose}")
        return self._secrets[purpose]

    def _sign(self, purpose: str, signing_input: str) -> str:
        digest = hmac.new(
            self._secret_for(purpose), signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def _issue(self, purpose: str, account_id: str, ttl: Optional[timedelta]) -> IssuedCredential:
        lifetime = ttl if ttl is not None else (
            self.access_ttl if purpose == ACCESS else self.refresh_ttl
        )
        now = int(self._clock())
        exp = now + int(lifetime.total_seconds())
        jti = str(uuid.uuid4())
        payload = {
            "sub": account_id,
            "typ": purpose,
            "iat": now,
            "exp": exp,
            "jti": jti,
            "iss": self.issuer,
            "aud": self.audience,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        try:
            header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
            payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        except (TypeError, ValueError) as exc:
            logger.error("credential_encode_failed", purpose=purpose, error=str(exc))
            raise SigningFailure("credential could not be encoded") from exc
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(purpose, signing_input)}"
        return IssuedCredential(
            token=token,
            purpose=purpose,
            account_id=account_id,
            jti=jti,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )

    def issue_access(self, account_id: str, ttl: Optional[timedelta] = None) -> IssuedCredential:
        return self._issue(ACCESS, account_id, ttl)

    def issue_refresh(self, account_id: str, ttl: Optional[timedelta] = None) -> IssuedCredential:
        return self._issue(REFRESH, account_id, ttl)

    def decode(self, token: str, purpose: str) -> dict[str, Any]:
        """Verify ``token`` for ``purpose`` and return its claims.

        Raises:
            MalformedCredential: token is not three base64url segments of JSON,
                or required claims are missing or mistyped
            InvalidSignature: signature, algorithm, purpose, issuer or audience mismatch
            ExpiredCredential: ``exp`` is in the past (beyond the configured leeway)
        """
        self._secret_for(purpose)
        if not isinstance(token, str):
            raise MalformedCredential("credential must be a string")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise MalformedCredential("credential must have three segments") from None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise MalformedCredential("credential header is not valid JSON") from None
        if not isinstance(header, dict):
            raise MalformedCredential("credential header is not an object")
        # Reject anything but HS256 to prevent algorithm confusion
        if header.get("alg") != "HS256":
            logger.warning("credential_invalid_algorithm", alg=header.get("alg"))
            raise InvalidSignature("unsupported signing algorithm")

        expected_sig = self._sign(purpose, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidSignature("signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            raise MalformedCredential("credential payload is not valid JSON") from None
        if not isinstance(payload, dict):
            raise MalformedCredential("credential payload is not an object")

        if payload.get("typ") != purpose:
            raise InvalidSignature("credential purpose mismatch")
        if payload.get("iss") != self.issuer:
            raise InvalidSignature("credential issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidSignature("credential audience mismatch")

        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            raise MalformedCredential("credential subject missing")
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise MalformedCredential("credential expiry missing")
        if exp + self.leeway_seconds <= self._clock():
            raise ExpiredCredential("credential expired")
        return payload

    def verify(self, token: str, purpose: str) -> str:
        """Verify ``token`` for ``purpose`` and return the account id it carries."""
        return self.decode(token, purpose)["sub"]


__all__ = [
    "ACCESS",
    "REFRESH",
    "CredentialError",
    "CredentialSigner",
    "ExpiredCredential",
    "InvalidSignature",
    "IssuedCredential",
    "MalformedCredential",
]
