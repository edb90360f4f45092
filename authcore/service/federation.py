from __future__ import annotations

from typing import Optional, Protocol
from urllib.parse import urlencode, urlparse

import httpx

from authcore.logging import get_logger
from authcore.storage.models import AuthProvider, FederatedIdentity

logger = get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_SCOPE = "openid email profile"


class IdentityExchange(Protocol):
    """Turns a provider assertion into a verified identity, or None."""

    provider: AuthProvider

    def authorization_url(self, state: str) -> str: ...

    async def exchange_identity(self, assertion: str) -> Optional[FederatedIdentity]: ...


def _validate_redirect_uri(redirect_uri: str) -> str:
    parsed = urlparse(redirect_uri)
    if parsed.scheme not in {"https", "http"}:
        raise ValueError("OAuth redirect URI must be http(s)")
    if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
        raise ValueError("Insecure redirect URI not allowed outside localhost")
    if not parsed.netloc:
        raise ValueError("OAuth redirect URI must include host")
    return redirect_uri


class GoogleIdentityExchange:
    """Authorization-code exchange against Google's OAuth 2.0 endpoints.

    ``exchange_identity`` posts the code to the token endpoint, then reads the
    userinfo document with the returned access token. Any transport, status or
    payload problem yields ``None``; the caller turns that into a login failure.
    """

    provider = AuthProvider.GOOGLE

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not client_id or not client_secret:
            raise ValueError("Google OAuth client credentials are not configured")
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = _validate_redirect_uri(redirect_uri)
        self.timeout = timeout
        self._transport = transport

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_SCOPE,
            "state": state,
            "prompt": "select_account",
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    @staticmethod
    def _parse_userinfo(userinfo: dict) -> Optional[FederatedIdentity]:
        subject_id = userinfo.get("id") or userinfo.get("sub")
        email = userinfo.get("email")
        if not subject_id or not isinstance(email, str) or "@" not in email:
            return None
        # an unverified address must not be allowed to claim a local account
        if userinfo.get("verified_email") is False or userinfo.get("email_verified") is False:
            logger.warning("oauth_email_unverified", provider="google")
            return None
        display_name = userinfo.get("name") or email.split("@")[0]
        return FederatedIdentity(
            email=email.strip().lower(),
            display_name=display_name,
            subject_id=str(subject_id),
            provider=AuthProvider.GOOGLE,
        )

    async def exchange_identity(self, assertion: str) -> Optional[FederatedIdentity]:
        if not assertion:
            return None
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": assertion,
                        "redirect_uri": self.redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = token_result.get("access_token") if isinstance(token_result, dict) else None
                if not access_token:
                    logger.error("oauth_no_access_token", provider="google")
                    return None

                userinfo_response = await client.get(
                    GOOGLE_USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider="google",
                status_code=exc.response.status_code,
            )
            return None
        except httpx.HTTPError as exc:
            logger.error("oauth_exchange_transport_error", provider="google", error=str(exc))
            return None
        except ValueError as exc:
            logger.error("oauth_exchange_parse_error", provider="google", error=str(exc))
            return None

        if not isinstance(userinfo, dict):
            logger.error("oauth_userinfo_invalid_format", provider="google")
            return None
        identity = self._parse_userinfo(userinfo)
        if identity is None:
            logger.error("oauth_identity_incomplete", provider="google")
            return None
        logger.info("oauth_exchange_success", provider="google", subject_id=identity.subject_id)
        return identity
