"""
Identity provider boundary - Google OAuth 2.0 / OpenID Connect.

Authorization-code flow:
    1. authorization_url(state) → browser is redirected to Google
    2. Google redirects back to GOOGLE_REDIRECT_URI with ?code&state
    3. exchange_code(code) → token endpoint, then userinfo endpoint
"""
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from exceptions import IdentityProviderError

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"


@dataclass(frozen=True)
class IdentityProfile:
    subject: str
    email: str
    name: Optional[str]
    email_verified: bool


class IdentityProvider(Protocol):
    def authorization_url(self, state: str) -> str: ...

    async def exchange_code(self, code: str) -> IdentityProfile: ...


class GoogleIdentityProvider:
    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._timeout = timeout
        self._transport = transport

    def authorization_url(self, state: str) -> str:
        if not self._client_id:
            raise IdentityProviderError("GOOGLE_CLIENT_ID not configured")
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "response_type": "code",
            "scope": "openid email profile",
            "state": state,
            "access_type": "online",
            "prompt": "select_account",
        }
        return str(httpx.URL(GOOGLE_AUTH_URL, params=params))

    async def exchange_code(self, code: str) -> IdentityProfile:
        """Trade an authorization code for the user's verified profile."""
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                token_res = await client.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "code": code,
                        "client_id": self._client_id,
                        "client_secret": self._client_secret,
                        "redirect_uri": self._redirect_uri,
                        "grant_type": "authorization_code",
                    },
                )
                token_res.raise_for_status()
                access_token = token_res.json().get("access_token")
                if not access_token:
                    raise IdentityProviderError("Google token response missing access_token")

                info_res = await client.get(
                    GOOGLE_USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                info_res.raise_for_status()
                info = info_res.json()
        except httpx.HTTPError as e:
            logger.warning(f"Google OAuth exchange failed: {e}")
            raise IdentityProviderError(f"Google OAuth exchange failed: {e}") from e

        if not info.get("sub") or not info.get("email"):
            raise IdentityProviderError("Google profile missing sub/email")

        return IdentityProfile(
            subject=info["sub"],
            email=info["email"].lower(),
            name=info.get("name"),
            email_verified=bool(info.get("email_verified")),
        )
