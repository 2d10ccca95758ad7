from __future__ import annotations

import contextlib
import time
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Protocol
from urllib.parse import urlencode

import httpx

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.errors import InvalidTokenError, UnavailableError

logger = get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
GOOGLE_SCOPE = "openid email profile"
GOOGLE_ISSUERS = frozenset({"accounts.google.com", "https://accounts.google.com"})


@dataclass
class IdentityClaims:
    subject_id: str
    email: Optional[str]
    email_verified: bool = False
    display_name: Optional[str] = None


class IdentityVerifier(Protocol):
    async def verify_identity_token(self, token: str, audience: str) -> IdentityClaims: ...


class _HttpClientMixin:
    _client: Optional[httpx.AsyncClient]
    timeout: float

    @contextlib.asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=False) as client:
            yield client


class GoogleIdentityVerifier(_HttpClientMixin):
    """Checks Google ID tokens against the tokeninfo endpoint."""

    def __init__(
        self,
        client_id: Optional[str],
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        if not client_id:
            raise ValueError("GOOGLE_CLIENT_ID is required to verify Google identity tokens")
        self.client_id = client_id
        self._client = client
        self.timeout = timeout

    @classmethod
    def from_settings(
        cls, settings: Settings, client: Optional[httpx.AsyncClient] = None
    ) -> "GoogleIdentityVerifier":
        return cls(
            settings.google_client_id,
            client=client,
            timeout=settings.oauth_http_timeout_seconds,
        )

    async def verify_identity_token(
        self, token: str, audience: Optional[str] = None
    ) -> IdentityClaims:
        if not token:
            raise InvalidTokenError("Missing identity token")
        expected_audience = audience or self.client_id
        try:
            async with self._http() as client:
                response = await client.get(GOOGLE_TOKENINFO_URL, params={"id_token": token})
        except httpx.HTTPError as exc:
            logger.error("google_tokeninfo_unreachable", error=str(exc))
            raise UnavailableError("Identity provider unavailable") from exc
        if response.status_code >= 500:
            logger.error("google_tokeninfo_error", status=response.status_code)
            raise UnavailableError("Identity provider unavailable")
        if response.status_code != 200:
            logger.info("google_identity_token_rejected", status=response.status_code)
            raise InvalidTokenError("Invalid identity token")
        try:
            data = response.json()
        except ValueError as exc:
            logger.error("google_tokeninfo_parse_error", error=str(exc))
            raise UnavailableError("Identity provider returned an invalid response") from exc
        if not isinstance(data, dict):
            raise UnavailableError("Identity provider returned an invalid response")

        if data.get("aud") != expected_audience:
            logger.warning("google_identity_token_audience_mismatch")
            raise InvalidTokenError("Identity token was issued for another client")
        if data.get("iss") not in GOOGLE_ISSUERS:
            raise InvalidTokenError("Identity token has an unexpected issuer")
        try:
            expired = float(data.get("exp", 0)) <= time.time()
        except (TypeError, ValueError):
            expired = True
        if expired:
            raise InvalidTokenError("Identity token has expired")
        subject = data.get("sub")
        if not subject:
            raise InvalidTokenError("Identity token has no subject")
        return IdentityClaims(
            subject_id=str(subject),
            email=data.get("email"),
            email_verified=str(data.get("email_verified", "")).lower() == "true",
            display_name=data.get("name"),
        )


class GoogleOAuthClient(_HttpClientMixin):
    """Authorization-code flow: build the consent URL, exchange the code."""

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: Optional[str],
        verifier: IdentityVerifier,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        missing = [
            name
            for name, value in (
                ("GOOGLE_CLIENT_ID", client_id),
                ("GOOGLE_CLIENT_SECRET", client_secret),
                ("GOOGLE_REDIRECT_URI", redirect_uri),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"Google OAuth is not configured: missing {', '.join(missing)}")
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.verifier = verifier
        self._client = client
        self.timeout = timeout

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_SCOPE,
            "state": state,
            "access_type": "online",
            "prompt": "select_account",
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> IdentityClaims:
        payload = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        }
        try:
            async with self._http() as client:
                response = await client.post(
                    GOOGLE_TOKEN_URL, data=payload, headers={"Accept": "application/json"}
                )
        except httpx.HTTPError as exc:
            logger.error("google_code_exchange_unreachable", error=str(exc))
            raise UnavailableError("Identity provider unavailable") from exc
        if response.status_code >= 500:
            logger.error("google_code_exchange_error", status=response.status_code)
            raise UnavailableError("Identity provider unavailable")
        if response.status_code != 200:
            logger.info("google_code_rejected", status=response.status_code)
            raise InvalidTokenError("Invalid authorization code")
        try:
            token_result = response.json()
        except ValueError as exc:
            raise UnavailableError("Identity provider returned an invalid response") from exc
        id_token = token_result.get("id_token") if isinstance(token_result, dict) else None
        if not id_token:
            logger.error("google_code_exchange_missing_id_token")
            raise InvalidTokenError("Authorization code did not yield an identity token")
        return await self.verifier.verify_identity_token(id_token, self.client_id)
