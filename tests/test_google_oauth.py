import time
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from authkernel.service.errors import InvalidTokenError, UnavailableError
from authkernel.service.oauth import (
    GOOGLE_TOKEN_URL,
    GoogleIdentityVerifier,
    GoogleOAuthClient,
)

CLIENT_ID = "client-123.apps.googleusercontent.com"


def _tokeninfo(**overrides):
    payload = {
        "aud": CLIENT_ID,
        "iss": "https://accounts.google.com",
        "exp": str(int(time.time()) + 600),
        "sub": "1098765",
        "email": "user@example.com",
        "email_verified": "true",
        "name": "Example User",
    }
    payload.update(overrides)
    return payload


def _verifier(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoogleIdentityVerifier(CLIENT_ID, client=client)


class TestIdentityVerifier:
    def test_requires_client_id(self):
        with pytest.raises(ValueError):
            GoogleIdentityVerifier(None)

    async def test_valid_token(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=_tokeninfo())

        claims = await _verifier(handler).verify_identity_token("id-token")
        assert claims.subject_id == "1098765"
        assert claims.email == "user@example.com"
        assert claims.email_verified is True
        assert claims.display_name == "Example User"
        assert seen[0].url.params["id_token"] == "id-token"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"aud": "someone-else"},
            {"iss": "https://evil.example"},
            {"exp": "1"},
            {"sub": ""},
        ],
    )
    async def test_rejected_claims(self, overrides):
        verifier = _verifier(lambda request: httpx.Response(200, json=_tokeninfo(**overrides)))
        with pytest.raises(InvalidTokenError):
            await verifier.verify_identity_token("id-token")

    async def test_rejected_by_google(self):
        verifier = _verifier(lambda request: httpx.Response(400, json={"error": "invalid_token"}))
        with pytest.raises(InvalidTokenError):
            await verifier.verify_identity_token("id-token")

    async def test_google_outage(self):
        verifier = _verifier(lambda request: httpx.Response(502))
        with pytest.raises(UnavailableError):
            await verifier.verify_identity_token("id-token")

    async def test_transport_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(UnavailableError):
            await _verifier(handler).verify_identity_token("id-token")

    async def test_empty_token(self):
        verifier = _verifier(lambda request: httpx.Response(200, json=_tokeninfo()))
        with pytest.raises(InvalidTokenError):
            await verifier.verify_identity_token("")


class TestOAuthClient:
    def _client(self, handler):
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        verifier = GoogleIdentityVerifier(CLIENT_ID, client=http)
        return GoogleOAuthClient(
            CLIENT_ID,
            "shh",
            "https://app.example/callback",
            verifier,
            client=http,
        )

    def test_missing_configuration(self):
        with pytest.raises(ValueError) as excinfo:
            GoogleOAuthClient(CLIENT_ID, None, None, verifier=None)
        assert "GOOGLE_CLIENT_SECRET" in str(excinfo.value)
        assert "GOOGLE_REDIRECT_URI" in str(excinfo.value)

    def test_authorization_url(self):
        client = self._client(lambda request: httpx.Response(500))
        url = urlparse(client.authorization_url("state-xyz"))
        params = parse_qs(url.query)
        assert url.netloc == "accounts.google.com"
        assert params["state"] == ["state-xyz"]
        assert params["client_id"] == [CLIENT_ID]
        assert params["response_type"] == ["code"]
        assert params["redirect_uri"] == ["https://app.example/callback"]

    async def test_exchange_code(self):
        def handler(request):
            if str(request.url) == GOOGLE_TOKEN_URL:
                form = parse_qs(request.content.decode())
                assert form["code"] == ["auth-code"]
                assert form["grant_type"] == ["authorization_code"]
                return httpx.Response(200, json={"id_token": "issued-id-token"})
            assert request.url.params["id_token"] == "issued-id-token"
            return httpx.Response(200, json=_tokeninfo())

        claims = await self._client(handler).exchange_code("auth-code")
        assert claims.subject_id == "1098765"

    async def test_rejected_code(self):
        client = self._client(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))
        with pytest.raises(InvalidTokenError):
            await client.exchange_code("bad-code")

    async def test_missing_id_token(self):
        client = self._client(lambda request: httpx.Response(200, json={"access_token": "x"}))
        with pytest.raises(InvalidTokenError):
            await client.exchange_code("auth-code")
