from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional, Protocol

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.errors import InvalidTokenError
from authkernel.storage.models import User

logger = get_logger(__name__)


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    PASSWORD_RESET = "password_reset"


class Signer(Protocol):
    """Produces and checks the JWS signature; claims never depend on it."""

    algorithm: str

    def sign(self, signing_input: bytes) -> bytes: ...

    def verify(self, signing_input: bytes, signature: bytes) -> bool: ...


class HS256Signer:
    algorithm = "HS256"

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("HS256 signer requires a non-empty secret")
        self._key = secret.encode()

    def sign(self, signing_input: bytes) -> bytes:
        return hmac.new(self._key, signing_input, hashlib.sha256).digest()

    def verify(self, signing_input: bytes, signature: bytes) -> bool:
        return hmac.compare_digest(self.sign(signing_input), signature)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    session_id: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


def password_fingerprint(password_hash: Optional[str]) -> str:
    """Short digest of the stored hash; changes whenever the password does."""
    return hashlib.sha256((password_hash or "").encode()).hexdigest()[:32]


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """Mints and checks compact JWTs.

    Access and refresh tokens carry the same identity claims and differ only
    by ``type`` and lifetime. Verification never looks at session state.
    """

    def __init__(
        self,
        signer: Signer,
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=30),
        reset_ttl: timedelta = timedelta(minutes=15),
        leeway: timedelta = timedelta(seconds=5),
    ) -> None:
        self.signer = signer
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.reset_ttl = reset_ttl
        self.leeway = leeway

    @classmethod
    def from_settings(cls, settings: Settings, signer: Optional[Signer] = None) -> "TokenIssuer":
        return cls(
            signer or HS256Signer(settings.jwt_secret),
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            reset_ttl=timedelta(minutes=settings.password_reset_token_ttl_minutes),
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": self.signer.algorithm, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = self.signer.sign(signing_input.encode())
        return f"{signing_input}.{_encode_segment(signature)}"

    def _claims(self, user: User, token_type: TokenType, now: datetime, ttl: timedelta) -> dict[str, Any]:
        return {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user.id,
            "email": user.email,
            "provider": user.auth_provider.value,
            "type": token_type.value,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }

    def issue(self, user: User, session_id: str, *, now: Optional[datetime] = None) -> TokenPair:
        now = now or self._now()
        access = self._claims(user, TokenType.ACCESS, now, self.access_ttl)
        refresh = self._claims(user, TokenType.REFRESH, now, self.refresh_ttl)
        access["sid"] = session_id
        refresh["sid"] = session_id
        return TokenPair(
            access_token=self._encode(access),
            refresh_token=self._encode(refresh),
            session_id=session_id,
            access_expires_at=now + self.access_ttl,
            refresh_expires_at=now + self.refresh_ttl,
        )

    def issue_password_reset(self, user: User, *, now: Optional[datetime] = None) -> str:
        """Token that authorises one password change; bound to no session."""
        now = now or self._now()
        claims = self._claims(user, TokenType.PASSWORD_RESET, now, self.reset_ttl)
        claims["pwf"] = password_fingerprint(user.password_hash)
        return self._encode(claims)

    def verify(self, token: str, expected_type: TokenType) -> dict[str, Any]:
        payload = self._decode(token)
        if payload.get("type") != expected_type.value:
            logger.warning(
                "jwt_type_mismatch", expected=expected_type.value, got=payload.get("type")
            )
            raise InvalidTokenError("Invalid token type")
        if not isinstance(payload.get("sub"), str) or not payload["sub"]:
            raise InvalidTokenError("Invalid token subject")
        sid = payload.get("sid")
        if expected_type is TokenType.PASSWORD_RESET:
            if sid is not None:
                raise InvalidTokenError("Invalid token")
        elif not isinstance(sid, str) or not sid:
            raise InvalidTokenError("Token is not bound to a session")
        return payload

    def _decode(self, token: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise InvalidTokenError("Missing token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("Malformed token")

        try:
            header = json.loads(_decode_segment(header_b64))
            signature = _decode_segment(sig_b64)
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("Malformed token")
        if not isinstance(header, dict):
            raise InvalidTokenError("Malformed token")
        # a token may never choose its own algorithm
        if header.get("alg") != self.signer.algorithm:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise InvalidTokenError("Invalid token algorithm")

        signing_input = f"{header_b64}.{payload_b64}".encode()
        if not self.signer.verify(signing_input, signature):
            raise InvalidTokenError("Invalid token signature")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("Malformed token")
        if not isinstance(payload, dict):
            raise InvalidTokenError("Malformed token")
        if payload.get("iss") != self.issuer:
            raise InvalidTokenError("Invalid token issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidTokenError("Invalid token audience")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("Token has no expiry")
        if exp_ts <= self._now().timestamp() - self.leeway.total_seconds():
            raise InvalidTokenError("Token has expired")
        return payload
