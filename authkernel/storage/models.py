from __future__ import annotations

import unicodedata
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def _now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    """Canonical form used for every email lookup and uniqueness check."""
    return unicodedata.normalize("NFKC", email).strip().lower()


class AuthProvider(str, Enum):
    """How an account proves its identity. Accounts never move between providers."""

    LOCAL = "LOCAL"
    GOOGLE = "GOOGLE"


class OTPPurpose(str, Enum):
    VERIFICATION = "VERIFICATION"
    PASSWORD_RESET = "PASSWORD_RESET"


class SessionState(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


@dataclass
class User:
    id: str
    email: str
    auth_provider: AuthProvider = AuthProvider.LOCAL
    password_hash: Optional[str] = None
    provider_id: Optional[str] = None
    email_verified: bool = False
    display_name: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @classmethod
    def new_local(cls, email: str, password_hash: str) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            auth_provider=AuthProvider.LOCAL,
            password_hash=password_hash,
        )

    @classmethod
    def new_federated(
        cls,
        provider: AuthProvider,
        email: str,
        provider_id: str,
        display_name: Optional[str] = None,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            auth_provider=provider,
            provider_id=provider_id,
            email_verified=True,
            display_name=display_name,
        )


@dataclass
class OneTimeCode:
    """Numeric code mailed to a user; one active code per user per purpose."""

    id: str
    user_id: str
    purpose: OTPPurpose
    code: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_now)

    def is_usable(self, now: datetime) -> bool:
        return self.used_at is None and self.expires_at > now


@dataclass
class SessionMetadata:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class Session:
    id: str
    user_id: str
    current_refresh_token_hash: str
    expires_at: datetime
    previous_refresh_token_hash: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    last_used_at: datetime = field(default_factory=_now)
    revoked_at: Optional[datetime] = None
    rotated_at: Optional[datetime] = None
    version: int = 0

    def state(self, now: Optional[datetime] = None) -> SessionState:
        if self.revoked_at is not None:
            return SessionState.REVOKED
        if self.expires_at <= (now or _now()):
            return SessionState.EXPIRED
        return SessionState.ACTIVE

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.state(now) is SessionState.ACTIVE


@dataclass
class OAuthState:
    state: str
    provider: AuthProvider
    expires_at: datetime
    created_at: datetime = field(default_factory=_now)

    @classmethod
    def new(cls, state: str, provider: AuthProvider, ttl_minutes: int = 10) -> "OAuthState":
        now = _now()
        return cls(
            state=state,
            provider=provider,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )
