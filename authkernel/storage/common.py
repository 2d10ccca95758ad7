"""Store contract shared by the memory and Postgres backends.

Services depend on this protocol only; both backends satisfy it structurally.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Protocol

from authkernel.storage.models import (
    AuthProvider,
    OAuthState,
    OneTimeCode,
    OTPPurpose,
    Session,
    User,
)


class CredentialStore(Protocol):
    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_provider(self, provider: AuthProvider, provider_id: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...

    def replace_otp(self, otp: OneTimeCode, now: datetime) -> int: ...

    def otp_code_active(self, purpose: OTPPurpose, code: str, now: datetime) -> bool: ...

    def consume_otp(
        self,
        purpose: OTPPurpose,
        code: str,
        now: datetime,
        *,
        local_only: bool = False,
    ) -> Optional[str]: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def rotate_session(
        self,
        session_id: str,
        *,
        expected_version: int,
        new_refresh_token_hash: str,
        expires_at: datetime,
        ip_address: Optional[str],
        user_agent: Optional[str],
        now: datetime,
    ) -> Optional[Session]: ...

    def touch_session(self, session_id: str, now: datetime) -> None: ...

    def revoke_session(
        self, session_id: str, now: datetime, *, user_id: Optional[str] = None
    ) -> bool: ...

    def revoke_user_sessions(self, user_id: str, now: datetime) -> int: ...

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]: ...

    def save_oauth_state(self, oauth_state: OAuthState) -> None: ...

    def pop_oauth_state(self, state: str, now: datetime) -> Optional[OAuthState]: ...

    def purge_expired(self, before: datetime) -> Dict[str, int]: ...
