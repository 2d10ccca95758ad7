from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.errors import (
    InvalidRefreshTokenError,
    RefreshConflictError,
    SessionExpiredError,
    SessionNotActiveError,
    SessionNotFoundError,
    SessionRevokedError,
    TokenReuseDetectedError,
)
from authkernel.service.hashing import SecretHasher
from authkernel.storage.common import CredentialStore
from authkernel.storage.models import Session, SessionMetadata

logger = get_logger(__name__)


class SessionManager:
    """Session lifecycle: ACTIVE, then EXPIRED or REVOKED, both terminal.

    A session keeps the hash of its current refresh token and of the one it
    replaced. Presenting the replaced token is treated as theft and revokes
    every session of the user, unless it was presented before the rotation
    committed and within ``reuse_grace`` of it, which is a client racing
    itself.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: SecretHasher,
        *,
        reuse_grace: timedelta = timedelta(seconds=10),
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.reuse_grace = reuse_grace

    @classmethod
    def from_settings(
        cls, store: CredentialStore, hasher: SecretHasher, settings: Settings
    ) -> "SessionManager":
        return cls(
            store,
            hasher,
            reuse_grace=timedelta(seconds=settings.refresh_reuse_grace_seconds),
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def create(
        self,
        session_id: str,
        user_id: str,
        refresh_token: str,
        metadata: Optional[SessionMetadata],
        expires_at: datetime,
    ) -> Session:
        token_hash = await self.hasher.hash_async(refresh_token)
        now = self._now()
        meta = metadata or SessionMetadata()
        session = self.store.create_session(
            Session(
                id=session_id,
                user_id=user_id,
                current_refresh_token_hash=token_hash,
                expires_at=expires_at,
                ip_address=meta.ip_address,
                user_agent=meta.user_agent,
                created_at=now,
                last_used_at=now,
            )
        )
        logger.info("session_created", session_id=session_id, user_id=user_id)
        return session

    async def rotate(
        self,
        session_id: str,
        new_refresh_token: str,
        metadata: Optional[SessionMetadata],
        new_expires_at: datetime,
        *,
        expected_version: int,
    ) -> Session:
        new_hash = await self.hasher.hash_async(new_refresh_token)
        now = self._now()
        meta = metadata or SessionMetadata()
        rotated = self.store.rotate_session(
            session_id,
            expected_version=expected_version,
            new_refresh_token_hash=new_hash,
            expires_at=new_expires_at,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            now=now,
        )
        if rotated is not None:
            logger.info("session_rotated", session_id=session_id, version=rotated.version)
            return rotated
        current = self.store.get_session(session_id)
        if current is None or not current.is_active(now):
            raise SessionNotActiveError()
        logger.info(
            "session_rotation_conflict",
            session_id=session_id,
            expected_version=expected_version,
            actual_version=current.version,
        )
        raise RefreshConflictError()

    async def validate_for_refresh(
        self,
        session_id: str,
        user_id: str,
        presented_token: str,
        *,
        presented_at: Optional[datetime] = None,
    ) -> Session:
        now = self._now()
        presented_at = presented_at or now
        session = self.store.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise SessionNotFoundError()
        if session.revoked_at is not None:
            raise SessionRevokedError()
        if session.expires_at <= now:
            self.store.revoke_session(session.id, now)
            logger.info("session_expired", session_id=session.id, user_id=user_id)
            raise SessionExpiredError()

        if await self.hasher.verify_async(session.current_refresh_token_hash, presented_token):
            return session

        if session.previous_refresh_token_hash and await self.hasher.verify_async(
            session.previous_refresh_token_hash, presented_token
        ):
            if self._lost_rotation_race(session, presented_at):
                logger.info("refresh_race_lost", session_id=session.id, user_id=user_id)
                raise RefreshConflictError()
            revoked = self.store.revoke_user_sessions(user_id, self._now())
            logger.warning(
                "refresh_token_reuse_detected",
                session_id=session.id,
                user_id=user_id,
                revoked_sessions=revoked,
            )
            raise TokenReuseDetectedError()

        raise InvalidRefreshTokenError()

    def _lost_rotation_race(self, session: Session, presented_at: datetime) -> bool:
        rotated_at = session.rotated_at
        if rotated_at is None or presented_at > rotated_at:
            return False
        return rotated_at - presented_at <= self.reuse_grace

    def assert_active(self, session_id: str, user_id: str) -> Session:
        now = self._now()
        session = self.store.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise SessionNotFoundError()
        if session.revoked_at is not None:
            raise SessionRevokedError()
        if session.expires_at <= now:
            self.store.revoke_session(session.id, now)
            raise SessionExpiredError()
        self.store.touch_session(session.id, now)
        return session

    def list_active(self, user_id: str) -> List[Session]:
        return self.store.list_active_sessions(user_id, self._now())

    def revoke(self, session_id: str) -> bool:
        revoked = self.store.revoke_session(session_id, self._now())
        if revoked:
            logger.info("session_revoked", session_id=session_id)
        return revoked

    def revoke_for_user(self, user_id: str, session_id: str) -> bool:
        revoked = self.store.revoke_session(session_id, self._now(), user_id=user_id)
        if revoked:
            logger.info("session_revoked", session_id=session_id, user_id=user_id)
        return revoked

    def revoke_all(self, user_id: str) -> int:
        count = self.store.revoke_user_sessions(user_id, self._now())
        logger.info("sessions_revoked_all", user_id=user_id, count=count)
        return count

    def prune(self, before: Optional[datetime] = None) -> Dict[str, int]:
        counts = self.store.purge_expired(before or self._now())
        logger.info("auth_rows_pruned", **counts)
        return counts
