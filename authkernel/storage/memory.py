from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from authkernel.logging import get_logger
from authkernel.storage.errors import ConstraintViolation, StoreUnavailable
from authkernel.storage.models import (
    AuthProvider,
    OAuthState,
    OneTimeCode,
    OTPPurpose,
    Session,
    User,
    normalize_email,
)

_UNSET: Any = object()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """In-process credential store.

    Every read returns a copy so callers can never observe a half-applied
    rotation. When ``fs_root`` is given the state is mirrored to
    ``<fs_root>/state/auth_store.json`` after each write.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.otps: Dict[OTPPurpose, Dict[str, OneTimeCode]] = {
            purpose: {} for purpose in OTPPurpose
        }
        self.sessions: Dict[str, Session] = {}
        self.oauth_states: Dict[str, OAuthState] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- users -------------------------------------------------------------

    def _provider_id_taken(
        self, provider: AuthProvider, provider_id: Optional[str], *, exclude: Optional[str] = None
    ) -> bool:
        if not provider_id:
            return False
        return any(
            u.auth_provider is provider and u.provider_id == provider_id and u.id != exclude
            for u in self.users.values()
        )

    def create_user(self, user: User) -> User:
        with self._data_lock:
            email = normalize_email(user.email)
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if self._provider_id_taken(user.auth_provider, user.provider_id):
                raise ConstraintViolation(
                    "provider identity already linked", {"field": "provider_id"}
                )
            snapshot = self._snapshot()
            stored = replace(user, email=email)
            self.users[stored.id] = stored
            self._commit(snapshot)
            return replace(stored)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.email == normalized), None
            )
            return replace(user) if user else None

    def get_user_by_provider(self, provider: AuthProvider, provider_id: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.auth_provider is provider and u.provider_id == provider_id
                ),
                None,
            )
            return replace(user) if user else None

    def update_user(
        self,
        user_id: str,
        *,
        password_hash: Any = _UNSET,
        provider_id: Any = _UNSET,
        email_verified: Any = _UNSET,
        display_name: Any = _UNSET,
    ) -> Optional[User]:
        changes = {
            key: value
            for key, value in (
                ("password_hash", password_hash),
                ("provider_id", provider_id),
                ("email_verified", email_verified),
                ("display_name", display_name),
            )
            if value is not _UNSET
        }
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "provider_id" in changes and self._provider_id_taken(
                user.auth_provider, changes["provider_id"], exclude=user_id
            ):
                raise ConstraintViolation(
                    "provider identity already linked", {"field": "provider_id"}
                )
            snapshot = self._snapshot()
            updated = replace(user, updated_at=_now(), **changes)
            self.users[user_id] = updated
            self._commit(snapshot)
            return replace(updated)

    # -- one-time codes ------------------------------------------------------

    def replace_otp(self, otp: OneTimeCode, now: datetime) -> int:
        """Retire the user's live codes of ``otp.purpose`` and store ``otp``, atomically."""
        with self._data_lock:
            if otp.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": otp.user_id})
            snapshot = self._snapshot()
            bucket = self.otps[otp.purpose]
            retired = 0
            for otp_id, existing in bucket.items():
                if existing.user_id == otp.user_id and existing.used_at is None:
                    bucket[otp_id] = replace(existing, used_at=now)
                    retired += 1
            bucket[otp.id] = replace(otp)
            self._commit(snapshot)
            return retired

    def otp_code_active(self, purpose: OTPPurpose, code: str, now: datetime) -> bool:
        with self._data_lock:
            return any(
                otp.code == code and otp.is_usable(now)
                for otp in self.otps[purpose].values()
            )

    def consume_otp(
        self,
        purpose: OTPPurpose,
        code: str,
        now: datetime,
        *,
        local_only: bool = False,
    ) -> Optional[str]:
        with self._data_lock:
            snapshot = self._snapshot()
            for otp_id, otp in self.otps[purpose].items():
                if otp.code != code or not otp.is_usable(now):
                    continue
                owner = self.users.get(otp.user_id)
                if owner is None:
                    continue
                if local_only and owner.auth_provider is not AuthProvider.LOCAL:
                    continue
                self.otps[purpose][otp_id] = replace(otp, used_at=now)
                self._commit(snapshot)
                return otp.user_id
            return None

    def list_otps(self, purpose: OTPPurpose, user_id: str) -> List[OneTimeCode]:
        with self._data_lock:
            return sorted(
                (replace(o) for o in self.otps[purpose].values() if o.user_id == user_id),
                key=lambda o: o.created_at,
            )

    # -- sessions ------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            snapshot = self._snapshot()
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"session_id": session.id})
            self.sessions[session.id] = replace(session)
            self._commit(snapshot)
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

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
    ) -> Optional[Session]:
        """Compare-and-swap rotation; ``None`` when the row moved or is not active."""
        with self._data_lock:
            snapshot = self._snapshot()
            sess = self.sessions.get(session_id)
            if sess is None or sess.version != expected_version:
                return None
            if not sess.is_active(now):
                return None
            rotated = replace(
                sess,
                previous_refresh_token_hash=sess.current_refresh_token_hash,
                current_refresh_token_hash=new_refresh_token_hash,
                expires_at=expires_at,
                ip_address=ip_address if ip_address is not None else sess.ip_address,
                user_agent=user_agent if user_agent is not None else sess.user_agent,
                last_used_at=now,
                rotated_at=now,
                version=sess.version + 1,
            )
            self.sessions[session_id] = rotated
            self._commit(snapshot)
            return replace(rotated)

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is not None and sess.revoked_at is None:
                self.sessions[session_id] = replace(sess, last_used_at=now)

    def revoke_session(
        self, session_id: str, now: datetime, *, user_id: Optional[str] = None
    ) -> bool:
        with self._data_lock:
            snapshot = self._snapshot()
            sess = self.sessions.get(session_id)
            if sess is None or sess.revoked_at is not None:
                return False
            if user_id is not None and sess.user_id != user_id:
                return False
            self.sessions[session_id] = replace(sess, revoked_at=now)
            self._commit(snapshot)
            return True

    def revoke_user_sessions(self, user_id: str, now: datetime) -> int:
        with self._data_lock:
            snapshot = self._snapshot()
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sess.revoked_at is None
            ]
            for sid in stale:
                self.sessions[sid] = replace(self.sessions[sid], revoked_at=now)
            if stale:
                self._commit(snapshot)
            return len(stale)

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            active = [
                replace(sess)
                for sess in self.sessions.values()
                if sess.user_id == user_id and sess.is_active(now)
            ]
        active.sort(key=lambda s: s.last_used_at, reverse=True)
        return active

    # -- oauth state -----------------------------------------------------------

    def save_oauth_state(self, oauth_state: OAuthState) -> None:
        with self._data_lock:
            self.oauth_states[oauth_state.state] = replace(oauth_state)

    def pop_oauth_state(self, state: str, now: datetime) -> Optional[OAuthState]:
        with self._data_lock:
            stored = self.oauth_states.pop(state, None)
            if stored is None or stored.expires_at <= now:
                return None
            return stored

    # -- maintenance -----------------------------------------------------------

    def purge_expired(self, before: datetime) -> Dict[str, int]:
        with self._data_lock:
            snapshot = self._snapshot()
            counts = {"otps": 0, "sessions": 0, "oauth_states": 0}
            for purpose in OTPPurpose:
                bucket = self.otps[purpose]
                dead = [
                    otp_id
                    for otp_id, otp in bucket.items()
                    if otp.expires_at <= before or (otp.used_at and otp.used_at <= before)
                ]
                for otp_id in dead:
                    del bucket[otp_id]
                counts["otps"] += len(dead)
            dead_sessions = [
                sid
                for sid, sess in self.sessions.items()
                if sess.expires_at <= before
            ]
            for sid in dead_sessions:
                del self.sessions[sid]
            counts["sessions"] = len(dead_sessions)
            dead_states = [
                key for key, st in self.oauth_states.items() if st.expires_at <= before
            ]
            for key in dead_states:
                del self.oauth_states[key]
            counts["oauth_states"] = len(dead_states)
            if any(counts.values()):
                self._commit(snapshot)
            return counts

    # -- persistence -------------------------------------------------------------

    def _snapshot(self) -> Optional[tuple]:
        # stored records are replaced, never mutated, so shallow copies suffice
        if self.fs_root is None:
            return None
        return (
            dict(self.users),
            {purpose: dict(bucket) for purpose, bucket in self.otps.items()},
            dict(self.sessions),
            dict(self.oauth_states),
        )

    def _commit(self, snapshot: Optional[tuple]) -> None:
        """Persist the pending change, or undo it and raise ``StoreUnavailable``."""
        try:
            self._persist_state()
        except StoreUnavailable:
            if snapshot is not None:
                self.users, self.otps, self.sessions, self.oauth_states = snapshot
            raise

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        try:
            state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            self.logger.error("auth_state_dir_unavailable", path=str(state_dir), error=str(exc))
            raise StoreUnavailable("credential state directory unavailable") from exc
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "otps": [
                self._serialize_otp(o)
                for bucket in self.otps.values()
                for o in bucket.values()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("auth_state_persist_failed", path=str(path), error=str(exc))
            raise StoreUnavailable("failed to persist credential state") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        for raw in data.get("otps", []):
            otp = self._deserialize_otp(raw)
            self.otps[otp.purpose][otp.id] = otp
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "auth_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "auth_provider": user.auth_provider.value,
            "password_hash": user.password_hash,
            "provider_id": user.provider_id,
            "email_verified": user.email_verified,
            "display_name": user.display_name,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            auth_provider=AuthProvider(data.get("auth_provider", "LOCAL")),
            password_hash=data.get("password_hash"),
            provider_id=data.get("provider_id"),
            email_verified=bool(data.get("email_verified", False)),
            display_name=data.get("display_name"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at") or data["created_at"]
            ),
        )

    def _serialize_otp(self, otp: OneTimeCode) -> dict:
        return {
            "id": otp.id,
            "user_id": otp.user_id,
            "purpose": otp.purpose.value,
            "code": otp.code,
            "expires_at": self._serialize_datetime(otp.expires_at),
            "used_at": self._serialize_datetime(otp.used_at),
            "created_at": self._serialize_datetime(otp.created_at),
        }

    def _deserialize_otp(self, data: dict) -> OneTimeCode:
        return OneTimeCode(
            id=data["id"],
            user_id=data["user_id"],
            purpose=OTPPurpose(data["purpose"]),
            code=data["code"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used_at=self._deserialize_datetime(data.get("used_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "current_refresh_token_hash": session.current_refresh_token_hash,
            "previous_refresh_token_hash": session.previous_refresh_token_hash,
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "created_at": self._serialize_datetime(session.created_at),
            "last_used_at": self._serialize_datetime(session.last_used_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "revoked_at": self._serialize_datetime(session.revoked_at),
            "rotated_at": self._serialize_datetime(session.rotated_at),
            "version": session.version,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            current_refresh_token_hash=data["current_refresh_token_hash"],
            previous_refresh_token_hash=data.get("previous_refresh_token_hash"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_used_at=self._deserialize_datetime(data["last_used_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            rotated_at=self._deserialize_datetime(data.get("rotated_at")),
            version=int(data.get("version", 0)),
        )
