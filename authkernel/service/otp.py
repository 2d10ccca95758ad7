from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timedelta, timezone

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.errors import InvalidOrExpiredCodeError
from authkernel.storage.common import CredentialStore
from authkernel.storage.models import OneTimeCode, OTPPurpose

logger = get_logger(__name__)

_MAX_GENERATION_ATTEMPTS = 5


class OTPEngine:
    """Issues and consumes short numeric one-time codes.

    Lookups happen by code alone, so a freshly generated code that collides
    with another user's live code of the same purpose is regenerated.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        length: int = 6,
        ttl: timedelta = timedelta(minutes=10),
    ) -> None:
        self.store = store
        self.length = length
        self.ttl = ttl

    @classmethod
    def from_settings(cls, store: CredentialStore, settings: Settings) -> "OTPEngine":
        return cls(
            store,
            length=settings.otp_length,
            ttl=timedelta(minutes=settings.otp_ttl_minutes),
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _generate(self) -> str:
        return str(secrets.randbelow(10**self.length)).zfill(self.length)

    def issue(self, purpose: OTPPurpose, user_id: str) -> str:
        now = self._now()
        code = self._generate()
        attempts = 1
        while self.store.otp_code_active(purpose, code, now):
            if attempts >= _MAX_GENERATION_ATTEMPTS:
                raise RuntimeError("unable to generate a unique one-time code")
            code = self._generate()
            attempts += 1
        invalidated = self.store.replace_otp(
            OneTimeCode(
                id=str(uuid.uuid4()),
                user_id=user_id,
                purpose=purpose,
                code=code,
                expires_at=now + self.ttl,
                created_at=now,
            ),
            now,
        )
        logger.info(
            "otp_issued",
            purpose=purpose.value,
            user_id=user_id,
            invalidated=invalidated,
        )
        return code

    def consume(self, purpose: OTPPurpose, code: str) -> str:
        """Mark a live code used and return its owner's id.

        Wrong, expired and already used codes all raise the same error.
        Verification codes only match accounts that sign in with a password.
        """
        candidate = (code or "").strip()
        if len(candidate) != self.length or not candidate.isdigit():
            raise InvalidOrExpiredCodeError()
        user_id = self.store.consume_otp(
            purpose,
            candidate,
            self._now(),
            local_only=purpose is OTPPurpose.VERIFICATION,
        )
        if user_id is None:
            logger.info("otp_rejected", purpose=purpose.value)
            raise InvalidOrExpiredCodeError()
        logger.info("otp_consumed", purpose=purpose.value, user_id=user_id)
        return user_id
