from __future__ import annotations

import asyncio
import functools
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from authkernel.config import Settings
from authkernel.logging import get_logger, hash_identifier
from authkernel.schemas import (
    ChangePasswordInput,
    CodeInput,
    EmailInput,
    LoginInput,
    MessageResponse,
    OAuthStartResponse,
    ResetPasswordInput,
    ResetTokenResponse,
    SessionView,
    SignupInput,
    TokenInput,
    parse_input,
)
from authkernel.service.email import (
    MailMessage,
    Mailer,
    password_reset_code_message,
    verification_code_message,
)
from authkernel.service.errors import (
    EmailInUseError,
    InvalidCredentialsError,
    InvalidOrExpiredCodeError,
    InvalidTokenError,
    UnavailableError,
    ValidationError,
)
from authkernel.service.hashing import SecretHasher
from authkernel.service.identity import FederatedProfile, IdentityResolver
from authkernel.service.oauth import GoogleOAuthClient, IdentityClaims, IdentityVerifier
from authkernel.service.otp import OTPEngine
from authkernel.service.sessions import SessionManager
from authkernel.service.tokens import TokenIssuer, TokenPair, TokenType, password_fingerprint
from authkernel.storage.common import CredentialStore
from authkernel.storage.errors import ConstraintViolation, StoreUnavailable
from authkernel.storage.models import (
    AuthProvider,
    OAuthState,
    OTPPurpose,
    SessionMetadata,
    User,
)

logger = get_logger(__name__)

SIGNUP_RESPONSE = MessageResponse(
    message="Registration successful. Please check your email for the verification code."
)
RESEND_RESPONSE = MessageResponse(
    message="If the account is awaiting verification, a new code has been sent."
)
FORGOT_PASSWORD_RESPONSE = MessageResponse(
    message="You will receive a password reset code if your email is registered."
)
EMAIL_VERIFIED_RESPONSE = MessageResponse(message="Email verified successfully.")
PASSWORD_CHANGED_RESPONSE = MessageResponse(
    message="Password changed. All sessions have been signed out."
)
PASSWORD_RESET_RESPONSE = MessageResponse(
    message="Password has been reset. Please log in with your new password."
)


@dataclass
class AuthContext:
    """Identity of an authenticated bearer, passed explicitly to handlers."""

    user_id: str
    session_id: str
    email: Optional[str]
    provider: AuthProvider


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair


def _store_boundary(fn):
    """Surface infrastructure failures as ``UnavailableError``."""

    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except StoreUnavailable as exc:
            logger.error("auth_store_unavailable", operation=fn.__name__, error=exc.message)
            raise UnavailableError("Authentication service temporarily unavailable") from exc

    return wrapper


class AuthService:
    """Public authentication operations.

    Every operation receives the acting ``user_id``/``session_id`` as
    arguments; nothing is read from request-scoped state.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        mailer: Mailer,
        hasher: Optional[SecretHasher] = None,
        otp: Optional[OTPEngine] = None,
        tokens: Optional[TokenIssuer] = None,
        sessions: Optional[SessionManager] = None,
        identity_verifier: Optional[IdentityVerifier] = None,
        oauth_client: Optional[GoogleOAuthClient] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.mailer = mailer
        self.hasher = hasher or SecretHasher.from_settings(settings)
        self.otp = otp or OTPEngine.from_settings(store, settings)
        self.tokens = tokens or TokenIssuer.from_settings(settings)
        self.sessions = sessions or SessionManager.from_settings(store, self.hasher, settings)
        self.identity = IdentityResolver(store, self.hasher)
        self.identity_verifier = identity_verifier
        self.oauth_client = oauth_client

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- onboarding ------------------------------------------------------------

    @_store_boundary
    async def signup(self, email: str, password: str) -> MessageResponse:
        data = parse_input(SignupInput, email=email, password=password)
        existing = self.store.get_user_by_email(data.email)
        if existing is not None:
            if existing.auth_provider is AuthProvider.LOCAL:
                if existing.email_verified:
                    raise EmailInUseError()
                # unfinished signup: send a fresh code instead of failing
                logger.info("signup_resend_verification", user_id=existing.id)
                await self._send_verification(existing)
                return SIGNUP_RESPONSE
            elif existing.auth_provider is AuthProvider.GOOGLE:
                raise EmailInUseError()
            else:
                raise ValueError(f"unhandled auth provider {existing.auth_provider!r}")

        password_hash = await self.hasher.hash_async(data.password)
        try:
            user = self.store.create_user(User.new_local(data.email, password_hash))
        except ConstraintViolation:
            raise EmailInUseError()
        logger.info("signup_user_created", user_id=user.id)
        await self._send_verification(user)
        return SIGNUP_RESPONSE

    @_store_boundary
    async def resend_verification(self, email: str) -> MessageResponse:
        data = parse_input(EmailInput, email=email)
        user = self.store.get_user_by_email(data.email)
        if (
            user is not None
            and user.auth_provider is AuthProvider.LOCAL
            and not user.email_verified
        ):
            await self._send_verification(user)
        else:
            logger.info("resend_verification_skipped", email_hash_prefix=hash_identifier(data.email))
        return RESEND_RESPONSE

    @_store_boundary
    async def verify_email(self, code: str) -> MessageResponse:
        data = parse_input(CodeInput, code=code)
        user_id = self.otp.consume(OTPPurpose.VERIFICATION, data.code)
        self.store.update_user(user_id, email_verified=True)
        logger.info("email_verified", user_id=user_id)
        return EMAIL_VERIFIED_RESPONSE

    # -- sessions ----------------------------------------------------------------

    @_store_boundary
    async def login(
        self, email: str, password: str, metadata: Optional[SessionMetadata] = None
    ) -> AuthResult:
        data = parse_input(LoginInput, email=email, password=password)
        user = await self.identity.resolve_local_login(data.email, data.password)
        return await self._start_session(user, metadata)

    @_store_boundary
    async def refresh(
        self, refresh_token: str, metadata: Optional[SessionMetadata] = None
    ) -> TokenPair:
        presented_at = self._now()
        data = parse_input(TokenInput, token=refresh_token)
        claims = self.tokens.verify(data.token, TokenType.REFRESH)
        session = await self.sessions.validate_for_refresh(
            claims["sid"], claims["sub"], data.token, presented_at=presented_at
        )
        user = self.store.get_user(session.user_id)
        if user is None:
            raise InvalidTokenError("Token subject no longer exists")
        pair = self.tokens.issue(user, session.id)
        await self.sessions.rotate(
            session.id,
            pair.refresh_token,
            metadata,
            pair.refresh_expires_at,
            expected_version=session.version,
        )
        return pair

    @_store_boundary
    async def authenticate(self, access_token: str) -> AuthContext:
        claims = self.tokens.verify(access_token, TokenType.ACCESS)
        self.sessions.assert_active(claims["sid"], claims["sub"])
        try:
            provider = AuthProvider(claims.get("provider"))
        except ValueError:
            raise InvalidTokenError("Invalid token provider")
        return AuthContext(
            user_id=claims["sub"],
            session_id=claims["sid"],
            email=claims.get("email"),
            provider=provider,
        )

    @_store_boundary
    async def logout(self, user_id: str, session_id: str) -> None:
        self.sessions.revoke_for_user(user_id, session_id)

    @_store_boundary
    async def list_sessions(
        self, user_id: str, current_session_id: Optional[str] = None
    ) -> List[SessionView]:
        return [
            SessionView(
                id=sess.id,
                ip_address=sess.ip_address,
                user_agent=sess.user_agent,
                created_at=sess.created_at,
                last_used_at=sess.last_used_at,
                expires_at=sess.expires_at,
                current=sess.id == current_session_id,
            )
            for sess in self.sessions.list_active(user_id)
        ]

    @_store_boundary
    async def revoke_session(self, user_id: str, session_id: str) -> bool:
        return self.sessions.revoke_for_user(user_id, session_id)

    @_store_boundary
    async def revoke_all_sessions(self, user_id: str) -> int:
        return self.sessions.revoke_all(user_id)

    # -- passwords -----------------------------------------------------------------

    @_store_boundary
    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> MessageResponse:
        data = parse_input(
            ChangePasswordInput,
            current_password=current_password,
            new_password=new_password,
        )
        user = self.store.get_user(user_id)
        if user is None:
            raise InvalidCredentialsError("Current password is incorrect")
        self._require_password_account(user)
        if not await self.hasher.verify_async(user.password_hash, data.current_password):
            raise InvalidCredentialsError("Current password is incorrect")
        if data.new_password == data.current_password:
            raise ValidationError("New password must be different from the current password")
        await self._set_password(user, data.new_password)
        logger.info("password_changed", user_id=user.id)
        return PASSWORD_CHANGED_RESPONSE

    @_store_boundary
    async def forgot_password(self, email: str) -> MessageResponse:
        data = parse_input(EmailInput, email=email)
        user = self.store.get_user_by_email(data.email)
        if user is not None and user.auth_provider is AuthProvider.LOCAL:
            code = self.otp.issue(OTPPurpose.PASSWORD_RESET, user.id)
            await self._deliver(
                user,
                password_reset_code_message(
                    self.settings.app_name, code, self.settings.otp_ttl_minutes
                ),
                "password_reset",
            )
        else:
            logger.info("password_reset_skipped", email_hash_prefix=hash_identifier(data.email))
        return FORGOT_PASSWORD_RESPONSE

    @_store_boundary
    async def verify_reset_code(self, code: str) -> ResetTokenResponse:
        data = parse_input(CodeInput, code=code)
        user_id = self.otp.consume(OTPPurpose.PASSWORD_RESET, data.code)
        user = self.store.get_user(user_id)
        if user is None or user.auth_provider is not AuthProvider.LOCAL:
            raise InvalidOrExpiredCodeError()
        token = self.tokens.issue_password_reset(user)
        return ResetTokenResponse(
            reset_token=token,
            expires_in=int(self.tokens.reset_ttl.total_seconds()),
        )

    @_store_boundary
    async def reset_password(self, reset_token: str, new_password: str) -> MessageResponse:
        data = parse_input(ResetPasswordInput, token=reset_token, new_password=new_password)
        claims = self.tokens.verify(data.token, TokenType.PASSWORD_RESET)
        user = self.store.get_user(claims["sub"])
        if user is None:
            raise InvalidTokenError("Token subject no longer exists")
        self._require_password_account(user)
        if claims.get("pwf") != password_fingerprint(user.password_hash):
            raise InvalidTokenError("Reset token has already been used")
        await self._set_password(user, data.new_password)
        logger.info("password_reset_completed", user_id=user.id)
        return PASSWORD_RESET_RESPONSE

    # -- federated -------------------------------------------------------------------

    @_store_boundary
    async def federated_login(
        self,
        *,
        identity_token: Optional[str] = None,
        profile: Optional[FederatedProfile] = None,
        metadata: Optional[SessionMetadata] = None,
    ) -> AuthResult:
        if (identity_token is None) == (profile is None):
            raise ValidationError("Provide exactly one of identity_token or profile")
        if identity_token is not None:
            if self.identity_verifier is None:
                raise UnavailableError("Federated sign-in is not configured")
            claims = await self.identity_verifier.verify_identity_token(
                identity_token, self.settings.google_client_id
            )
            profile = self._profile_from_claims(claims)
        user = self.identity.resolve_federated_profile(profile)
        return await self._start_session(user, metadata)

    @_store_boundary
    async def start_google_login(self) -> OAuthStartResponse:
        if self.oauth_client is None:
            raise UnavailableError("Google sign-in is not configured")
        state = secrets.token_urlsafe(32)
        self.store.save_oauth_state(OAuthState.new(state, AuthProvider.GOOGLE))
        return OAuthStartResponse(
            authorization_url=self.oauth_client.authorization_url(state), state=state
        )

    @_store_boundary
    async def complete_google_login(
        self, code: str, state: str, metadata: Optional[SessionMetadata] = None
    ) -> AuthResult:
        if self.oauth_client is None:
            raise UnavailableError("Google sign-in is not configured")
        stored = self.store.pop_oauth_state(state or "", self._now())
        if stored is None or stored.provider is not AuthProvider.GOOGLE:
            raise InvalidTokenError("Invalid or expired OAuth state")
        claims = await self.oauth_client.exchange_code(code)
        user = self.identity.resolve_federated_profile(self._profile_from_claims(claims))
        return await self._start_session(user, metadata)

    # -- maintenance -----------------------------------------------------------------

    @_store_boundary
    async def cleanup_expired(self) -> Dict[str, int]:
        return self.sessions.prune()

    # -- helpers -----------------------------------------------------------------------

    @staticmethod
    def _profile_from_claims(claims: IdentityClaims) -> FederatedProfile:
        return FederatedProfile(
            id=claims.subject_id,
            email=claims.email,
            display_name=claims.display_name,
            email_verified=claims.email_verified,
            provider=AuthProvider.GOOGLE,
        )

    @staticmethod
    def _require_password_account(user: User) -> None:
        if user.auth_provider is AuthProvider.LOCAL:
            return
        elif user.auth_provider is AuthProvider.GOOGLE:
            raise ValidationError("Password operations are not available for Google accounts")
        raise ValueError(f"unhandled auth provider {user.auth_provider!r}")

    async def _set_password(self, user: User, new_password: str) -> None:
        new_hash = await self.hasher.hash_async(new_password)
        self.store.update_user(user.id, password_hash=new_hash)
        self.sessions.revoke_all(user.id)

    async def _start_session(
        self, user: User, metadata: Optional[SessionMetadata]
    ) -> AuthResult:
        session_id = str(uuid.uuid4())
        pair = self.tokens.issue(user, session_id)
        await self.sessions.create(
            session_id, user.id, pair.refresh_token, metadata, pair.refresh_expires_at
        )
        logger.info(
            "login_succeeded",
            user_id=user.id,
            session_id=session_id,
            provider=user.auth_provider.value,
        )
        return AuthResult(user=user, tokens=pair)

    async def _send_verification(self, user: User) -> None:
        code = self.otp.issue(OTPPurpose.VERIFICATION, user.id)
        await self._deliver(
            user,
            verification_code_message(
                self.settings.app_name, code, self.settings.otp_ttl_minutes
            ),
            "verification",
        )

    async def _deliver(self, user: User, message: MailMessage, kind: str) -> None:
        """Send after the code is committed; a failed delivery never fails the caller."""
        try:
            delivered = await asyncio.to_thread(
                self.mailer.send, user.email, message.subject, message.html, message.text
            )
        except Exception as exc:
            logger.error(
                "auth_email_failed",
                kind=kind,
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not delivered:
            logger.warning("auth_email_failed", kind=kind, user_id=user.id)
