"""End-to-end flows through AuthService against the in-memory store."""

import asyncio

import pytest

from authkernel.service.auth import (
    FORGOT_PASSWORD_RESPONSE,
    RESEND_RESPONSE,
    AuthService,
)
from authkernel.service.errors import (
    EmailInUseError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    InvalidOrExpiredCodeError,
    InvalidTokenError,
    ProviderConflictError,
    RefreshConflictError,
    SessionRevokedError,
    TokenReuseDetectedError,
    UnavailableError,
    ValidationError,
)
from authkernel.service.identity import FederatedProfile
from authkernel.service.oauth import IdentityClaims
from authkernel.storage.errors import StoreUnavailable
from authkernel.storage.models import AuthProvider, SessionMetadata

EMAIL = "alice@example.com"
PASSWORD = "correct-horse-battery"


async def _verified_user(auth_service, mailer, email=EMAIL, password=PASSWORD):
    await auth_service.signup(email, password)
    await auth_service.verify_email(mailer.last_code(email))


class FakeVerifier:
    def __init__(self, claims):
        self.claims = claims
        self.calls = []

    async def verify_identity_token(self, token, audience):
        self.calls.append((token, audience))
        if token != "good-id-token":
            raise InvalidTokenError("Invalid identity token")
        return self.claims


class FakeOAuthClient:
    def __init__(self, claims):
        self.claims = claims
        self.codes = []

    def authorization_url(self, state):
        return f"https://accounts.example/auth?state={state}"

    async def exchange_code(self, code):
        self.codes.append(code)
        return self.claims


class TestSignupAndVerification:
    async def test_signup_verify_login_refresh(self, auth_service, mailer):
        response = await auth_service.signup("Alice@Example.com ", PASSWORD)
        assert "verification" in response.message.lower()
        assert mailer.sent[-1]["to"] == EMAIL

        code = mailer.last_code(EMAIL)
        wrong = "000000" if code != "000000" else "111111"
        with pytest.raises(InvalidOrExpiredCodeError):
            await auth_service.verify_email(wrong)

        await auth_service.verify_email(code)
        result = await auth_service.login(EMAIL, PASSWORD)
        assert result.user.email_verified is True

        refreshed = await auth_service.refresh(result.tokens.refresh_token)
        assert refreshed.session_id == result.tokens.session_id
        assert refreshed.refresh_token != result.tokens.refresh_token

    async def test_login_before_verification(self, auth_service):
        await auth_service.signup(EMAIL, PASSWORD)
        with pytest.raises(EmailNotVerifiedError):
            await auth_service.login(EMAIL, PASSWORD)

    async def test_unverified_login_with_wrong_password_hides_state(self, auth_service):
        await auth_service.signup(EMAIL, PASSWORD)
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login(EMAIL, "not-the-password")

    async def test_code_is_single_use(self, auth_service, mailer):
        await auth_service.signup(EMAIL, PASSWORD)
        code = mailer.last_code(EMAIL)
        await auth_service.verify_email(code)
        with pytest.raises(InvalidOrExpiredCodeError):
            await auth_service.verify_email(code)

    async def test_repeat_signup_resends_for_unverified(self, auth_service, mailer):
        await auth_service.signup(EMAIL, PASSWORD)
        first = mailer.last_code(EMAIL)
        await auth_service.signup(EMAIL, PASSWORD)
        assert len(mailer.sent) == 2
        second = mailer.last_code(EMAIL)
        if first != second:
            with pytest.raises(InvalidOrExpiredCodeError):
                await auth_service.verify_email(first)
        await auth_service.verify_email(second)

    async def test_signup_for_verified_email_conflicts(self, auth_service, mailer):
        await _verified_user(auth_service, mailer)
        with pytest.raises(EmailInUseError):
            await auth_service.signup(EMAIL, PASSWORD)

    async def test_signup_rejects_weak_input(self, auth_service):
        with pytest.raises(ValidationError) as excinfo:
            await auth_service.signup("not-an-email", "short")
        assert set(excinfo.value.detail["fields"]) == {"email", "password"}

    async def test_resend_is_uniform(self, auth_service, mailer):
        await _verified_user(auth_service, mailer)
        sent_before = len(mailer.sent)
        assert await auth_service.resend_verification(EMAIL) is RESEND_RESPONSE
        assert await auth_service.resend_verification("ghost@example.com") is RESEND_RESPONSE
        assert len(mailer.sent) == sent_before

    async def test_failed_mail_does_not_fail_signup(self, memory_store, settings, hasher):
        class BrokenMailer:
            def send(self, *args, **kwargs):
                raise ConnectionError("smtp down")

        service = AuthService(memory_store, settings, mailer=BrokenMailer(), hasher=hasher)
        await service.signup(EMAIL, PASSWORD)
        assert memory_store.get_user_by_email(EMAIL) is not None


class TestLogin:
    async def test_unknown_email_and_wrong_password_look_alike(self, auth_service, mailer):
        await _verified_user(auth_service, mailer)
        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth_service.login("ghost@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await auth_service.login(EMAIL, "wrong-password-1")
        assert unknown.value.message == wrong.value.message

    async def test_login_records_metadata(self, auth_service, mailer):
        await _verified_user(auth_service, mailer)
        result = await auth_service.login(
            EMAIL, PASSWORD, SessionMetadata(ip_address="192.0.2.1", user_agent="curl/8")
        )
        sessions = await auth_service.list_sessions(
            result.user.id, current_session_id=result.tokens.session_id
        )
        assert len(sessions) == 1
        assert sessions[0].current is True
        assert sessions[0].ip_address == "192.0.2.1"
        assert sessions[0].user_agent == "curl/8"

    async def test_authenticate_access_token(self, auth_service, mailer):
        await _verified_user(auth_service, mailer)
        result = await auth_service.login(EMAIL, PASSWORD)
        context = await auth_service.authenticate(result.tokens.access_token)
        assert context.user_id == result.user.id
        assert context.session_id == result.tokens.session_id
        assert context.provider is AuthProvider.LOCAL

    async def test_refresh_token_is_not_an_access_token(self, auth_service, mailer):
        await _verified_user(auth_service, mailer)
        result = await auth_service.login(EMAIL, PASSWORD)
        with pytest.raises(InvalidTokenError):
            await auth_service.authenticate(result.tokens.refresh_token)
        with pytest.raises(InvalidTokenError):
            await auth_service.refresh(result.tokens.access_token)


class TestRefresh:
    async def test_replay_revokes_everything(self, auth_service, mailer):
        await _verified_user(auth_service, mailer)
        first = await auth_service.login(EMAIL, PASSWORD)
        other = await auth_service.login(EMAIL, PASSWORD)
        rotated = await auth_service.refresh(first.tokens.refresh_token)

        with pytest.raises(TokenReuseDetectedError):
            await auth_service.refresh(first.tokens.refresh_token)

        with pytest.raises(SessionRevokedError):
            await auth_service.refresh(rotated.refresh_token)
        with pytest.raises(SessionRevokedError):
            await auth_service.authenticate(other.tokens.access_token)

    async def test_concurrent_refresh_has_one_winner(self, auth_service, mailer):
        await _verified_user(auth_service, mailer)
        result = await auth_service.login(EMAIL, PASSWORD)
        token = result.tokens.refresh_token

        outcomes = await asyncio.gather(
            auth_service.refresh(token),
            auth_service.refresh(token),
            return_exceptions=True,
        )
        winners = [o for o in outcomes if not isinstance(o, Exception)]
        losers = [o for o in outcomes if isinstance(o, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], RefreshConflictError)

        # the winner's tokens keep working and nothing was revoked
        await auth_service.authenticate(winners[0].access_token)
        await auth_service.refresh(winners[0].refresh_token)

    async def test_logout_then_refresh(self, auth_service, mailer):
        await _verified_user(auth_service, mailer)
        result = await auth_service.login(EMAIL, PASSWORD)
        await auth_service.logout(result.user.id, result.tokens.session_id)
        await auth_service.logout(result.user.id, result.tokens.session_id)
        with pytest.raises(SessionRevokedError):
            await auth_service.refresh(result.tokens.refresh_token)

    async def test_revoke_other_session(self, auth_service, mailer):
        await _verified_user(auth_service, mailer)
        keep = await auth_service.login(EMAIL, PASSWORD)
        drop = await auth_service.login(EMAIL, PASSWORD)
        assert await auth_service.revoke_session(keep.user.id, drop.tokens.session_id) is True
        views = await auth_service.list_sessions(keep.user.id)
        assert [v.id for v in views] == [keep.tokens.session_id]

    async def test_revoke_all(self, auth_service, mailer):
        await _verified_user(auth_service, mailer)
        result = await auth_service.login(EMAIL, PASSWORD)
        await auth_service.login(EMAIL, PASSWORD)
        assert await auth_service.revoke_all_sessions(result.user.id) == 2
        assert await auth_service.list_sessions(result.user.id) == []


class TestPasswords:
    async def test_change_password_signs_out_everywhere(self, auth_service, mailer):
        await _verified_user(auth_service, mailer)
        result = await auth_service.login(EMAIL, PASSWORD)
        await auth_service.change_password(result.user.id, PASSWORD, "a-brand-new-secret")

        with pytest.raises(SessionRevokedError):
            await auth_service.authenticate(result.tokens.access_token)
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login(EMAIL, PASSWORD)
        await auth_service.login(EMAIL, "a-brand-new-secret")

    async def test_change_password_rejects_earlier_refresh_tokens(self, auth_service, mailer):
        await _verified_user(auth_service, mailer)
        laptop = await auth_service.login(EMAIL, PASSWORD)
        phone = await auth_service.login(EMAIL, PASSWORD)
        await auth_service.change_password(laptop.user.id, PASSWORD, "a-brand-new-secret")

        with pytest.raises(SessionRevokedError):
            await auth_service.refresh(laptop.tokens.refresh_token)
        with pytest.raises(SessionRevokedError):
            await auth_service.refresh(phone.tokens.refresh_token)
        assert await auth_service.list_sessions(laptop.user.id) == []

    async def test_change_password_requires_current(self, auth_service, mailer):
        await _verified_user(auth_service, mailer)
        result = await auth_service.login(EMAIL, PASSWORD)
        with pytest.raises(InvalidCredentialsError):
            await auth_service.change_password(result.user.id, "nope-nope-nope", "another-secret")
        with pytest.raises(ValidationError):
            await auth_service.change_password(result.user.id, PASSWORD, PASSWORD)

    async def test_forgot_password_responses_are_identical(self, auth_service, mailer):
        await _verified_user(auth_service, mailer)
        await auth_service.federated_login(
            profile=FederatedProfile(id="g-1", email="google@example.com")
        )
        known = await auth_service.forgot_password(EMAIL)
        unknown = await auth_service.forgot_password("ghost@example.com")
        federated = await auth_service.forgot_password("google@example.com")

        assert known is FORGOT_PASSWORD_RESPONSE
        assert known.model_dump_json() == unknown.model_dump_json() == federated.model_dump_json()
        assert [m["to"] for m in mailer.sent].count("google@example.com") == 0

    async def test_reset_flow(self, auth_service, mailer):
        await _verified_user(auth_service, mailer)
        session = await auth_service.login(EMAIL, PASSWORD)
        await auth_service.forgot_password(EMAIL)
        issued = await auth_service.verify_reset_code(mailer.last_code(EMAIL))
        assert issued.expires_in == 15 * 60

        await auth_service.reset_password(issued.reset_token, "reset-new-password")
        with pytest.raises(SessionRevokedError):
            await auth_service.authenticate(session.tokens.access_token)
        await auth_service.login(EMAIL, "reset-new-password")

        # a reset token authorises exactly one change
        with pytest.raises(InvalidTokenError):
            await auth_service.reset_password(issued.reset_token, "yet-another-password")

    async def test_reset_code_is_not_a_verification_code(self, auth_service, mailer):
        await _verified_user(auth_service, mailer)
        await auth_service.forgot_password(EMAIL)
        with pytest.raises(InvalidOrExpiredCodeError):
            await auth_service.verify_email(mailer.last_code(EMAIL))

    async def test_access_token_cannot_reset(self, auth_service, mailer):
        await _verified_user(auth_service, mailer)
        result = await auth_service.login(EMAIL, PASSWORD)
        with pytest.raises(InvalidTokenError):
            await auth_service.reset_password(result.tokens.access_token, "reset-new-password")

    async def test_google_account_cannot_change_password(self, auth_service):
        result = await auth_service.federated_login(
            profile=FederatedProfile(id="g-1", email="google@example.com")
        )
        with pytest.raises(ValidationError):
            await auth_service.change_password(result.user.id, PASSWORD, "another-secret")


class TestFederated:
    async def test_profile_login_creates_verified_account(self, auth_service, memory_store):
        result = await auth_service.federated_login(
            profile=FederatedProfile(id="g-42", email="Bob@Example.com", display_name="Bob")
        )
        assert result.user.auth_provider is AuthProvider.GOOGLE
        assert result.user.email == "bob@example.com"
        assert result.user.email_verified is True

        again = await auth_service.federated_login(
            profile=FederatedProfile(id="g-42", email="bob@example.com")
        )
        assert again.user.id == result.user.id
        assert again.tokens.session_id != result.tokens.session_id

    async def test_local_email_conflicts(self, auth_service, mailer):
        await _verified_user(auth_service, mailer)
        with pytest.raises(ProviderConflictError):
            await auth_service.federated_login(profile=FederatedProfile(id="g-1", email=EMAIL))

    async def test_google_email_blocks_password_login(self, auth_service):
        await auth_service.federated_login(
            profile=FederatedProfile(id="g-1", email="google@example.com")
        )
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("google@example.com", PASSWORD)
        with pytest.raises(EmailInUseError):
            await auth_service.signup("google@example.com", PASSWORD)

    async def test_identity_token_login(self, memory_store, settings, hasher, mailer):
        verifier = FakeVerifier(
            IdentityClaims(subject_id="g-7", email="carol@example.com", email_verified=True)
        )
        settings = settings.model_copy(update={"google_client_id": "client-123"})
        service = AuthService(
            memory_store, settings, mailer=mailer, hasher=hasher, identity_verifier=verifier
        )
        result = await service.federated_login(identity_token="good-id-token")
        assert result.user.provider_id == "g-7"
        assert verifier.calls == [("good-id-token", "client-123")]

        with pytest.raises(InvalidTokenError):
            await service.federated_login(identity_token="forged")

    async def test_identity_token_without_verifier(self, auth_service):
        with pytest.raises(UnavailableError):
            await auth_service.federated_login(identity_token="good-id-token")

    async def test_exactly_one_credential(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.federated_login()

    async def test_redirect_flow(self, memory_store, settings, hasher, mailer):
        oauth = FakeOAuthClient(IdentityClaims(subject_id="g-9", email="dan@example.com"))
        service = AuthService(
            memory_store, settings, mailer=mailer, hasher=hasher, oauth_client=oauth
        )
        started = await service.start_google_login()
        assert started.state in started.authorization_url

        result = await service.complete_google_login("auth-code", started.state)
        assert result.user.email == "dan@example.com"
        assert oauth.codes == ["auth-code"]

        # state is single use
        with pytest.raises(InvalidTokenError):
            await service.complete_google_login("auth-code", started.state)

    async def test_redirect_flow_unknown_state(self, memory_store, settings, hasher, mailer):
        oauth = FakeOAuthClient(IdentityClaims(subject_id="g-9", email="dan@example.com"))
        service = AuthService(
            memory_store, settings, mailer=mailer, hasher=hasher, oauth_client=oauth
        )
        with pytest.raises(InvalidTokenError):
            await service.complete_google_login("auth-code", "made-up-state")
        assert oauth.codes == []


class TestInfrastructure:
    async def test_store_outage_surfaces_as_unavailable(self, auth_service, memory_store, monkeypatch):
        def down(*args, **kwargs):
            raise StoreUnavailable("connection refused")

        monkeypatch.setattr(memory_store, "get_user_by_email", down)
        with pytest.raises(UnavailableError) as excinfo:
            await auth_service.login(EMAIL, PASSWORD)
        assert excinfo.value.status_code == 503

    async def test_cleanup_expired(self, auth_service):
        counts = await auth_service.cleanup_expired()
        assert counts == {"otps": 0, "sessions": 0, "oauth_states": 0}
