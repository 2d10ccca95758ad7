"""Unit tests for one-time code issuance and consumption."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from authkernel.service.errors import InvalidOrExpiredCodeError
from authkernel.service.otp import OTPEngine
from authkernel.storage.models import AuthProvider, OTPPurpose, User


@pytest.fixture
def local_user(memory_store):
    return memory_store.create_user(User.new_local("otp@example.com", "hash"))


@pytest.fixture
def engine(memory_store):
    return OTPEngine(memory_store)


class TestIssue:
    def test_code_is_six_zero_padded_digits(self, engine, local_user):
        code = engine.issue(OTPPurpose.VERIFICATION, local_user.id)
        assert len(code) == 6
        assert code.isdigit()

    def test_generation_pads_small_numbers(self, engine, monkeypatch):
        monkeypatch.setattr("authkernel.service.otp.secrets.randbelow", lambda _: 42)
        assert engine._generate() == "000042"

    def test_expiry_uses_ttl(self, memory_store, local_user):
        engine = OTPEngine(memory_store, ttl=timedelta(minutes=10))
        before = datetime.now(timezone.utc)
        engine.issue(OTPPurpose.VERIFICATION, local_user.id)
        (otp,) = memory_store.list_otps(OTPPurpose.VERIFICATION, local_user.id)
        assert before + timedelta(minutes=9) < otp.expires_at <= before + timedelta(minutes=10, seconds=5)

    def test_reissue_leaves_exactly_one_unused_code(self, engine, memory_store, local_user):
        engine.issue(OTPPurpose.VERIFICATION, local_user.id)
        engine.issue(OTPPurpose.VERIFICATION, local_user.id)
        codes = memory_store.list_otps(OTPPurpose.VERIFICATION, local_user.id)
        assert len(codes) == 2
        assert sum(1 for c in codes if c.used_at is None) == 1

    def test_reissue_invalidates_previous_code(self, engine, local_user):
        first = engine.issue(OTPPurpose.VERIFICATION, local_user.id)
        second = engine.issue(OTPPurpose.VERIFICATION, local_user.id)
        if first != second:
            with pytest.raises(InvalidOrExpiredCodeError):
                engine.consume(OTPPurpose.VERIFICATION, first)
        assert engine.consume(OTPPurpose.VERIFICATION, second) == local_user.id

    def test_purposes_are_independent(self, engine, local_user):
        reset = engine.issue(OTPPurpose.PASSWORD_RESET, local_user.id)
        engine.issue(OTPPurpose.VERIFICATION, local_user.id)
        assert engine.consume(OTPPurpose.PASSWORD_RESET, reset) == local_user.id

    def test_colliding_code_is_regenerated(self, engine, memory_store, monkeypatch):
        other = memory_store.create_user(User.new_local("other@example.com", "hash"))
        mine = memory_store.create_user(User.new_local("mine@example.com", "hash"))
        values = iter([123456, 123456, 654321])
        monkeypatch.setattr("authkernel.service.otp.secrets.randbelow", lambda _: next(values))

        assert engine.issue(OTPPurpose.VERIFICATION, other.id) == "123456"
        assert engine.issue(OTPPurpose.VERIFICATION, mine.id) == "654321"

    def test_concurrent_issue_leaves_one_live_code(self, engine, memory_store, local_user, monkeypatch):
        """Two issuers that both pass the collision check still leave one live code."""
        barrier = threading.Barrier(2, timeout=5)
        real_check = memory_store.otp_code_active

        def check_then_wait(purpose, code, now):
            active = real_check(purpose, code, now)
            barrier.wait()
            return active

        monkeypatch.setattr(memory_store, "otp_code_active", check_then_wait)
        errors = []

        def issue():
            try:
                engine.issue(OTPPurpose.VERIFICATION, local_user.id)
            except Exception as exc:  # pragma: no cover - surfaced below
                errors.append(exc)

        threads = [threading.Thread(target=issue) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        codes = memory_store.list_otps(OTPPurpose.VERIFICATION, local_user.id)
        assert len(codes) == 2
        assert sum(1 for c in codes if c.used_at is None) == 1


class TestConsume:
    def test_code_is_single_use(self, engine, local_user):
        code = engine.issue(OTPPurpose.VERIFICATION, local_user.id)
        assert engine.consume(OTPPurpose.VERIFICATION, code) == local_user.id
        with pytest.raises(InvalidOrExpiredCodeError):
            engine.consume(OTPPurpose.VERIFICATION, code)

    def test_expired_code_rejected(self, memory_store, local_user):
        engine = OTPEngine(memory_store, ttl=timedelta(seconds=-1))
        code = engine.issue(OTPPurpose.VERIFICATION, local_user.id)
        with pytest.raises(InvalidOrExpiredCodeError):
            engine.consume(OTPPurpose.VERIFICATION, code)

    def test_failure_messages_do_not_differ(self, memory_store, local_user):
        engine = OTPEngine(memory_store)
        code = engine.issue(OTPPurpose.VERIFICATION, local_user.id)
        engine.consume(OTPPurpose.VERIFICATION, code)

        messages = set()
        for attempt in (code, "000000" if code != "000000" else "111111", "12ab56", ""):
            with pytest.raises(InvalidOrExpiredCodeError) as exc_info:
                engine.consume(OTPPurpose.VERIFICATION, attempt)
            messages.add(exc_info.value.message)
        assert len(messages) == 1

    def test_verification_requires_local_owner(self, engine, memory_store):
        google_user = memory_store.create_user(
            User.new_federated(AuthProvider.GOOGLE, "g@example.com", "sub-1")
        )
        code = engine.issue(OTPPurpose.VERIFICATION, google_user.id)
        with pytest.raises(InvalidOrExpiredCodeError):
            engine.consume(OTPPurpose.VERIFICATION, code)

    def test_wrong_purpose_rejected(self, engine, local_user):
        code = engine.issue(OTPPurpose.PASSWORD_RESET, local_user.id)
        with pytest.raises(InvalidOrExpiredCodeError):
            engine.consume(OTPPurpose.VERIFICATION, code)
