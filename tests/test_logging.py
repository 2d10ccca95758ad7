from authkernel.logging import _redact_pii, hash_identifier


def test_identifier_digest_survives_redaction():
    digest = hash_identifier("ghost@example.com")
    event = _redact_pii(
        None,
        "info",
        {
            "event": "password_reset_skipped",
            "email_hash_prefix": digest,
            "email": "someone@example.com",
            "refresh_token": "abcdefgh",
        },
    )
    assert event["email_hash_prefix"] == digest
    assert event["email"] == "so***om"
    assert event["refresh_token"] == "ab***gh"
    assert event["event"] == "password_reset_skipped"


def test_short_values_fully_masked():
    event = _redact_pii(None, "info", {"event": "x", "code": "1234"})
    assert event["code"] == "***"
