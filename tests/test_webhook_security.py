#!/usr/bin/env python3
"""
Webhook verifier tests: HMAC, Slack v0 signatures with replay window,
bearer tokens and fail-closed handling of missing secrets.
"""

from __future__ import annotations

import hashlib
import hmac

import pytest

from core.errors import AuthenticationError, ConfigurationError
from core.webhook_security import (
    BearerTokenVerifier,
    HmacSignatureVerifier,
    SlackSignatureVerifier,
    authenticate_webhook,
    build_verifier,
    get_webhook_signature_status,
    is_webhook_signature_strict_mode,
    verify_hmac_sha256,
)

BODY = b'{"event": "invitee.created"}'
NOW = 1_768_903_200


def _hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _slack_headers(secret: str, body: bytes, timestamp: int) -> dict:
    basestring = b"v0:" + str(timestamp).encode() + b":" + body
    return {
        "X-Slack-Request-Timestamp": str(timestamp),
        "X-Slack-Signature": "v0=" + _hex(secret, basestring),
    }


def test_verify_hmac_sha256_accepts_prefixed_and_plain_signatures():
    digest = _hex("s3cret", BODY)
    assert verify_hmac_sha256(BODY, digest, "s3cret")
    assert verify_hmac_sha256(BODY, f"sha256={digest}", "s3cret")
    assert not verify_hmac_sha256(BODY, digest, "other")
    assert not verify_hmac_sha256(BODY, "", "s3cret")
    assert not verify_hmac_sha256(BODY + b" ", digest, "s3cret")


def test_hmac_verifier_timestamped_header():
    verifier = HmacSignatureVerifier("Calendly-Webhook-Signature", tolerance_seconds=300, now_fn=lambda: NOW)
    signature = _hex("s3cret", f"{NOW}.".encode() + BODY)

    fresh = {"Calendly-Webhook-Signature": f"t={NOW},v1={signature}"}
    assert verifier.verify(BODY, fresh, "s3cret")

    flipped = signature[:-1] + ("1" if signature.endswith("0") else "0")
    tampered = {"Calendly-Webhook-Signature": f"t={NOW},v1={flipped}"}
    assert not verifier.verify(BODY, tampered, "s3cret")

    old_sig = _hex("s3cret", f"{NOW - 600}.".encode() + BODY)
    stale = {"Calendly-Webhook-Signature": f"t={NOW - 600},v1={old_sig}"}
    assert not verifier.verify(BODY, stale, "s3cret")


def test_hmac_verifier_header_lookup_is_case_insensitive():
    verifier = HmacSignatureVerifier("X-Otter-Signature")
    assert verifier.verify(BODY, {"x-otter-signature": _hex("k", BODY)}, "k")
    assert not verifier.verify(BODY, {}, "k")


def test_slack_verifier_rejects_replayed_timestamp():
    verifier = SlackSignatureVerifier(tolerance_seconds=300, now_fn=lambda: NOW)

    assert verifier.verify(BODY, _slack_headers("signing", BODY, NOW - 299), "signing")
    assert not verifier.verify(BODY, _slack_headers("signing", BODY, NOW - 301), "signing")
    assert not verifier.verify(BODY, _slack_headers("wrong", BODY, NOW), "signing")
    assert not verifier.verify(BODY, {"X-Slack-Signature": "v0=abc"}, "signing")


def test_bearer_verifier():
    verifier = BearerTokenVerifier()
    assert verifier.verify(BODY, {"Authorization": "Bearer key-123"}, "key-123")
    assert not verifier.verify(BODY, {"Authorization": "Bearer key-124"}, "key-123")
    assert not verifier.verify(BODY, {"Authorization": "key-123"}, "key-123")


def test_build_verifier_per_scheme():
    assert isinstance(build_verifier({"scheme": "hmac", "signature_header": "X-Sig"}), HmacSignatureVerifier)
    assert isinstance(build_verifier({"scheme": "slack"}), SlackSignatureVerifier)
    assert isinstance(build_verifier({"scheme": "bearer"}), BearerTokenVerifier)
    with pytest.raises(ConfigurationError):
        build_verifier({"scheme": "rot13"})


def test_strict_mode_defaults_on(monkeypatch):
    assert is_webhook_signature_strict_mode()
    monkeypatch.setenv("WEBHOOK_SIGNATURE_REQUIRED", "false")
    assert not is_webhook_signature_strict_mode()


def test_signature_status(monkeypatch):
    monkeypatch.delenv("CALENDLY_WEBHOOK_SECRET", raising=False)
    assert get_webhook_signature_status("CALENDLY_WEBHOOK_SECRET") == {
        "strict_mode": True,
        "secret_configured": False,
    }


def test_authenticate_missing_secret_fails_closed(monkeypatch):
    monkeypatch.delenv("CALENDLY_WEBHOOK_SECRET", raising=False)
    with pytest.raises(ConfigurationError):
        authenticate_webhook(provider="calendly", raw_body=BODY, headers={})


def test_authenticate_missing_secret_allowed_when_not_strict(monkeypatch):
    monkeypatch.delenv("CALENDLY_WEBHOOK_SECRET", raising=False)
    monkeypatch.setenv("WEBHOOK_SIGNATURE_REQUIRED", "false")
    authenticate_webhook(provider="calendly", raw_body=BODY, headers={})


def test_authenticate_bad_signature(monkeypatch):
    monkeypatch.setenv("OTTER_WEBHOOK_SECRET", "otter-secret")
    with pytest.raises(AuthenticationError):
        authenticate_webhook(provider="otter", raw_body=BODY, headers={"X-Otter-Signature": "sha256=bad"})

    authenticate_webhook(
        provider="otter", raw_body=BODY, headers={"X-Otter-Signature": _hex("otter-secret", BODY)}
    )


def test_authenticate_unknown_provider():
    with pytest.raises(ConfigurationError):
        authenticate_webhook(provider="myspace", raw_body=BODY, headers={})


@pytest.mark.parametrize("verifier,headers", [
    (BearerTokenVerifier(), {"Authorization": "Bearer sécret"}),
    (HmacSignatureVerifier("X-Otter-Signature"), {"X-Otter-Signature": "sha256=déadbeef"}),
    (
        HmacSignatureVerifier("Calendly-Webhook-Signature", now_fn=lambda: NOW),
        {"Calendly-Webhook-Signature": f"t={NOW},v1=é"},
    ),
    (
        SlackSignatureVerifier(now_fn=lambda: NOW),
        {"X-Slack-Request-Timestamp": str(NOW), "X-Slack-Signature": "v0=ü"},
    ),
])
def test_non_ascii_header_values_are_rejected(verifier, headers):
    assert verifier.verify(BODY, headers, "secret") is False


def test_authenticate_non_ascii_bearer_is_authentication_error(monkeypatch):
    monkeypatch.setenv("GMAIL_PUSH_TOKEN", "secret")
    with pytest.raises(AuthenticationError):
        authenticate_webhook(provider="gmail", raw_body=b"{}", headers={"Authorization": "Bearer sécret"})
