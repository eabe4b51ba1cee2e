#!/usr/bin/env python3
"""
Webhook verifiers and fail-closed signature enforcement.

Schemes:
- hmac:   HMAC-SHA256 over the raw body (Calendly, Otter). Calendly's
          "t=<ts>,v1=<sig>" header signs "<ts>.<body>" and is freshness checked.
- slack:  "v0=" + HMAC-SHA256 over "v0:<timestamp>:<body>", rejected when the
          timestamp is more than the tolerance away from now.
- bearer: "Authorization: Bearer <key>" compared in constant time.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
import time
from typing import Callable, Dict, Mapping, Optional, Protocol

from core.config import get_provider_rules, get_webhook_settings
from core.errors import AuthenticationError, ConfigurationError

logger = logging.getLogger("webhook_security")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}

DEFAULT_TOLERANCE_SECONDS = 300


def is_webhook_signature_strict_mode() -> bool:
    """
    Determine whether webhook endpoints must fail-closed without secrets.

    WEBHOOK_SIGNATURE_REQUIRED=false is the only way to allow unsigned
    deliveries; anything else keeps strict mode on.
    """
    explicit = (os.getenv("WEBHOOK_SIGNATURE_REQUIRED") or "").strip().lower()
    if explicit in _FALSE_VALUES:
        return False
    return True


def get_webhook_signature_status(secret_env: str) -> Dict[str, bool]:
    """Return strict/secret state for health endpoints."""
    return {
        "strict_mode": is_webhook_signature_strict_mode(),
        "secret_configured": bool((os.getenv(secret_env) or "").strip()),
    }


def _lower_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {str(k).lower(): v for k, v in headers.items()}


def _normalize_signature(signature: Optional[str]) -> str:
    value = (signature or "").strip()
    if not value:
        return ""

    lower = value.lower()
    for prefix in ("sha256=", "hmac-sha256="):
        if lower.startswith(prefix):
            return value[len(prefix):].strip()
    return value


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _equals(expected: str, given: str) -> bool:
    """Constant-time compare; header values may carry non-ASCII characters."""
    return hmac.compare_digest(expected.encode("utf-8"), given.encode("utf-8"))


def verify_hmac_sha256(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """Verify HMAC-SHA256 signature against raw request body."""
    if not secret:
        return False

    normalized_signature = _normalize_signature(signature)
    if not normalized_signature:
        return False

    return _equals(_hmac_hex(secret, raw_body), normalized_signature)


class Verifier(Protocol):
    scheme: str

    def verify(self, raw_body: bytes, headers: Mapping[str, str], secret: str) -> bool: ...


class HmacSignatureVerifier:
    scheme = "hmac"

    def __init__(
        self,
        signature_header: str,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        now_fn: Callable[[], float] = time.time,
    ):
        self.signature_header = signature_header.lower()
        self.tolerance_seconds = tolerance_seconds
        self._now = now_fn

    def _parse_timestamped(self, value: str) -> Optional[Dict[str, str]]:
        parts = {}
        for item in value.split(","):
            key, sep, val = item.strip().partition("=")
            if sep:
                parts[key.strip()] = val.strip()
        if "t" in parts and "v1" in parts:
            return parts
        return None

    def verify(self, raw_body: bytes, headers: Mapping[str, str], secret: str) -> bool:
        value = _lower_headers(headers).get(self.signature_header, "")
        timestamped = self._parse_timestamped(value) if value else None
        if timestamped is None:
            return verify_hmac_sha256(raw_body, value, secret)

        try:
            sent_at = int(timestamped["t"])
        except ValueError:
            return False
        if abs(self._now() - sent_at) > self.tolerance_seconds:
            logger.warning("Signed webhook timestamp outside tolerance (%ss)", self.tolerance_seconds)
            return False
        expected = _hmac_hex(secret, timestamped["t"].encode("utf-8") + b"." + raw_body)
        return _equals(expected, timestamped["v1"])


class SlackSignatureVerifier:
    scheme = "slack"

    def __init__(
        self,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        now_fn: Callable[[], float] = time.time,
    ):
        self.tolerance_seconds = tolerance_seconds
        self._now = now_fn

    def verify(self, raw_body: bytes, headers: Mapping[str, str], secret: str) -> bool:
        lowered = _lower_headers(headers)
        timestamp = (lowered.get("x-slack-request-timestamp") or "").strip()
        signature = (lowered.get("x-slack-signature") or "").strip()
        if not timestamp or not signature:
            return False

        try:
            request_time = int(timestamp)
        except ValueError:
            return False

        time_diff = abs(int(self._now()) - request_time)
        if time_diff > self.tolerance_seconds:
            logger.warning(
                "Slack request timestamp too old: %ss (max %ss). Possible replay.",
                time_diff, self.tolerance_seconds,
            )
            return False

        basestring = b"v0:" + timestamp.encode("utf-8") + b":" + raw_body
        expected = "v0=" + _hmac_hex(secret, basestring)
        return _equals(expected, signature)


class BearerTokenVerifier:
    scheme = "bearer"

    def __init__(self, header: str = "Authorization"):
        self.header = header.lower()

    def verify(self, raw_body: bytes, headers: Mapping[str, str], secret: str) -> bool:
        auth = (_lower_headers(headers).get(self.header) or "").strip()
        if not auth.lower().startswith("bearer "):
            return False
        return _equals(secret, auth[7:].strip())


def build_verifier(rule: Dict[str, str], tolerance_seconds: Optional[int] = None) -> Verifier:
    tolerance = tolerance_seconds or int(
        get_webhook_settings().get("timestamp_tolerance_seconds", DEFAULT_TOLERANCE_SECONDS)
    )
    scheme = rule.get("scheme", "hmac")
    if scheme == "hmac":
        return HmacSignatureVerifier(rule["signature_header"], tolerance_seconds=tolerance)
    if scheme == "slack":
        return SlackSignatureVerifier(tolerance_seconds=tolerance)
    if scheme == "bearer":
        return BearerTokenVerifier(rule.get("signature_header", "Authorization"))
    raise ConfigurationError(f"Unknown verification scheme: {scheme}", setting="webhooks.providers")


def authenticate_webhook(
    *,
    provider: str,
    raw_body: bytes,
    headers: Mapping[str, str],
    verifier: Optional[Verifier] = None,
) -> None:
    """
    Enforce webhook authentication with deterministic fail-closed behavior.

    - If secret missing:
      - strict mode -> ConfigurationError (503)
      - non-strict  -> allow (development compatibility)
    - If secret configured:
      - missing/invalid signature or token -> AuthenticationError (401)
    """
    rule = get_provider_rules().get(provider)
    if rule is None:
        raise ConfigurationError(f"No webhook rules for provider {provider}", setting="webhooks.providers")

    secret_env = rule["secret_env"]
    secret = (os.getenv(secret_env) or "").strip()

    if not secret:
        if is_webhook_signature_strict_mode():
            raise ConfigurationError(
                f"{provider} webhook secret not configured ({secret_env})", setting=secret_env
            )
        logger.warning("%s webhook accepted without verification (%s unset)", provider, secret_env)
        return

    verifier = verifier or build_verifier(rule)
    if not verifier.verify(raw_body, headers, secret):
        raise AuthenticationError(f"Invalid {provider} webhook {verifier.scheme} credentials")
