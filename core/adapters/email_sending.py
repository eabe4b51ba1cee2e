#!/usr/bin/env python3
"""
Outbound email delivery backends.

The send pipeline only ever talks to EmailSendingAdapter, so the backend can
be swapped (Gmail API today, a mock in tests and local runs) without touching
admission or approval logic.

Tracking helpers (click redirects, open pixel) live here too because they
rewrite the HTML body right before it reaches the backend.

Adapters never retry. A failed call comes back as SendResult(success=False)
and the caller decides what to do with it.
"""

import base64
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

GMAIL_SEND_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"

_URL_RE = re.compile(r"https?://[^\s\"'<>]+")


class EmailBackend(Enum):
    """Supported email sending backends."""
    GMAIL = "gmail"
    MOCK = "mock"


class DeliveryStatus(Enum):
    """Email delivery status."""
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


@dataclass
class SendResult:
    """Result of an email send operation."""
    success: bool
    message_id: Optional[str] = None
    thread_id: Optional[str] = None
    backend: str = ""
    status: DeliveryStatus = DeliveryStatus.QUEUED
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    sent_at: Optional[str] = None

    def __post_init__(self):
        if self.success and not self.sent_at:
            self.sent_at = datetime.now(timezone.utc).isoformat()


# ── Tracking ─────────────────────────────────────────────────────────

def add_open_pixel(body: str, outreach_id: str, base_url: str) -> str:
    pixel = f'<img src="{base_url.rstrip("/")}/open/{outreach_id}" width="1" height="1" />'
    return f"{body}\n\n{pixel}"


def add_click_tracking(body: str, outreach_id: str, base_url: str) -> str:
    """Rewrite every http(s) URL in the body through the click tracker."""
    prefix = f"{base_url.rstrip('/')}/click/{outreach_id}?url="
    return _URL_RE.sub(lambda m: prefix + quote(m.group(0), safe=""), body)


def apply_tracking(body: str, outreach_id: str, tracking: Dict[str, Any]) -> str:
    """
    Apply click rewriting and the open pixel according to channel tracking settings.

    Clicks are rewritten first so the pixel URL itself is never wrapped.
    """
    if not outreach_id or not tracking:
        return body
    base_url = tracking.get("base_url") or ""
    if not base_url:
        return body
    if tracking.get("clicks"):
        body = add_click_tracking(body, outreach_id, base_url)
    if tracking.get("opens"):
        body = add_open_pixel(body, outreach_id, base_url)
    return body


class EmailSendingAdapter(ABC):
    """
    Abstract interface for email sending backends.

    Implementations deliver exactly one message per send_email() call and
    report the provider's message and thread ids so inbound replies can be
    correlated with the original send.
    """

    backend: EmailBackend

    @abstractmethod
    async def send_email(
        self,
        to: str,
        subject: str,
        body_html: str,
        from_account: Optional[str] = None,
        reply_to: Optional[str] = None,
        cc: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SendResult:
        """Send a single email."""
        ...

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Check backend connectivity and return status."""
        ...


class GmailEmailAdapter(EmailSendingAdapter):
    """Sends through the Gmail API with a pre-authorized access token."""

    backend = EmailBackend.GMAIL

    def __init__(
        self,
        access_token: Optional[str] = None,
        sender: Optional[str] = None,
        timeout_seconds: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token or os.getenv("GMAIL_ACCESS_TOKEN", "")
        self.sender = sender or os.getenv("GMAIL_SENDER", "")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _build_raw(self, to, subject, body_html, from_account, reply_to, cc) -> str:
        message = EmailMessage()
        message["To"] = to
        message["Subject"] = subject
        if from_account or self.sender:
            message["From"] = from_account or self.sender
        if reply_to:
            message["Reply-To"] = reply_to
        if cc:
            message["Cc"] = ", ".join(cc)
        message.set_content(body_html, subtype="html")
        return base64.urlsafe_b64encode(message.as_bytes()).decode("ascii")

    async def send_email(self, to, subject, body_html, from_account=None,
                         reply_to=None, cc=None, metadata=None) -> SendResult:
        if not self.access_token:
            return SendResult(
                success=False, backend=self.backend.value, status=DeliveryStatus.FAILED,
                error="GMAIL_ACCESS_TOKEN not configured",
            )

        payload: Dict[str, Any] = {"raw": self._build_raw(to, subject, body_html, from_account, reply_to, cc)}
        if metadata and metadata.get("thread_id"):
            payload["threadId"] = metadata["thread_id"]

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(
                    GMAIL_SEND_URL,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.access_token}"},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error("Gmail send to %s failed: HTTP %s", to, e.response.status_code)
            return SendResult(
                success=False, backend=self.backend.value, status=DeliveryStatus.FAILED,
                error=f"Gmail API returned HTTP {e.response.status_code}",
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Gmail send to %s failed: %s", to, e)
            return SendResult(success=False, backend=self.backend.value, status=DeliveryStatus.FAILED, error=str(e))

        return SendResult(
            success=True,
            message_id=data.get("id"),
            thread_id=data.get("threadId"),
            backend=self.backend.value,
            status=DeliveryStatus.SENT,
            metadata={"label_ids": data.get("labelIds", [])},
        )

    async def health_check(self) -> Dict[str, Any]:
        return {
            "status": "healthy" if self.access_token else "not_configured",
            "backend": self.backend.value,
        }


class MockEmailAdapter(EmailSendingAdapter):
    """Mock adapter for testing. Simulates sends without network calls."""

    backend = EmailBackend.MOCK

    def __init__(self, fail_with: Optional[str] = None):
        self.sent_emails: List[Dict[str, Any]] = []
        self.fail_with = fail_with

    async def send_email(self, to, subject, body_html, from_account=None,
                         reply_to=None, cc=None, metadata=None) -> SendResult:
        if self.fail_with:
            return SendResult(success=False, backend="mock", status=DeliveryStatus.FAILED, error=self.fail_with)
        number = len(self.sent_emails) + 1
        self.sent_emails.append({
            "to": to, "subject": subject, "body_html": body_html,
            "from": from_account or "mock@test.com",
            "sent_at": datetime.now(timezone.utc).isoformat(),
        })
        thread_id = (metadata or {}).get("thread_id") or f"mock_thread_{number}"
        return SendResult(
            success=True,
            message_id=f"mock_{number}",
            thread_id=thread_id,
            backend="mock",
            status=DeliveryStatus.SENT,
        )

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy", "backend": "mock", "sent": len(self.sent_emails)}


# ── Factory ──────────────────────────────────────────────────────────

def get_email_adapter(backend: Optional[str] = None) -> EmailSendingAdapter:
    """
    Pick the delivery backend: explicit argument, then EMAIL_BACKEND, then
    gmail when GMAIL_ACCESS_TOKEN is set. Anything else falls back to mock.
    """
    backend = (backend or os.getenv("EMAIL_BACKEND", "")).lower()

    if not backend:
        backend = "gmail" if os.getenv("GMAIL_ACCESS_TOKEN") else "mock"

    if backend == "gmail":
        return GmailEmailAdapter()
    if backend != "mock":
        logger.warning("EMAIL_BACKEND=%s is not supported; sending through the mock adapter", backend)
    return MockEmailAdapter()
