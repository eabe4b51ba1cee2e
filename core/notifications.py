#!/usr/bin/env python3
"""
Notification Dispatcher
=======================

Sends Slack Block Kit notifications for the revenue pipeline:

- approval_requested: staged outreach with approve / edit / reject buttons
- positive_response:  an inbound reply was classified positive
- meeting_booked:     a booking webhook created a meeting
- daily_digest:       a fresh snapshot of today's activity

Each kind can be switched off in config/outreach_rules.yaml. Messages go to
SLACK_WEBHOOK_URL with retry and backoff; with no webhook configured they are
only logged. Every dispatched notification is recorded in the state store.
"""

import asyncio
import logging
import os
import uuid
from collections import Counter
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import aiohttp

from core.config import get_notification_settings
from core.pacing import Clock, SystemClock
from core.state_store import (
    APPROVALS_NS,
    CLASSIFICATIONS_NS,
    MEETINGS_NS,
    NOTIFICATIONS_NS,
    SENT_OUTREACH_NS,
    StateStore,
    get_state_store,
)

logger = logging.getLogger("notifications")

SLACK_RETRY_DELAYS = [1.0, 2.0, 4.0]
SLACK_MAX_RETRIES = 3


class NotificationKind(str, Enum):
    APPROVAL_REQUESTED = "approval_requested"
    POSITIVE_RESPONSE = "positive_response"
    MEETING_BOOKED = "meeting_booked"
    DAILY_DIGEST = "daily_digest"


def truncate(text: str, length: int) -> str:
    text = text or ""
    if len(text) <= length:
        return text
    return text[:length] + "..."


def _field(label: str, value: Any) -> Dict[str, str]:
    return {"type": "mrkdwn", "text": f"*{label}:*\n{value}"}


def _section(text: str) -> Dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def _header(text: str) -> Dict[str, Any]:
    return {"type": "header", "text": {"type": "plain_text", "text": text}}


def _button(label: str, action_id: str, value: str, style: Optional[str] = None) -> Dict[str, Any]:
    button = {
        "type": "button",
        "text": {"type": "plain_text", "text": label},
        "action_id": action_id,
        "value": value,
    }
    if style:
        button["style"] = style
    return button


def build_approval_blocks(data: Dict[str, Any], preview_chars: int = 200) -> List[Dict[str, Any]]:
    outreach_id = data["outreach_id"]
    icp_score = data.get("icp_score")
    return [
        _header(f"New Outreach: {data.get('account_name', 'Unknown account')}"),
        {
            "type": "section",
            "fields": [
                _field("Contact", data.get("contact_name", "Unknown")),
                _field("ICP Score", f"{icp_score}/100" if icp_score else "N/A"),
            ],
        },
        _section(f"*Subject:*\n{data.get('subject', '')}"),
        _section(f"*Preview:*\n{truncate(data.get('preview', ''), preview_chars)}"),
        {"type": "divider"},
        {
            "type": "actions",
            "elements": [
                _button("Approve", f"approve_{outreach_id}", outreach_id, "primary"),
                _button("Edit", f"edit_{outreach_id}", outreach_id),
                _button("Reject", f"reject_{outreach_id}", outreach_id, "danger"),
            ],
        },
    ]


def build_positive_response_blocks(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    blocks = [
        _header("Positive Response Received!"),
        {
            "type": "section",
            "fields": [
                _field("From", data.get("from", "")),
                _field("Account", data.get("account_name", "Unknown")),
            ],
        },
        _section(f"*Subject:*\n{data.get('subject', '')}"),
        _section(f"*Message:*\n{truncate(data.get('preview', ''), 300)}"),
    ]
    signals = data.get("signals") or []
    if signals:
        blocks.append(_section("*Key Signals:*\n" + "\n".join(f"• {s}" for s in signals)))
    return blocks


def build_meeting_booked_blocks(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        _header("Meeting Booked!"),
        {
            "type": "section",
            "fields": [
                _field("Account", data.get("account_name", "Unknown")),
                _field("Contact", data.get("contact_name", "")),
                _field("Time", data.get("meeting_time", "")),
                _field("Duration", f"{data.get('duration', 0)} minutes"),
            ],
        },
        _section(f"*Meeting Type:*\n{data.get('meeting_type', '')}"),
    ]


def build_daily_digest_blocks(stats: Dict[str, Any]) -> List[Dict[str, Any]]:
    day = date.fromisoformat(stats["date"])
    blocks = [
        _header("Daily Revenue Engine Digest"),
        _section(f"*{day.strftime('%A, %B')} {day.day}, {day.year}*"),
        {"type": "divider"},
        {
            "type": "section",
            "fields": [
                _field("Outreach Sent", stats["outreach_sent"]),
                _field("Responses", stats["responses"]),
                _field("Response Rate", f"{stats['response_rate']}%"),
                _field("Meetings Booked", stats["meetings_booked"]),
            ],
        },
        {"type": "divider"},
        _section("*Top Performers:*"),
    ]
    if stats.get("top_accounts"):
        blocks.append(_section("\n".join(
            f"• {acc['name']} - {acc['metric']}" for acc in stats["top_accounts"]
        )))
    blocks.extend([
        {"type": "divider"},
        _section(f"*Pending Approvals:*\n{stats['pending_approvals']} messages awaiting review"),
    ])
    return blocks


def _summary(kind: NotificationKind, data: Dict[str, Any]) -> str:
    if kind == NotificationKind.APPROVAL_REQUESTED:
        return f"New outreach staged for {data.get('account_name', 'Unknown account')}"
    if kind == NotificationKind.POSITIVE_RESPONSE:
        return f"Positive response from {data.get('from', '')}"
    if kind == NotificationKind.MEETING_BOOKED:
        return f"Meeting booked with {data.get('contact_name', '')} at {data.get('account_name', 'Unknown')}"
    return "Daily Revenue Engine Digest"


def _account_from_email(email: str) -> str:
    domain = (email or "").rpartition("@")[2].rstrip(">").lower()
    return domain or "Unknown"


class NotificationManager:
    """
    Dispatches fixed-template notifications to the approval channel.
    """

    def __init__(self, store: Optional[StateStore] = None, clock: Optional[Clock] = None):
        self.store = store or get_state_store()
        self.clock = clock or SystemClock()
        self.slack_webhook = os.getenv("SLACK_WEBHOOK_URL")
        self._validate_slack_webhook()
        settings = get_notification_settings()
        self.approval_channel = settings.get("approval_channel", "#revenue-approvals")
        self.preview_chars = int(settings.get("preview_chars", 200))
        self.enabled = {k.value: True for k in NotificationKind}
        self.enabled.update(settings.get("enabled") or {})
        self.notification_stats = {"slack_sent": 0, "logged_only": 0, "skipped": 0, "failures": 0}
        self._session: Optional[aiohttp.ClientSession] = None

    def _validate_slack_webhook(self):
        if self.slack_webhook and not self.slack_webhook.startswith("https://hooks.slack.com/"):
            logger.warning("Slack webhook URL may be invalid (expected hooks.slack.com)")

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create a reusable aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=30, connect=10)
            )
        return self._session

    async def close(self):
        """Close the HTTP session. Call on shutdown."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _send_slack_with_retry(self, payload: Dict[str, Any]) -> bool:
        """Send Slack notification with retry logic and exponential backoff."""
        if not self.slack_webhook:
            return False

        for attempt in range(SLACK_MAX_RETRIES):
            try:
                session = await self._get_session()
                async with session.post(self.slack_webhook, json=payload) as resp:
                    if resp.status == 200:
                        self.notification_stats["slack_sent"] += 1
                        return True
                    elif resp.status == 429:
                        retry_after = float(resp.headers.get("Retry-After", SLACK_RETRY_DELAYS[attempt]))
                        logger.warning("Slack rate limited, retry after %ss", retry_after)
                        await asyncio.sleep(retry_after)
                    else:
                        error_text = await resp.text()
                        logger.warning(
                            "Slack notification failed (attempt %d): %s - %s",
                            attempt + 1, resp.status, error_text,
                        )
                        if attempt < SLACK_MAX_RETRIES - 1:
                            await asyncio.sleep(SLACK_RETRY_DELAYS[attempt])
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning("Slack notification error (attempt %d): %s", attempt + 1, e)
                if attempt < SLACK_MAX_RETRIES - 1:
                    await asyncio.sleep(SLACK_RETRY_DELAYS[attempt])

        self.notification_stats["failures"] += 1
        logger.error("Slack notification failed after %d retries", SLACK_MAX_RETRIES)
        return False

    def is_enabled(self, kind: NotificationKind) -> bool:
        return bool(self.enabled.get(NotificationKind(kind).value, True))

    def build_message(self, kind: NotificationKind, data: Dict[str, Any]) -> Dict[str, Any]:
        kind = NotificationKind(kind)
        if kind == NotificationKind.APPROVAL_REQUESTED:
            blocks = build_approval_blocks(data, self.preview_chars)
        elif kind == NotificationKind.POSITIVE_RESPONSE:
            blocks = build_positive_response_blocks(data)
        elif kind == NotificationKind.MEETING_BOOKED:
            blocks = build_meeting_booked_blocks(data)
        else:
            blocks = build_daily_digest_blocks(data)
        return {
            "channel": data.get("channel") or self.approval_channel,
            "text": _summary(kind, data),
            "blocks": blocks,
        }

    async def notify(self, kind: NotificationKind, data: Dict[str, Any]) -> bool:
        """
        Render and deliver one notification.

        Returns:
            True if Slack accepted the message
        """
        kind = NotificationKind(kind)
        if not self.is_enabled(kind):
            self.notification_stats["skipped"] += 1
            logger.debug("Notification %s disabled - skipping", kind.value)
            return False

        message = self.build_message(kind, data)
        if self.slack_webhook:
            delivered = await self._send_slack_with_retry(message)
        else:
            logger.info("[Slack] Would send to %s: %s", message["channel"], message["text"])
            self.notification_stats["logged_only"] += 1
            delivered = False

        now = self.clock.now()
        self.store.put(NOTIFICATIONS_NS, uuid.uuid4().hex, {
            "kind": kind.value,
            "date": now.astimezone(self.clock.tz).date().isoformat(),
            "channel": message["channel"],
            "summary": message["text"],
            "delivered": delivered,
            "reference": data.get("outreach_id") or data.get("event_id") or data.get("message_id"),
            "created_at": now.astimezone(timezone.utc).isoformat(),
        })
        return delivered

    def history(self, kind: Optional[NotificationKind] = None, day: Optional[date] = None) -> List[Dict[str, Any]]:
        records = self.store.list_documents(NOTIFICATIONS_NS)
        if kind is not None:
            records = [r for r in records if r.get("kind") == NotificationKind(kind).value]
        if day is not None:
            records = [r for r in records if r.get("date") == day.isoformat()]
        return sorted(records, key=lambda r: r.get("created_at", ""))

    # ------------------------------------------------------------------
    # Daily digest
    # ------------------------------------------------------------------

    def _local_day(self, iso_value: Optional[str]) -> Optional[date]:
        if not iso_value:
            return None
        try:
            parsed = datetime.fromisoformat(str(iso_value).replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(self.clock.tz).date()

    def gather_daily_stats(self, day: Optional[date] = None) -> Dict[str, Any]:
        """Snapshot of the day's activity, recomputed from the store on every call."""
        day = day or self.clock.now().astimezone(self.clock.tz).date()

        sent = [r for r in self.store.list_documents(SENT_OUTREACH_NS) if self._local_day(r.get("sent_at")) == day]
        replies = [
            r for r in self.store.list_documents(CLASSIFICATIONS_NS)
            if self._local_day(r.get("received_at")) == day
        ]
        meetings = [
            m for m in self.store.list_documents(MEETINGS_NS)
            if self._local_day(m.get("booked_at")) == day
        ]
        pending = [a for a in self.store.list_documents(APPROVALS_NS) if a.get("status") == "pending"]

        accounts: Counter = Counter()
        for reply in replies:
            if reply.get("classification") == "positive":
                accounts[_account_from_email(reply.get("from", ""))] += 1
        for meeting in meetings:
            accounts[_account_from_email(meeting.get("invitee", {}).get("email", ""))] += 1

        response_rate = round(len(replies) / len(sent) * 100) if sent else 0
        return {
            "date": day.isoformat(),
            "outreach_sent": len(sent),
            "responses": len(replies),
            "response_rate": response_rate,
            "meetings_booked": len(meetings),
            "pending_approvals": len(pending),
            "top_accounts": [
                {"name": name, "metric": f"{count} positive signals"}
                for name, count in accounts.most_common(3)
            ],
        }

    async def send_daily_digest(self, day: Optional[date] = None) -> Dict[str, Any]:
        stats = self.gather_daily_stats(day)
        await self.notify(NotificationKind.DAILY_DIGEST, stats)
        return stats

    def get_stats(self) -> Dict[str, int]:
        return self.notification_stats.copy()

    def reset_stats(self) -> None:
        self.notification_stats = {"slack_sent": 0, "logged_only": 0, "skipped": 0, "failures": 0}


_notification_manager: Optional[NotificationManager] = None


def get_notification_manager() -> NotificationManager:
    """Get singleton instance of NotificationManager."""
    global _notification_manager
    if _notification_manager is None:
        _notification_manager = NotificationManager()
    return _notification_manager


async def shutdown_notification_manager() -> None:
    """Gracefully shutdown the notification manager."""
    global _notification_manager
    if _notification_manager is not None:
        try:
            await _notification_manager.close()
        finally:
            _notification_manager = None
