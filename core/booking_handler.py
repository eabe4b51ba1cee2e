#!/usr/bin/env python3
"""
Booking Handler
===============

Applies meeting booking events (created / canceled / rescheduled) to the
MeetingRecord table. Records are upserts keyed by the provider event id, so
redelivered or out-of-order events never create duplicates.

On created (and rescheduled, when research is enabled) the invitee's company
is researched through the Agent Service. A failed or timed-out research call
leaves the booking written with enrichment_status="pending".
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from core.agent_service import AgentServiceClient, get_agent_service
from core.approval_engine import ApprovalEngine, get_approval_engine
from core.config import get_agent_role, get_booking_settings
from core.event_log import CanonicalEventType, Event, EventType, log_event
from core.notifications import NotificationKind, NotificationManager, get_notification_manager
from core.state_store import MEETINGS_NS, StateStore, get_state_store

logger = logging.getLogger("booking_handler")


class MeetingStatus:
    SCHEDULED = "scheduled"
    CANCELED = "canceled"
    RESCHEDULED = "rescheduled"


# Rescheduled meetings are still going to happen.
ACTIVE_STATUSES = {MeetingStatus.SCHEDULED, MeetingStatus.RESCHEDULED}


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def email_domain(email: str) -> str:
    return (email or "").rpartition("@")[2].lower()


class BookingHandler:

    def __init__(
        self,
        store: Optional[StateStore] = None,
        agent: Optional[AgentServiceClient] = None,
        notifier: Optional[NotificationManager] = None,
        approvals: Optional[ApprovalEngine] = None,
        research_enabled: Optional[bool] = None,
        pre_meeting_email_enabled: Optional[bool] = None,
    ):
        settings = get_booking_settings()
        self.store = store or get_state_store()
        self.agent = agent or get_agent_service()
        self.notifier = notifier or get_notification_manager()
        self._approvals = approvals
        self.research_enabled = (
            settings.get("research_enabled", True) if research_enabled is None else research_enabled
        )
        self.pre_meeting_email_enabled = (
            settings.get("pre_meeting_email_enabled", False)
            if pre_meeting_email_enabled is None else pre_meeting_email_enabled
        )

    @property
    def approvals(self) -> ApprovalEngine:
        if self._approvals is None:
            self._approvals = get_approval_engine()
        return self._approvals

    async def handle(self, event: Event) -> Dict[str, Any]:
        booking = event.payload
        event_id = booking["event_id"]

        if event.event_type == CanonicalEventType.BOOKING_CANCELED.value:
            record = self._upsert(event_id, booking, MeetingStatus.CANCELED)
            log_event(EventType.MEETING_CANCELED, {"event_id": event_id})
            logger.info("Meeting canceled: %s", record["invitee"].get("name"))
            return {"success": True, "action": "meeting_canceled", "event_id": event_id}

        if event.event_type == CanonicalEventType.BOOKING_RESCHEDULED.value:
            record = self._upsert(event_id, booking, MeetingStatus.RESCHEDULED)
            log_event(EventType.MEETING_RESCHEDULED, {"event_id": event_id, "start_time": record["start_time"]})
            if self.research_enabled:
                record = await self._enrich(record)
            logger.info("Meeting rescheduled: %s to %s", record["invitee"].get("name"), record["start_time"])
            return {
                "success": True,
                "action": "meeting_rescheduled",
                "event_id": event_id,
                "start_time": record["start_time"],
                "enrichment_status": record.get("enrichment_status"),
            }

        record = self._upsert(event_id, booking, MeetingStatus.SCHEDULED)
        if record["status"] != MeetingStatus.SCHEDULED:
            logger.info("Late booking.created for %s ignored (already %s)", event_id, record["status"])
            return {"success": True, "action": "stale_created", "event_id": event_id, "status": record["status"]}

        log_event(EventType.MEETING_BOOKED, {"event_id": event_id, "invitee": record["invitee"].get("email")})
        if self.research_enabled:
            record = await self._enrich(record)

        await self.notifier.notify(NotificationKind.MEETING_BOOKED, {
            "event_id": event_id,
            "account_name": email_domain(record["invitee"].get("email", "")) or "Unknown",
            "contact_name": record["invitee"].get("name", ""),
            "meeting_time": record["start_time"],
            "meeting_type": record.get("meeting_type", ""),
            "duration": record.get("duration", 0),
        })

        if self.pre_meeting_email_enabled:
            await self._stage_pre_meeting_email(record)

        logger.info("Meeting scheduled: %s at %s", record["invitee"].get("name"), record["start_time"])
        return {
            "success": True,
            "action": "meeting_scheduled",
            "event_id": event_id,
            "enrichment_status": record.get("enrichment_status"),
        }

    def _upsert(self, event_id: str, booking: Dict[str, Any], status: str) -> Dict[str, Any]:
        existing = self.store.get(MEETINGS_NS, event_id)
        incoming = {
            "event_id": event_id,
            "invitee": booking.get("invitee") or {},
            "start_time": booking.get("start_time"),
            "end_time": booking.get("end_time"),
            "meeting_type": booking.get("meeting_type", ""),
            "duration": booking.get("duration", 0),
            "timezone": booking.get("timezone"),
            "location": booking.get("location"),
        }

        if existing is None:
            record = {
                **incoming,
                "status": status,
                "enrichment_status": None,
                "research": None,
                "booked_at": _utc_now(),
                "updated_at": _utc_now(),
            }
        elif status == MeetingStatus.SCHEDULED and existing.get("status") != MeetingStatus.SCHEDULED:
            # A late "created" must not undo a cancel or reschedule already applied.
            record = {**existing}
            for key, value in incoming.items():
                if not record.get(key):
                    record[key] = value
            record["updated_at"] = _utc_now()
        else:
            record = {**existing, "status": status, "updated_at": _utc_now()}
            for key, value in incoming.items():
                if value or key not in record:
                    record[key] = value
            if status == MeetingStatus.CANCELED:
                record["start_time"] = existing.get("start_time") or incoming["start_time"]
                record["end_time"] = existing.get("end_time") or incoming["end_time"]

        self.store.put(MEETINGS_NS, event_id, record)
        return record

    async def _enrich(self, record: Dict[str, Any]) -> Dict[str, Any]:
        invitee = record.get("invitee") or {}
        domain = email_domain(invitee.get("email", ""))
        prompt = (
            "Pre-meeting research needed:\n\n"
            f"Contact: {invitee.get('name', '')}\n"
            f"Email: {invitee.get('email', '')}\n"
            f"Company Domain: {domain}\n"
            f"Meeting Time: {record.get('start_time')}\n"
            f"Meeting Type: {record.get('meeting_type', '')}\n\n"
            "Research:\n"
            "1. Company background and recent news\n"
            "2. Contact's professional profile and recent activity\n"
            "3. Potential pain points based on industry\n"
            "4. Relevant talking points\n"
            "5. Questions to ask during the meeting\n\n"
            "Provide concise, actionable intelligence for meeting preparation."
        )
        response = await self.agent.invoke(get_agent_role("research", "research_manager"), prompt)

        if response.ok:
            record["research"] = {"domain": domain, "result": response.result, "completed_at": _utc_now()}
            record["enrichment_status"] = "completed"
            log_event(EventType.ENRICHMENT_COMPLETED, {"event_id": record["event_id"], "domain": domain})
        else:
            record["enrichment_status"] = "pending"
            log_event(EventType.ENRICHMENT_FAILED, {
                "event_id": record["event_id"], "domain": domain, "status": response.status,
            })
            logger.warning("Pre-meeting research for %s left pending: %s", record["event_id"], response.message)

        self.store.put(MEETINGS_NS, record["event_id"], record)
        return record

    async def _stage_pre_meeting_email(self, record: Dict[str, Any]) -> None:
        invitee = record.get("invitee") or {}
        start = _parse_time(record.get("start_time"))
        when = start.strftime("%Y-%m-%d %H:%M %Z") if start else record.get("start_time")
        research = (record.get("research") or {}).get("result")
        research_text = f"Based on my research:\n{research}\n\n" if research else ""
        body = (
            f"Hi {invitee.get('name', '')},\n\n"
            f"I'm looking forward to our {record.get('meeting_type', 'meeting')} on {when}.\n\n"
            "To make the most of our time together, I've done some research on "
            f"{email_domain(invitee.get('email', ''))} and have a few thoughts I'd like to discuss.\n\n"
            f"{research_text}"
            "See you soon!\n\nBest regards"
        )
        subject = f"Looking forward to our meeting on {start.date().isoformat() if start else when}"

        outreach_id = f"premeeting_{record['event_id'].rstrip('/').rpartition('/')[2]}"
        await self.approvals.stage(outreach_id, {
            "channel": "email",
            "to": invitee.get("email", ""),
            "subject": subject,
            "body": body,
            "preview": body,
            "account_name": email_domain(invitee.get("email", "")),
            "contact_name": invitee.get("name", ""),
            "event_id": record["event_id"],
        })

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_meeting(self, event_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get(MEETINGS_NS, event_id)

    def upcoming_meetings(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or datetime.now(timezone.utc)
        upcoming = []
        for meeting in self.store.list_documents(MEETINGS_NS):
            start = _parse_time(meeting.get("start_time"))
            if meeting.get("status") in ACTIVE_STATUSES and start and start > now:
                upcoming.append(meeting)
        return sorted(upcoming, key=lambda m: _parse_time(m["start_time"]))

    def stats(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.now(timezone.utc)
        meetings = self.store.list_documents(MEETINGS_NS)
        next_24h = now + timedelta(hours=24)

        def start_of(m):
            return _parse_time(m.get("start_time"))

        active = [m for m in meetings if m.get("status") in ACTIVE_STATUSES and start_of(m)]
        return {
            "scheduled": sum(1 for m in active if start_of(m) > now),
            "completed": sum(1 for m in active if start_of(m) < now),
            "canceled": sum(1 for m in meetings if m.get("status") == MeetingStatus.CANCELED),
            "today": sum(1 for m in active if start_of(m).date() == now.date()),
            "upcoming_next_24h": sum(1 for m in active if now < start_of(m) < next_24h),
            "total": len(meetings),
        }
