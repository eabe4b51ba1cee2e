"""
Event logging module for webhook ingestion.

Two concerns live here:
- the canonical Event that every provider payload is normalized into, and
  the idempotency log keyed by (provider, external_id) that stores each
  Event together with its processing outcome;
- the append-only JSONL audit trail of domain events.
"""

import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from core.state_store import StateStore, get_state_store

logger = logging.getLogger("event_log")


class EventType(Enum):
    """Classification of audit trail events."""
    WEBHOOK_RECEIVED = "webhook_received"
    WEBHOOK_DUPLICATE = "webhook_duplicate"
    WEBHOOK_FAILED = "webhook_failed"
    MEETING_BOOKED = "meeting_booked"
    MEETING_CANCELED = "meeting_canceled"
    MEETING_RESCHEDULED = "meeting_rescheduled"
    ENRICHMENT_COMPLETED = "enrichment_completed"
    ENRICHMENT_FAILED = "enrichment_failed"
    TRANSCRIPT_ANALYZED = "transcript_analyzed"
    REPLY_CLASSIFIED = "reply_classified"
    OUTREACH_STAGED = "outreach_staged"
    OUTREACH_APPROVED = "outreach_approved"
    OUTREACH_REJECTED = "outreach_rejected"
    OUTREACH_SENT = "outreach_sent"
    ADMISSION_DENIED = "admission_denied"
    NOTIFICATION_SENT = "notification_sent"
    SYSTEM_ERROR = "system_error"


class CanonicalEventType(str, Enum):
    """Provider-agnostic event types the router dispatches on."""
    BOOKING_CREATED = "booking.created"
    BOOKING_CANCELED = "booking.canceled"
    BOOKING_RESCHEDULED = "booking.rescheduled"
    TRANSCRIPT_DELIVERED = "transcript.delivered"
    REPLY_RECEIVED = "reply.received"
    INTERACTION_ACTION = "interaction.action"


class OutcomeStatus(Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"


def _hive_dir() -> Path:
    return Path(os.getenv("HIVE_DIR") or ".hive-mind")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Event:
    """Provider-agnostic webhook occurrence."""
    provider: str
    event_type: str
    external_id: str
    occurred_at: str
    payload: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def dedupe_key(self) -> str:
        return f"{self.provider}:{self.external_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "event_type": self.event_type,
            "external_id": self.external_id,
            "occurred_at": self.occurred_at,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        return cls(
            provider=data["provider"],
            event_type=data["event_type"],
            external_id=data["external_id"],
            occurred_at=data.get("occurred_at", ""),
            payload=data.get("payload") or {},
        )


class EventLog:
    """Idempotency store: one record per (provider, external_id), never deleted."""

    EVENTS_NS = "webhook_events"

    def __init__(self, store: Optional[StateStore] = None):
        self.store = store or get_state_store()

    def get(self, provider: str, external_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get(self.EVENTS_NS, f"{provider}:{external_id}")

    def claim(self, event: Event) -> Tuple[bool, Dict[str, Any]]:
        """
        Insert the event if it has never been seen.

        Returns:
            (created, record) where record is the stored entry
        """
        record = {
            "event": event.to_dict(),
            "status": OutcomeStatus.RECEIVED.value,
            "result": None,
            "error": None,
            "attempts": 0,
            "received_at": _utc_now(),
            "updated_at": _utc_now(),
        }
        created = self.store.put_if_absent(self.EVENTS_NS, event.dedupe_key, record)
        if created:
            return True, record
        logger.debug("Event %s already recorded", event.dedupe_key)
        return False, self.store.get(self.EVENTS_NS, event.dedupe_key) or record

    def record_outcome(
        self,
        event: Event,
        status: OutcomeStatus,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        record = self.store.get(self.EVENTS_NS, event.dedupe_key) or {
            "event": event.to_dict(),
            "attempts": 0,
            "received_at": _utc_now(),
        }
        record.update({
            "status": status.value,
            "result": result,
            "error": error,
            "attempts": int(record.get("attempts", 0)) + 1,
            "updated_at": _utc_now(),
        })
        self.store.put(self.EVENTS_NS, event.dedupe_key, record)
        return record

    def recent(self, limit: int = 50, provider: Optional[str] = None) -> List[Dict[str, Any]]:
        records = self.store.list_documents(self.EVENTS_NS)
        if provider:
            records = [r for r in records if r.get("event", {}).get("provider") == provider]
        records.sort(key=lambda r: r.get("received_at", ""), reverse=True)
        return records[:limit]


def log_event(
    event_type: EventType,
    payload: dict[str, Any],
    metadata: Optional[dict[str, Any]] = None
) -> str:
    """
    Log an event to the JSONL audit trail.

    Args:
        event_type: The type of event being logged
        payload: Event-specific data
        metadata: Optional additional context

    Returns:
        The generated event_id
    """
    event_id = str(uuid.uuid4())

    entry = {
        "timestamp": _utc_now(),
        "event_id": event_id,
        "event_type": event_type.value,
        "payload": payload
    }

    if metadata:
        entry["metadata"] = metadata

    events_file = _hive_dir() / "events.jsonl"
    events_file.parent.mkdir(parents=True, exist_ok=True)

    with open(events_file, "a", encoding="utf-8") as f:
        f.write(json.dumps(entry, default=str) + "\n")

    return event_id
