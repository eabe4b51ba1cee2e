#!/usr/bin/env python3
"""
Approval Engine - Human-in-the-Loop Gate for Outbound Messages
==============================================================

Every generated outreach item is staged here before it can be sent. A
reviewer approves or rejects it from the Slack approval channel; the send
pipeline refuses anything that is not approved.

Transitions are one-way (pending -> approved | rejected). A second decision
on an already-decided item raises ApprovalConflictError instead of
overwriting the first one.
"""

import logging
import threading
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from core.errors import ApprovalConflictError, ApprovalNotFoundError, DownstreamFailure
from core.event_log import EventType, log_event
from core.notifications import NotificationKind, NotificationManager, get_notification_manager
from core.state_store import APPROVALS_NS, StateStore, get_state_store

logger = logging.getLogger("approval_engine")

LOCK_ATTEMPTS = 50
LOCK_RETRY_SECONDS = 0.05


class ApprovalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class ApprovalRecord:
    outreach_id: str
    status: str
    created_at: str
    payload: Dict[str, Any] = field(default_factory=dict)
    decided_by: Optional[str] = None
    decided_at: Optional[str] = None
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalRecord":
        return cls(
            outreach_id=data["outreach_id"],
            status=data["status"],
            created_at=data.get("created_at", ""),
            payload=data.get("payload") or {},
            decided_by=data.get("decided_by"),
            decided_at=data.get("decided_at"),
            notes=data.get("notes"),
        )


class ApprovalEngine:

    def __init__(
        self,
        store: Optional[StateStore] = None,
        notifier: Optional[NotificationManager] = None,
    ):
        self.store = store or get_state_store()
        self._notifier = notifier
        self._lock = threading.Lock()

    @property
    def notifier(self) -> NotificationManager:
        if self._notifier is None:
            self._notifier = get_notification_manager()
        return self._notifier

    async def stage(self, outreach_id: str, payload: Dict[str, Any], notify: bool = True) -> ApprovalRecord:
        """
        Stage an outreach item for review.

        Staging the same outreach_id twice returns the existing record and
        does not notify again.
        """
        record = ApprovalRecord(
            outreach_id=outreach_id,
            status=ApprovalStatus.PENDING.value,
            created_at=datetime.now(timezone.utc).isoformat(),
            payload=payload,
        )
        if not self.store.put_if_absent(APPROVALS_NS, outreach_id, record.to_dict()):
            logger.info("Outreach %s already staged", outreach_id)
            return self.get(outreach_id)

        log_event(EventType.OUTREACH_STAGED, {"outreach_id": outreach_id})
        if notify:
            await self.notifier.notify(NotificationKind.APPROVAL_REQUESTED, {**payload, "outreach_id": outreach_id})
        return record

    def get(self, outreach_id: str) -> Optional[ApprovalRecord]:
        data = self.store.get(APPROVALS_NS, outreach_id)
        return ApprovalRecord.from_dict(data) if data else None

    def pending(self) -> List[ApprovalRecord]:
        records = [ApprovalRecord.from_dict(d) for d in self.store.list_documents(APPROVALS_NS)]
        return sorted(
            (r for r in records if r.status == ApprovalStatus.PENDING.value),
            key=lambda r: r.created_at,
        )

    def is_approved(self, outreach_id: str) -> bool:
        record = self.get(outreach_id)
        return record is not None and record.status == ApprovalStatus.APPROVED.value

    def _acquire(self, outreach_id: str) -> str:
        lock_name = f"approval:{outreach_id}"
        for _ in range(LOCK_ATTEMPTS):
            token = self.store.acquire_lock(lock_name, ttl_seconds=30)
            if token:
                return token
            time.sleep(LOCK_RETRY_SECONDS)
        raise DownstreamFailure(f"Could not lock approval {outreach_id}", service="state_store")

    def _decide(self, outreach_id: str, status: ApprovalStatus, decided_by: str, notes: str) -> ApprovalRecord:
        with self._lock:
            token = self._acquire(outreach_id)
            try:
                record = self.get(outreach_id)
                if record is None:
                    raise ApprovalNotFoundError(f"Outreach {outreach_id} not found")
                if record.status != ApprovalStatus.PENDING.value:
                    raise ApprovalConflictError(outreach_id, record.status)

                record.status = status.value
                record.decided_by = decided_by
                record.decided_at = datetime.now(timezone.utc).isoformat()
                record.notes = notes or None
                self.store.put(APPROVALS_NS, outreach_id, record.to_dict())
            finally:
                self.store.release_lock(f"approval:{outreach_id}", token)

        event_type = EventType.OUTREACH_APPROVED if status == ApprovalStatus.APPROVED else EventType.OUTREACH_REJECTED
        log_event(event_type, {"outreach_id": outreach_id, "decided_by": decided_by})
        logger.info("Outreach %s %s by %s", outreach_id, status.value, decided_by)
        return record

    def approve(self, outreach_id: str, decided_by: str, notes: str = "") -> ApprovalRecord:
        """Approve a pending outreach item."""
        return self._decide(outreach_id, ApprovalStatus.APPROVED, decided_by, notes)

    def reject(self, outreach_id: str, decided_by: str, notes: str = "") -> ApprovalRecord:
        """Reject a pending outreach item."""
        return self._decide(outreach_id, ApprovalStatus.REJECTED, decided_by, notes)


_engine_instance: Optional[ApprovalEngine] = None
_engine_lock = threading.Lock()


def get_approval_engine() -> ApprovalEngine:
    """Get thread-safe singleton instance of ApprovalEngine."""
    global _engine_instance
    if _engine_instance is None:
        with _engine_lock:
            if _engine_instance is None:
                _engine_instance = ApprovalEngine()
    return _engine_instance
