"""
Inbound reply handler.

Classifies a reply through the response classifier, stores one
ClassificationRecord per message id and raises a PositiveResponse
notification for positive replies. The original outbound send on the same
thread is looked up and passed to the classifier as context.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.agent_service import AgentServiceClient, get_agent_service
from core.config import get_agent_role
from core.event_log import Event, EventType, log_event
from core.notifications import NotificationKind, NotificationManager, get_notification_manager
from core.state_store import CLASSIFICATIONS_NS, SENT_OUTREACH_NS, StateStore, get_state_store

logger = logging.getLogger("reply_handler")

CLASSIFICATIONS = ("positive", "neutral", "objection", "not_interested", "out_of_office")


def normalize_classification(value: Any) -> str:
    label = str(value or "").strip().lower().replace(" ", "_").replace("-", "_")
    return label if label in CLASSIFICATIONS else "neutral"


class ReplyHandler:

    def __init__(
        self,
        store: Optional[StateStore] = None,
        agent: Optional[AgentServiceClient] = None,
        notifier: Optional[NotificationManager] = None,
    ):
        self.store = store or get_state_store()
        self.agent = agent or get_agent_service()
        self.notifier = notifier or get_notification_manager()

    def find_original(self, thread_id: str) -> Optional[Dict[str, Any]]:
        if not thread_id:
            return None
        matches = [s for s in self.store.list_documents(SENT_OUTREACH_NS) if s.get("thread_id") == thread_id]
        if not matches:
            return None
        return min(matches, key=lambda s: s.get("sent_at", ""))

    def _prompt(self, reply: Dict[str, Any], original: Optional[Dict[str, Any]]) -> str:
        context = (
            f"Subject: {original.get('subject', '')}\nSent: {original.get('sent_at', '')}"
            if original else "Unknown"
        )
        return (
            "Classify this email response:\n\n"
            f"From: {reply.get('from', '')}\n"
            f"Subject: {reply.get('subject', '')}\n"
            f"Body: {reply.get('body', '')}\n\n"
            f"Original outreach context:\n{context}\n\n"
            "Classify as one of: positive, neutral, objection, not_interested, out_of_office.\n"
            "Also extract key signals (budget, timeline, decision maker involvement), "
            "objections if any and the recommended next action.\n"
            'Return JSON: {"classification": ..., "signals": [...], "objections": [...], "next_action": ...}'
        )

    async def _notify_positive(self, record: Dict[str, Any], reply: Dict[str, Any],
                               original: Optional[Dict[str, Any]]) -> None:
        sender = record.get("from", "")
        await self.notifier.notify(NotificationKind.POSITIVE_RESPONSE, {
            "message_id": record["message_id"],
            "from": sender,
            "account_name": (original or {}).get("account_name") or sender.rpartition("@")[2].rstrip(">") or "Unknown",
            "subject": record.get("subject", ""),
            "preview": reply.get("body", ""),
            "signals": record.get("signals", []),
        })
        self.store.put(CLASSIFICATIONS_NS, record["message_id"], {**record, "notified": True})

    async def handle(self, event: Event) -> Dict[str, Any]:
        reply = event.payload
        message_id = reply["message_id"]

        existing = self.store.get(CLASSIFICATIONS_NS, message_id)
        if existing:
            logger.info("Reply %s already classified as %s", message_id, existing["classification"])
            if existing["classification"] == "positive" and not existing.get("notified"):
                await self._notify_positive(existing, reply, self.find_original(existing.get("thread_id", "")))
            return {"success": True, "message_id": message_id, "classification": existing["classification"]}

        original = self.find_original(reply.get("thread_id", ""))
        response = await self.agent.invoke(get_agent_role("reply", "response_classifier"), self._prompt(reply, original))
        if not response.ok:
            logger.warning("Reply classification failed for %s: %s", message_id, response.message or response.status)
            return {
                "success": False,
                "message_id": message_id,
                "error": f"Classification {response.status}: {response.message}".strip(),
            }

        result = response.result_dict()
        classification = normalize_classification(result.get("classification") or result.get("label"))
        signals: List[str] = [str(s) for s in (result.get("signals") or [])]
        record = {
            "message_id": message_id,
            "thread_id": reply.get("thread_id", ""),
            "from": reply.get("from", ""),
            "subject": reply.get("subject", ""),
            "classification": classification,
            "signals": signals,
            "objections": result.get("objections") or [],
            "next_action": result.get("next_action"),
            "original_outreach_id": original.get("outreach_id") if original else None,
            "received_at": reply.get("timestamp") or datetime.now(timezone.utc).isoformat(),
            "notified": False,
        }

        if not self.store.put_if_absent(CLASSIFICATIONS_NS, message_id, record):
            stored = self.store.get(CLASSIFICATIONS_NS, message_id)
            return {"success": True, "message_id": message_id, "classification": stored["classification"]}

        log_event(EventType.REPLY_CLASSIFIED, {"message_id": message_id, "classification": classification})

        if classification == "positive":
            await self._notify_positive(record, reply, original)

        logger.info("Reply %s classified as %s", message_id, classification)
        return {
            "success": True,
            "message_id": message_id,
            "classification": classification,
            "signals": signals,
        }
