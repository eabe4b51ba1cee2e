"""
Transcript handler.

Turns a delivered call transcript into a single speaker-attributed text,
asks the transcript analyst for structured extraction, stores the result
keyed by the provider's meeting id and grows the phrase library.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from core.agent_service import AgentServiceClient, get_agent_service
from core.config import get_agent_role
from core.event_log import Event, EventType, log_event
from core.state_store import PHRASE_LIBRARY_NS, TRANSCRIPTS_NS, StateStore, get_state_store

logger = logging.getLogger("transcript_handler")

EXTRACTION_FIELDS = (
    "objections",
    "champions",
    "blockers",
    "winning_phrases",
    "next_steps",
    "pain_points",
    "budget_signals",
    "timeline_signals",
)


def build_transcript(transcript: Union[str, Dict[str, Any], List[Dict[str, Any]], None]) -> str:
    """Flat text passes through; sentence lists become "Speaker: text" lines."""
    if transcript is None:
        return ""
    if isinstance(transcript, str):
        return transcript.strip()

    sentences = transcript.get("sentences", []) if isinstance(transcript, dict) else transcript
    lines = []
    for sentence in sentences:
        text = str(sentence.get("text") or "").strip()
        if not text:
            continue
        speaker = sentence.get("speaker_name") or sentence.get("speaker") or "Unknown"
        lines.append(f"{speaker}: {text}")
    return "\n".join(lines)


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    return [str(v) for v in value if str(v).strip()]


class TranscriptHandler:

    def __init__(self, store: Optional[StateStore] = None, agent: Optional[AgentServiceClient] = None):
        self.store = store or get_state_store()
        self.agent = agent or get_agent_service()

    def _prompt(self, meeting: Dict[str, Any], transcript: str) -> str:
        participants = ", ".join(_as_list(meeting.get("participants"))) or "Unknown"
        minutes = int(meeting.get("duration_seconds") or 0) // 60
        summary = meeting.get("summary") or {}
        extra = ""
        if summary.get("overview"):
            extra += f"\nSummary: {summary['overview']}"
        if summary.get("action_items"):
            extra += f"\nAction Items: {', '.join(_as_list(summary['action_items']))}"
        return (
            "Analyze this meeting transcript:\n\n"
            f"Meeting: {meeting.get('title', '')}\n"
            f"Duration: {minutes} minutes\n"
            f"Participants: {participants}\n\n"
            f"Transcript:\n{transcript}\n{extra}\n\n"
            "Return JSON with keys: " + ", ".join(EXTRACTION_FIELDS)
        )

    async def handle(self, event: Event) -> Dict[str, Any]:
        meeting = event.payload
        meeting_id = str(meeting["meeting_id"])
        transcript = build_transcript(meeting.get("transcript"))
        key = f"{event.provider}:{meeting_id}"

        record = {
            "meeting_id": meeting_id,
            "provider": event.provider,
            "title": meeting.get("title", ""),
            "transcript": transcript,
            "participants": _as_list(meeting.get("participants")),
            "analysis": None,
            "analysis_status": "pending",
            "received_at": datetime.now(timezone.utc).isoformat(),
        }

        response = await self.agent.invoke(get_agent_role("transcript", "transcript_analyst"), self._prompt(meeting, transcript))
        if not response.ok:
            self.store.put(TRANSCRIPTS_NS, key, record)
            logger.warning("Transcript analysis failed for %s: %s", key, response.message or response.status)
            return {
                "success": False,
                "meeting_id": meeting_id,
                "error": f"Transcript analysis {response.status}: {response.message}".strip(),
            }

        result = response.result_dict()
        analysis = {name: _as_list(result.get(name)) for name in EXTRACTION_FIELDS}
        record["analysis"] = analysis
        record["analysis_status"] = "completed"
        self.store.put(TRANSCRIPTS_NS, key, record)

        added = self.add_phrases(analysis["winning_phrases"], source=key)
        log_event(EventType.TRANSCRIPT_ANALYZED, {"meeting_id": meeting_id, "provider": event.provider})
        logger.info("Transcript analyzed for %s (%d new phrases)", meeting.get("title", meeting_id), added)
        return {
            "success": True,
            "meeting_id": meeting_id,
            "analysis": analysis,
            "phrases_added": added,
        }

    def add_phrases(self, phrases: Iterable[str], source: str = "") -> int:
        """Append phrases not already in the library (exact text match)."""
        added = 0
        for phrase in phrases:
            entry = {
                "phrase": phrase,
                "success_rate": 0,
                "use_count": 1,
                "source": source,
                "added_at": datetime.now(timezone.utc).isoformat(),
            }
            if self.store.put_if_absent(PHRASE_LIBRARY_NS, phrase, entry):
                added += 1
        return added

    def phrase_library(self) -> List[Dict[str, Any]]:
        return sorted(self.store.list_documents(PHRASE_LIBRARY_NS), key=lambda p: p.get("added_at", ""))

    def get_transcript(self, provider: str, meeting_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get(TRANSCRIPTS_NS, f"{provider}:{meeting_id}")
