#!/usr/bin/env python3
"""Transcript handler tests."""

import pytest

from core.agent_service import AgentResponse, AgentStatus
from core.event_log import Event
from core.state_store import TRANSCRIPTS_NS
from core.transcript_handler import TranscriptHandler, build_transcript


def _event(provider="otter", meeting_id="mtg-1", transcript="Rep: hi\nBuyer: hello"):
    return Event(
        provider=provider,
        event_type="transcript.delivered",
        external_id=meeting_id,
        occurred_at="2026-01-20T11:00:00Z",
        payload={
            "meeting_id": meeting_id,
            "title": "Discovery call",
            "transcript": transcript,
            "participants": ["Rep", "Buyer"],
            "duration_seconds": 1800,
            "summary": {"overview": "Pricing discussion", "action_items": ["send deck"]},
        },
    )


def test_build_transcript_from_sentences():
    text = build_transcript({"sentences": [
        {"speaker_name": "Rep", "text": " Hi there "},
        {"speaker": "Buyer", "text": "Hello"},
        {"text": "no speaker"},
        {"speaker_name": "Rep", "text": ""},
    ]})

    assert text == "Rep: Hi there\nBuyer: Hello\nUnknown: no speaker"


def test_build_transcript_passes_text_through():
    assert build_transcript("  plain text ") == "plain text"
    assert build_transcript(None) == ""


@pytest.mark.asyncio
async def test_analysis_is_stored_and_phrases_added(store, fake_agent):
    fake_agent.responses = [AgentResponse(status=AgentStatus.SUCCESS, result={
        "objections": ["too expensive"],
        "champions": "Buyer",
        "winning_phrases": ["happy to start small", "what does success look like"],
    })]
    handler = TranscriptHandler(store=store, agent=fake_agent)

    result = await handler.handle(_event())

    assert result["success"] is True
    assert result["phrases_added"] == 2
    assert result["analysis"]["champions"] == ["Buyer"]
    assert result["analysis"]["next_steps"] == []

    role, prompt = fake_agent.calls[0]
    assert role == "transcript_analyst"
    assert "Duration: 30 minutes" in prompt
    assert "Action Items: send deck" in prompt

    stored = handler.get_transcript("otter", "mtg-1")
    assert stored["analysis_status"] == "completed"
    assert stored["transcript"] == "Rep: hi\nBuyer: hello"


@pytest.mark.asyncio
async def test_phrase_library_skips_known_phrases(store, fake_agent):
    handler = TranscriptHandler(store=store, agent=fake_agent)
    fake_agent.responses = [
        AgentResponse(status=AgentStatus.SUCCESS, result={"winning_phrases": ["happy to start small"]}),
        AgentResponse(status=AgentStatus.SUCCESS, result={"winning_phrases": ["happy to start small", "fair question"]}),
    ]

    first = await handler.handle(_event(meeting_id="mtg-1"))
    second = await handler.handle(_event(meeting_id="mtg-2"))

    assert first["phrases_added"] == 1
    assert second["phrases_added"] == 1
    assert [p["phrase"] for p in handler.phrase_library()] == ["happy to start small", "fair question"]


@pytest.mark.asyncio
async def test_failed_analysis_is_unsuccessful(store, fake_agent):
    fake_agent.responses = [AgentResponse(status=AgentStatus.ERROR, message="HTTP 502")]
    handler = TranscriptHandler(store=store, agent=fake_agent)

    result = await handler.handle(_event(provider="fireflies", meeting_id="ff-1"))

    assert result["success"] is False
    assert "HTTP 502" in result["error"]
    assert store.get(TRANSCRIPTS_NS, "fireflies:ff-1")["analysis_status"] == "pending"
