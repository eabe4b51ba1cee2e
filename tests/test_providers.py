#!/usr/bin/env python3
"""Provider payload normalization tests."""

import base64
import json
from urllib.parse import urlencode

import pytest

from core.errors import ValidationError
from webhooks.providers import (
    normalize_calendly,
    normalize_fireflies,
    normalize_gmail,
    normalize_otter,
    normalize_slack,
)


def _json(data):
    return json.dumps(data).encode("utf-8")


def test_calendly_reschedule_is_distinct_delivery():
    def body(event, start):
        return _json({
            "event": event,
            "payload": {
                "event": "https://api.calendly.com/scheduled_events/E1",
                "invitee": {"name": "Ada", "email": "a@x.com"},
                "event_type": {"name": "Discovery", "duration": 30},
                "scheduled_event": {"start_time": start},
            },
        })

    created = normalize_calendly(body("invitee.created", "2026-01-20T10:00:00Z"), {})
    moved = normalize_calendly(body("invitee.rescheduled", "2026-01-21T10:00:00Z"), {})

    assert created.event_type == "booking.created"
    assert moved.event_type == "booking.rescheduled"
    assert created.payload["event_id"] == moved.payload["event_id"]
    assert created.dedupe_key != moved.dedupe_key
    assert created.payload["duration"] == 30


def test_calendly_canceled_invitee_on_created_event():
    event = normalize_calendly(_json({
        "event": "invitee.created",
        "payload": {"event": "E1", "invitee": {"email": "a@x.com", "canceled": True}},
    }), {})

    assert event.event_type == "booking.canceled"


def test_calendly_requires_invitee_email():
    with pytest.raises(ValidationError):
        normalize_calendly(_json({"event": "invitee.created", "payload": {"event": "E1", "invitee": {}}}), {})


def test_otter_string_summary_and_participants():
    event = normalize_otter(_json({
        "meeting_id": 991,
        "transcript": "Rep: hi",
        "participants": [{"name": "Rep"}, "Buyer"],
        "summary": "Short call",
    }), {})

    assert event.external_id == "991"
    assert event.payload["participants"] == ["Rep", "Buyer"]
    assert event.payload["summary"] == {"overview": "Short call"}


def test_fireflies_rejects_bad_sentences():
    with pytest.raises(ValidationError):
        normalize_fireflies(_json({"id": "ff-1", "transcript": {"sentences": "nope"}}), {})


def test_slack_form_encoded_block_action():
    payload = {
        "type": "block_actions",
        "user": {"id": "U1", "username": "rev"},
        "actions": [{"action_id": "approve_out_1", "value": "out_1", "action_ts": "1700.1"}],
        "channel": {"id": "C1"},
    }
    event = normalize_slack(urlencode({"payload": json.dumps(payload)}).encode("utf-8"), {})

    assert event.external_id == "U1:approve_out_1:1700.1"
    assert event.payload["channel_id"] == "C1"


@pytest.mark.parametrize("body", [
    b"token=abc",
    urlencode({"payload": json.dumps({"type": "view_submission"})}).encode("utf-8"),
])
def test_slack_rejects_unsupported(body):
    with pytest.raises(ValidationError):
        normalize_slack(body, {})


def test_gmail_push_envelope():
    data = base64.b64encode(_json({"emailData": {"message": {
        "id": "m1", "threadId": "t1", "from": "a@x.com", "subject": "Re: hi",
    }}})).decode()

    event = normalize_gmail(_json({"message": {"data": data, "publishTime": "2026-01-20T11:00:00Z"}}), {})

    assert event.external_id == "m1"
    assert event.occurred_at == "2026-01-20T11:00:00Z"
    assert event.payload["thread_id"] == "t1"


def test_gmail_rejects_undecodable_data():
    with pytest.raises(ValidationError):
        normalize_gmail(_json({"message": {"data": "!!!notbase64"}}), {})


def _slack_form(payload):
    return urlencode({"payload": json.dumps(payload)}).encode("utf-8")


def _gmail_push(data):
    return _json({"message": {"data": base64.b64encode(_json(data)).decode()}})


@pytest.mark.parametrize("normalize,body", [
    (normalize_calendly, _json({"event": ["invitee.created"], "payload": {"event": "E1"}})),
    (normalize_calendly, _json({"event": "invitee.created", "payload": {"event": "E1", "invitee": "oops"}})),
    (normalize_calendly, _json({
        "event": "invitee.created",
        "payload": {"event": "E1", "invitee": {"email": "a@x.com"}, "event_type": "Discovery"},
    })),
    (normalize_calendly, _json({
        "event": "invitee.created",
        "payload": {"event": "E1", "invitee": {"email": "a@x.com"}, "scheduled_event": ["10:00"]},
    })),
    (normalize_calendly, _json({"event": "invitee.created", "payload": "E1"})),
    (normalize_otter, _json({"meeting_id": "m1", "transcript": 42})),
    (normalize_otter, _json({"meeting_id": "m1", "transcript": "hi", "participants": 3})),
    (normalize_fireflies, _json({"id": "ff-1", "transcript": {"sentences": ["Rep: hi"]}})),
    (normalize_slack, _slack_form({"type": "block_actions", "actions": {"a": 1}})),
    (normalize_slack, _slack_form({"type": "block_actions", "actions": ["approve_1"]})),
    (normalize_slack, _slack_form({
        "type": "block_actions", "actions": [{"action_id": "approve_1"}], "user": "U1",
    })),
    (normalize_gmail, _gmail_push({"emailData": "m1"})),
    (normalize_gmail, _gmail_push(["m1"])),
    (normalize_gmail, _json({"message": "data"})),
    (normalize_gmail, _json({"message": {"data": "é"}})),
])
def test_wrongly_typed_fields_are_validation_errors(normalize, body):
    with pytest.raises(ValidationError):
        normalize(body, {})
