#!/usr/bin/env python3
"""
Provider payload normalizers.

Each function takes the raw request body plus headers and returns the
canonical Event the router dedupes and dispatches. Anything malformed raises
ValidationError, which the router turns into a 400.

external_id choices (dedupe key is provider + external_id):
- calendly:  "<webhook event>:<event uri>:<start_time>"  (a reschedule is a new delivery)
- otter:     meeting_id
- fireflies: transcript id
- slack:     "<user id>:<action_id>:<action_ts>"
- gmail:     Gmail message id from the decoded Pub/Sub data
"""

import base64
import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping
from urllib.parse import parse_qs

from core.errors import ValidationError
from core.event_log import CanonicalEventType, Event

Normalizer = Callable[[bytes, Mapping[str, str]], Event]

CALENDLY_EVENT_TYPES = {
    "invitee.created": CanonicalEventType.BOOKING_CREATED,
    "invitee.canceled": CanonicalEventType.BOOKING_CANCELED,
    "invitee.rescheduled": CanonicalEventType.BOOKING_RESCHEDULED,
}


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _load_json(raw_body: bytes) -> Dict[str, Any]:
    try:
        data = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError(f"Invalid JSON payload: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError("Payload must be a JSON object")
    return data


def _require(data: Dict[str, Any], *names: str) -> None:
    missing = [n for n in names if data.get(n) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def _object(value: Any, name: str) -> Dict[str, Any]:
    """Missing fields read as {}; anything other than an object is malformed."""
    if value in (None, ""):
        return {}
    if not isinstance(value, dict):
        raise ValidationError(f"{name} must be an object")
    return value


def _check_transcript(transcript: Any) -> None:
    if isinstance(transcript, str):
        return
    sentences = transcript.get("sentences") if isinstance(transcript, dict) else transcript
    if not isinstance(sentences, list) or not all(isinstance(s, dict) for s in sentences):
        raise ValidationError("transcript must be text or a list of sentence objects")


def normalize_calendly(raw_body: bytes, headers: Mapping[str, str]) -> Event:
    body = _load_json(raw_body)
    _require(body, "event", "payload")

    webhook_event = body["event"]
    if not isinstance(webhook_event, str):
        raise ValidationError("event must be a string")
    if webhook_event not in CALENDLY_EVENT_TYPES:
        # Acknowledged and ignored by the router.
        event_type = f"calendly.{webhook_event}"
    else:
        event_type = CALENDLY_EVENT_TYPES[webhook_event].value

    payload = _object(body["payload"], "payload")
    invitee = _object(payload.get("invitee"), "payload.invitee")
    meeting_type = _object(payload.get("event_type"), "payload.event_type")
    scheduled = _object(payload.get("scheduled_event"), "payload.scheduled_event")
    event_id = payload.get("event") or payload.get("uri")
    if not event_id or not isinstance(event_id, str):
        raise ValidationError("Missing required fields: payload.event")
    if not invitee.get("email"):
        raise ValidationError("Missing required fields: payload.invitee.email")

    if invitee.get("canceled") and event_type == CanonicalEventType.BOOKING_CREATED.value:
        event_type = CanonicalEventType.BOOKING_CANCELED.value

    start_time = scheduled.get("start_time")
    return Event(
        provider="calendly",
        event_type=event_type,
        external_id=f"{webhook_event}:{event_id}:{start_time or ''}",
        occurred_at=invitee.get("created_at") or _utc_now(),
        payload={
            "event_id": event_id,
            "invitee": {
                "name": invitee.get("name", ""),
                "email": invitee.get("email", ""),
                "timezone": invitee.get("timezone"),
            },
            "start_time": start_time,
            "end_time": scheduled.get("end_time"),
            "meeting_type": meeting_type.get("name", ""),
            "duration": meeting_type.get("duration", 0),
            "timezone": invitee.get("timezone"),
            "location": scheduled.get("location"),
        },
    )


def normalize_otter(raw_body: bytes, headers: Mapping[str, str]) -> Event:
    body = _load_json(raw_body)
    _require(body, "meeting_id", "transcript")
    _check_transcript(body["transcript"])
    raw_participants = body.get("participants") or []
    if not isinstance(raw_participants, list):
        raise ValidationError("participants must be a list")
    participants = [p.get("name", "") if isinstance(p, dict) else str(p) for p in raw_participants]
    return Event(
        provider="otter",
        event_type=CanonicalEventType.TRANSCRIPT_DELIVERED.value,
        external_id=str(body["meeting_id"]),
        occurred_at=body.get("end_time") or _utc_now(),
        payload={
            "meeting_id": str(body["meeting_id"]),
            "title": body.get("title", ""),
            "transcript": body["transcript"],
            "participants": participants,
            "duration_seconds": body.get("duration_seconds") or 0,
            "summary": {"overview": body["summary"]} if isinstance(body.get("summary"), str) else body.get("summary"),
        },
    )


def normalize_fireflies(raw_body: bytes, headers: Mapping[str, str]) -> Event:
    body = _load_json(raw_body)
    _require(body, "id", "transcript")
    transcript = body["transcript"]
    _check_transcript(transcript)
    return Event(
        provider="fireflies",
        event_type=CanonicalEventType.TRANSCRIPT_DELIVERED.value,
        external_id=str(body["id"]),
        occurred_at=body.get("date") or _utc_now(),
        payload={
            "meeting_id": str(body["id"]),
            "title": body.get("title", ""),
            "transcript": transcript,
            "participants": body.get("participants") or [],
            "duration_seconds": body.get("duration") or 0,
            "summary": body.get("summary"),
        },
    )


def normalize_slack(raw_body: bytes, headers: Mapping[str, str]) -> Event:
    try:
        text = raw_body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ValidationError(f"Invalid body encoding: {e}") from e

    if text.lstrip().startswith("{"):
        body = _load_json(raw_body)
    else:
        form = parse_qs(text)
        if "payload" not in form:
            raise ValidationError("Missing payload form field")
        body = _load_json(form["payload"][0].encode("utf-8"))

    actions = body.get("actions") or []
    if body.get("type") != "block_actions" or not actions:
        raise ValidationError("Unsupported Slack interaction payload")
    if not isinstance(actions, list):
        raise ValidationError("actions must be a list")

    action = _object(actions[0], "actions[0]")
    action_id = action.get("action_id", "")
    if not isinstance(action_id, str):
        raise ValidationError("actions[0].action_id must be a string")
    user = _object(body.get("user"), "user")
    action_ts = action.get("action_ts") or _object(body.get("container"), "container").get("message_ts") or ""
    return Event(
        provider="slack",
        event_type=CanonicalEventType.INTERACTION_ACTION.value,
        external_id=f"{user.get('id', '')}:{action_id}:{action_ts}",
        occurred_at=_utc_now(),
        payload={
            "action_id": action_id,
            "value": action.get("value"),
            "user": {"id": user.get("id"), "username": user.get("username"), "name": user.get("name")},
            "message_blocks": _object(body.get("message"), "message").get("blocks") or [],
            "channel_id": _object(body.get("channel"), "channel").get("id"),
            "response_url": body.get("response_url"),
        },
    )


def normalize_gmail(raw_body: bytes, headers: Mapping[str, str]) -> Event:
    envelope = _load_json(raw_body)
    message = _object(envelope.get("message"), "message")
    data = message.get("data")
    if not data or not isinstance(data, str):
        raise ValidationError("Missing message.data in push envelope")
    try:
        decoded = json.loads(base64.b64decode(data, validate=False).decode("utf-8"))
    except ValueError as e:
        # binascii.Error, UnicodeDecodeError and JSONDecodeError are all ValueErrors
        raise ValidationError(f"Undecodable push data: {e}") from e

    if not isinstance(decoded, dict):
        raise ValidationError("Push data must be a JSON object")
    email = (_object(decoded.get("emailData"), "emailData") or decoded).get("message")
    if not isinstance(email, dict):
        raise ValidationError("Push data does not describe a message")
    _require(email, "id", "from")

    return Event(
        provider="gmail",
        event_type=CanonicalEventType.REPLY_RECEIVED.value,
        external_id=str(email["id"]),
        occurred_at=email.get("timestamp") or message.get("publishTime") or _utc_now(),
        payload={
            "message_id": str(email["id"]),
            "thread_id": email.get("threadId", ""),
            "from": email["from"],
            "to": email.get("to", ""),
            "subject": email.get("subject", ""),
            "body": email.get("body", ""),
            "timestamp": email.get("timestamp"),
            "in_reply_to": email.get("inReplyTo"),
        },
    )


NORMALIZERS: Dict[str, Normalizer] = {
    "calendly": normalize_calendly,
    "otter": normalize_otter,
    "fireflies": normalize_fireflies,
    "slack": normalize_slack,
    "gmail": normalize_gmail,
}
