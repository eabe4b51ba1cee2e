#!/usr/bin/env python3
"""
Webhook Server
==============
FastAPI surface for inbound provider webhooks.

Endpoints:
    POST /api/webhooks/calendly            - meeting bookings
    POST /api/webhooks/otter               - call transcripts
    POST /api/webhooks/fireflies           - call transcripts
    POST /api/webhooks/slack/interactions  - approval buttons
    POST /api/webhooks/gmail               - inbound reply push notifications
    GET  /api/webhooks/health              - per-provider status
    GET  /api/webhooks/events/recent       - recent webhook events

Every POST goes through the same EventRouter: verify, normalize, dedupe,
dispatch. Status codes: 200 (including duplicates), 400, 401, 500, and 503
when a provider secret is missing in strict mode.

Usage:
    python -m webhooks.webhook_server --port 8000
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from core.alerts import alert_counts
from core.booking_handler import BookingHandler
from core.config import get_provider_rules, get_webhook_settings
from core.event_log import CanonicalEventType, EventLog
from core.event_router import EventRouter
from core.notifications import shutdown_notification_manager
from core.reply_handler import ReplyHandler
from core.slack_handler import SlackInteractionHandler
from core.transcript_handler import TranscriptHandler
from core.webhook_security import get_webhook_signature_status
from webhooks.providers import NORMALIZERS

load_dotenv()

logger = logging.getLogger("webhook_server")

WEBHOOK_PORT = int(os.getenv("WEBHOOK_PORT", "8000"))

router = APIRouter(prefix="/api/webhooks")


def build_event_router() -> EventRouter:
    """Router wired to the default handlers for every canonical event type."""
    booking = BookingHandler()
    transcripts = TranscriptHandler()
    return EventRouter(
        normalizers=NORMALIZERS,
        handlers={
            CanonicalEventType.BOOKING_CREATED.value: booking,
            CanonicalEventType.BOOKING_CANCELED.value: booking,
            CanonicalEventType.BOOKING_RESCHEDULED.value: booking,
            CanonicalEventType.TRANSCRIPT_DELIVERED.value: transcripts,
            CanonicalEventType.REPLY_RECEIVED.value: ReplyHandler(),
            CanonicalEventType.INTERACTION_ACTION.value: SlackInteractionHandler(),
        },
        event_log=EventLog(),
        deferred_providers=get_webhook_settings().get("deferred_providers") or [],
    )


def _event_router(request: Request) -> EventRouter:
    event_router = getattr(request.app.state, "event_router", None)
    if event_router is None:
        event_router = build_event_router()
        request.app.state.event_router = event_router
    return event_router


async def _ingest(provider: str, request: Request) -> JSONResponse:
    raw_body = await request.body()
    result = await _event_router(request).ingest(provider, raw_body, request.headers)
    return JSONResponse(status_code=result.status_code, content=result.body)


@router.post("/calendly")
async def calendly_webhook(request: Request):
    """Calendly invitee.created / invitee.canceled / invitee.rescheduled."""
    return await _ingest("calendly", request)


@router.post("/otter")
async def otter_webhook(request: Request):
    return await _ingest("otter", request)


@router.post("/fireflies")
async def fireflies_webhook(request: Request):
    return await _ingest("fireflies", request)


@router.post("/slack/interactions")
async def slack_interactions(request: Request):
    """Slack block_actions, form-encoded as payload=<json>."""
    return await _ingest("slack", request)


@router.post("/gmail")
async def gmail_push(request: Request):
    """Gmail Pub/Sub push envelope carrying the reply in message.data."""
    return await _ingest("gmail", request)


@router.get("/health")
async def webhooks_health(request: Request):
    """Per-provider status and auth configuration."""
    providers = {}
    warnings = []
    for provider, rule in get_provider_rules().items():
        status = get_webhook_signature_status(rule["secret_env"])
        providers[provider] = {
            "status": "active",
            "scheme": rule.get("scheme"),
            "secret_configured": status["secret_configured"],
        }
        if not status["secret_configured"]:
            warnings.append(f"{provider}: {rule['secret_env']} not set")

    return {
        "status": "healthy",
        "service": "webhook-server",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "signature_strict_mode": get_webhook_signature_status("")["strict_mode"],
        "providers": providers,
        "alerts": alert_counts(store=_event_router(request).event_log.store),
        "warnings": warnings,
    }


@router.get("/events/recent")
async def recent_events(request: Request, limit: int = 20, provider: Optional[str] = None):
    records = _event_router(request).event_log.recent(limit=limit, provider=provider)
    return {
        "count": len(records),
        "events": [
            {
                "key": f"{r['event']['provider']}:{r['event']['external_id']}",
                "event_type": r["event"]["event_type"],
                "status": r.get("status"),
                "attempts": r.get("attempts", 0),
                "received_at": r.get("received_at"),
                "error": r.get("error"),
            }
            for r in records
        ],
    }


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    try:
        yield
    finally:
        event_router = getattr(app.state, "event_router", None)
        if event_router is not None:
            await event_router.drain()
        await shutdown_notification_manager()


def create_app(event_router: Optional[EventRouter] = None) -> FastAPI:
    """
    Create and configure the webhook server.

    Args:
        event_router: Optional router (built lazily from defaults if not provided)
    """
    app = FastAPI(
        title="Revenue Engine Webhooks",
        description="Inbound provider webhooks for bookings, transcripts, replies and approvals",
        version="1.0.0",
        lifespan=app_lifespan,
    )
    app.state.event_router = event_router
    app.include_router(router)

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "service": "webhook-server",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


def main():
    """Start the webhook server."""
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(description="Webhook Server for the revenue engine")
    parser.add_argument("--port", type=int, default=WEBHOOK_PORT, help="Port to listen on")
    parser.add_argument("--host", type=str, default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Webhook server listening on http://%s:%s", args.host, args.port)
    uvicorn.run(create_app(), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
