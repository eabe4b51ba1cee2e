#!/usr/bin/env python3
"""
Webhook Event Router
====================

ingest(provider, raw_body, headers) -> IngestResult(status_code, body)

1. Verify   - provider verifier; 401 on bad credentials, 503 when the secret
              is missing in strict mode.
2. Normalize - provider payload -> canonical Event; 400 when malformed.
3. Dedupe   - under a per-(provider, external_id) lock, claim the event in
              the idempotency log. An event whose stored outcome is
              "processed" returns the stored result without re-dispatch.
4. Dispatch - by event_type. A handler exception becomes a 500 with a
              structured body and a "failed" outcome, so a redelivery is
              dispatched again. Unknown event types are acknowledged.

Providers listed in deferred_providers are acknowledged with a 202 once the
payload is verified and normalized; steps 3 and 4 then run in a background
task under the same locks. drain() waits for those tasks.
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, Iterable, Mapping, Optional, Protocol, Set

from core.alerts import send_critical, send_warning
from core.errors import AuthenticationError, ConfigurationError, ValidationError
from core.event_log import Event, EventLog, EventType, OutcomeStatus, log_event
from core.webhook_security import Verifier, authenticate_webhook

logger = logging.getLogger("event_router")

LOCK_TTL_SECONDS = 120
LOCK_POLL_SECONDS = 0.05


class EventHandler(Protocol):
    def handle(self, event: Event) -> Awaitable[Dict[str, Any]]: ...


class Normalizer(Protocol):
    def __call__(self, raw_body: bytes, headers: Mapping[str, str]) -> Event: ...


@dataclass
class IngestResult:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)


class EventRouter:

    def __init__(
        self,
        normalizers: Dict[str, Normalizer],
        handlers: Optional[Dict[str, EventHandler]] = None,
        event_log: Optional[EventLog] = None,
        verifiers: Optional[Dict[str, Verifier]] = None,
        deferred_providers: Optional[Iterable[str]] = None,
    ):
        self.normalizers = dict(normalizers)
        self.handlers: Dict[str, EventHandler] = dict(handlers or {})
        self.event_log = event_log or EventLog()
        self.verifiers = dict(verifiers or {})
        self._key_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self.deferred_providers: Set[str] = set(deferred_providers or ())
        self._pending: Set[asyncio.Task] = set()

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        self.handlers[event_type] = handler

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[key] = lock
        return lock

    async def _acquire_store_lock(self, name: str) -> str:
        store = self.event_log.store
        token = store.acquire_lock(name, ttl_seconds=LOCK_TTL_SECONDS)
        while token is None:
            await asyncio.sleep(LOCK_POLL_SECONDS)
            token = store.acquire_lock(name, ttl_seconds=LOCK_TTL_SECONDS)
        return token

    async def ingest(self, provider: str, raw_body: bytes, headers: Mapping[str, str]) -> IngestResult:
        normalizer = self.normalizers.get(provider)
        if normalizer is None:
            return IngestResult(404, {"success": False, "error": f"Unknown provider: {provider}"})

        try:
            authenticate_webhook(
                provider=provider,
                raw_body=raw_body,
                headers=headers,
                verifier=self.verifiers.get(provider),
            )
        except AuthenticationError as e:
            logger.warning("Rejected %s webhook: %s", provider, e)
            return IngestResult(401, {"success": False, "error": "authentication_failed", "detail": str(e)})
        except ConfigurationError as e:
            logger.error("Webhook misconfigured for %s: %s", provider, e)
            return IngestResult(503, {"success": False, "error": "not_configured", "detail": str(e)})

        try:
            event = normalizer(raw_body, headers)
        except ValidationError as e:
            logger.warning("Malformed %s payload: %s", provider, e)
            return IngestResult(400, {"success": False, "error": "invalid_payload", "detail": str(e)})

        if provider in self.deferred_providers:
            return self._defer(event)
        return await self._process_locked(event)

    def _duplicate(self, event: Event, record: Dict[str, Any]) -> IngestResult:
        logger.info("Duplicate delivery %s - returning stored result", event.dedupe_key)
        log_event(EventType.WEBHOOK_DUPLICATE, {"key": event.dedupe_key})
        return IngestResult(200, {**(record.get("result") or {}), "duplicate": True})

    def _defer(self, event: Event) -> IngestResult:
        record = self.event_log.get(event.provider, event.external_id)
        if record and record.get("status") == OutcomeStatus.PROCESSED.value:
            return self._duplicate(event, record)

        task = asyncio.create_task(self._process_locked(event))
        self._pending.add(task)
        task.add_done_callback(self._background_done)
        logger.info("Accepted %s for background processing", event.dedupe_key)
        return IngestResult(202, {"success": True, "accepted": True, "event_type": event.event_type})

    def _background_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background webhook processing crashed", exc_info=task.exception())

    async def drain(self) -> None:
        """Wait for every background dispatch started so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _process_locked(self, event: Event) -> IngestResult:
        async with self._lock_for(event.dedupe_key):
            lock_name = f"event:{event.dedupe_key}"
            token = await self._acquire_store_lock(lock_name)
            try:
                return await self._process(event)
            finally:
                self.event_log.store.release_lock(lock_name, token)

    async def _process(self, event: Event) -> IngestResult:
        created, record = self.event_log.claim(event)
        if not created and record.get("status") == OutcomeStatus.PROCESSED.value:
            return self._duplicate(event, record)

        log_event(EventType.WEBHOOK_RECEIVED, {
            "key": event.dedupe_key,
            "event_type": event.event_type,
            "attempt": int(record.get("attempts", 0)) + 1,
        })

        handler = self.handlers.get(event.event_type)
        if handler is None:
            result = {"success": True, "action": "ignored", "event_type": event.event_type}
            self.event_log.record_outcome(event, OutcomeStatus.PROCESSED, result)
            send_warning(
                "Unhandled webhook event",
                f"No handler for {event.event_type} from {event.provider}",
                context={"key": event.dedupe_key},
                component="event_router",
                echo=False,
                store=self.event_log.store,
            )
            return IngestResult(200, result)

        try:
            result = await handler.handle(event)
        except Exception as e:
            logger.exception("Handler for %s failed on %s", event.event_type, event.dedupe_key)
            self.event_log.record_outcome(event, OutcomeStatus.FAILED, error=f"{type(e).__name__}: {e}")
            log_event(EventType.WEBHOOK_FAILED, {"key": event.dedupe_key, "error": str(e)})
            send_critical(
                "Webhook processing error",
                f"{event.event_type} from {event.provider} failed: {e}",
                context={"key": event.dedupe_key},
                component="event_router",
                echo=False,
                store=self.event_log.store,
            )
            return IngestResult(500, {
                "success": False,
                "error": "processing_error",
                "detail": str(e),
                "event_type": event.event_type,
            })

        status = OutcomeStatus.PROCESSED if result.get("success", True) else OutcomeStatus.FAILED
        self.event_log.record_outcome(event, status, result, error=result.get("error"))
        return IngestResult(200, result)
