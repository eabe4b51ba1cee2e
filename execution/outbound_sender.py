#!/usr/bin/env python3
"""
Outbound Sender
===============
The only path by which outreach leaves the system.

Every send goes:
    approval gate -> admission check -> channel call -> admission record -> sent record

Approval does not bypass admission. The admission check, the external call
and the record happen under AdmissionController.hold(channel), so two
senders on the same channel can never both squeeze under the daily cap.

Batches re-check admission before every item. A denial halts the batch and
every remaining item comes back with success=False and scheduled_for set to
the denial's retry time. After each successful professional-network action
the delay policy decides how long to wait before the next one.

Usage:
    python execution/outbound_sender.py --emails queue.json
    python execution/outbound_sender.py --connections requests.json --no-jitter
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from dotenv import load_dotenv

from core.adapters.email_sending import EmailSendingAdapter, apply_tracking, get_email_adapter
from core.adapters.professional_network import ActionResult, ProfessionalNetworkAdapter, get_network_adapter
from core.admission_controller import (
    ActionKind,
    AdmissionController,
    AdmissionDecision,
    Channel,
    DenialReason,
    get_admission_controller,
)
from core.approval_engine import ApprovalEngine, get_approval_engine
from core.config import get_channel_defaults
from core.event_log import EventType, log_event
from core.pacing import DelayPolicy, JitterDelayPolicy, SleepFn, default_sleep
from core.state_store import SENT_OUTREACH_NS, StateStore, get_state_store

logger = logging.getLogger("outbound_sender")

DENIAL_MESSAGES = {
    DenialReason.DAILY_LIMIT_REACHED.value: "Daily limit reached",
    DenialReason.OUTSIDE_WINDOW.value: "Outside sending window",
    DenialReason.DELAY_NOT_MET.value: "Action delay not met",
}


@dataclass
class OutreachEmail:
    to: str
    subject: str
    body: str
    outreach_id: Optional[str] = None
    account_name: str = ""
    thread_id: Optional[str] = None
    from_account: Optional[str] = None


@dataclass
class ConnectionRequest:
    profile_url: str
    message: str
    first_name: str = ""
    last_name: str = ""
    headline: str = ""
    outreach_id: Optional[str] = None
    account_name: str = ""


@dataclass
class InMailMessage:
    profile_url: str
    subject: str
    body: str
    outreach_id: Optional[str] = None
    account_name: str = ""


@dataclass
class OutboundResult:
    """{success, error?, scheduled_for?} shape returned to callers."""
    success: bool
    message_id: Optional[str] = None
    action_id: Optional[str] = None
    thread_id: Optional[str] = None
    error: Optional[str] = None
    reason: Optional[str] = None
    scheduled_for: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def admission_denied(self) -> bool:
        return self.reason in DENIAL_MESSAGES

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None and v != {}}


def _denied(decision: AdmissionDecision) -> OutboundResult:
    return OutboundResult(
        success=False,
        error=DENIAL_MESSAGES.get(decision.reason, decision.reason),
        reason=decision.reason,
        scheduled_for=decision.retry_at.isoformat() if decision.retry_at else None,
    )


class OutboundSender:

    def __init__(
        self,
        admission: Optional[AdmissionController] = None,
        approvals: Optional[ApprovalEngine] = None,
        email_adapter: Optional[EmailSendingAdapter] = None,
        network_adapter: Optional[ProfessionalNetworkAdapter] = None,
        store: Optional[StateStore] = None,
        delay_policy: Optional[DelayPolicy] = None,
        sleep: Optional[SleepFn] = None,
    ):
        self.admission = admission or get_admission_controller()
        self.approvals = approvals or get_approval_engine()
        self.email_adapter = email_adapter or get_email_adapter()
        self.network_adapter = network_adapter or get_network_adapter()
        self.store = store or get_state_store()

        network_defaults = get_channel_defaults(Channel.PROFESSIONAL_NETWORK.value)
        self.delay_policy = delay_policy or JitterDelayPolicy(
            max_jitter_seconds=float(network_defaults.get("max_jitter_minutes", 30)) * 60
        )
        self.engagement_enabled = bool(network_defaults.get("engagement_enabled", True))

        email_defaults = get_channel_defaults(Channel.EMAIL.value)
        self.tracking = email_defaults.get("tracking") or {}
        self.email_spacing_seconds = float(email_defaults.get("batch_spacing_seconds", 0))
        self.sleep = sleep or default_sleep

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def _approval_gate(self, outreach_id: Optional[str]) -> Optional[OutboundResult]:
        if not outreach_id:
            return None
        if self.approvals.is_approved(outreach_id):
            return None
        record = self.approvals.get(outreach_id)
        status = record.status if record else "not staged"
        logger.warning("Refusing to send outreach %s (%s)", outreach_id, status)
        return OutboundResult(success=False, error=f"Outreach {outreach_id} is {status}", reason="not_approved")

    def _store_sent(self, key: str, record: Dict[str, Any]) -> None:
        self.store.put(SENT_OUTREACH_NS, key, record)
        log_event(EventType.OUTREACH_SENT, {
            "channel": record["channel"],
            "kind": record["kind"],
            "id": key,
            "outreach_id": record.get("outreach_id"),
        })

    # ------------------------------------------------------------------
    # Email
    # ------------------------------------------------------------------

    async def send_email(self, email: OutreachEmail) -> OutboundResult:
        refused = self._approval_gate(email.outreach_id)
        if refused:
            return refused

        async with self.admission.hold(Channel.EMAIL):
            decision = self.admission.check_admission(Channel.EMAIL, ActionKind.EMAIL)
            if not decision.allowed:
                log_event(EventType.ADMISSION_DENIED, decision.to_dict())
                return _denied(decision)

            body = apply_tracking(email.body, email.outreach_id or "", self.tracking)
            sent = await self.email_adapter.send_email(
                to=email.to,
                subject=email.subject,
                body_html=body,
                from_account=email.from_account,
                metadata={"thread_id": email.thread_id} if email.thread_id else None,
            )

            if not sent.success:
                logger.error("Email to %s failed: %s", email.to, sent.error)
                return OutboundResult(success=False, error=sent.error or "Send failed")

            self.admission.record_action(Channel.EMAIL, ActionKind.EMAIL)

        self._store_sent(sent.message_id, {
            "channel": Channel.EMAIL.value,
            "kind": ActionKind.EMAIL.value,
            "message_id": sent.message_id,
            "thread_id": sent.thread_id,
            "outreach_id": email.outreach_id,
            "to": email.to,
            "subject": email.subject,
            "account_name": email.account_name,
            "sent_at": sent.sent_at,
        })
        logger.info("Email sent to %s (message_id=%s)", email.to, sent.message_id)
        return OutboundResult(success=True, message_id=sent.message_id, thread_id=sent.thread_id)

    async def batch_send_emails(self, emails: List[OutreachEmail]) -> List[OutboundResult]:
        return await self._run_batch(emails, self.send_email, lambda: self.email_spacing_seconds)

    # ------------------------------------------------------------------
    # Professional network
    # ------------------------------------------------------------------

    async def _network_action(
        self,
        kind: ActionKind,
        call: Callable[[], Awaitable[ActionResult]],
        record: Dict[str, Any],
    ) -> OutboundResult:
        channel = Channel.PROFESSIONAL_NETWORK
        async with self.admission.hold(channel):
            decision = self.admission.check_admission(channel, kind)
            if not decision.allowed:
                log_event(EventType.ADMISSION_DENIED, decision.to_dict())
                return _denied(decision)

            result = await call()
            if not result.success:
                logger.error("%s failed: %s", kind.value, result.error)
                return OutboundResult(success=False, error=result.error)

            self.admission.record_action(channel, kind)

        self._store_sent(result.action_id, {
            **record,
            "channel": channel.value,
            "kind": kind.value,
            "action_id": result.action_id,
            "thread_id": None,
            "sent_at": result.performed_at,
        })
        logger.info("%s completed (action_id=%s)", kind.value, result.action_id)
        return OutboundResult(success=True, action_id=result.action_id)

    async def send_connection_request(self, request: ConnectionRequest) -> OutboundResult:
        refused = self._approval_gate(request.outreach_id)
        if refused:
            return refused
        name = f"{request.first_name} {request.last_name}".strip()
        return await self._network_action(
            ActionKind.CONNECTION_REQUEST,
            lambda: self.network_adapter.send_connection_request(
                request.profile_url, request.message, name=name, headline=request.headline
            ),
            {
                "outreach_id": request.outreach_id,
                "profile_url": request.profile_url,
                "account_name": request.account_name,
            },
        )

    async def send_inmail(self, message: InMailMessage) -> OutboundResult:
        refused = self._approval_gate(message.outreach_id)
        if refused:
            return refused
        return await self._network_action(
            ActionKind.INMAIL,
            lambda: self.network_adapter.send_inmail(message.profile_url, message.subject, message.body),
            {
                "outreach_id": message.outreach_id,
                "profile_url": message.profile_url,
                "subject": message.subject,
                "account_name": message.account_name,
            },
        )

    async def engage_with_post(self, post_url: str, action: str = "like", comment: Optional[str] = None) -> OutboundResult:
        """Like or comment on a post. Paced by the delay, never counted against the cap."""
        if not self.engagement_enabled:
            return OutboundResult(success=False, error="Engagement disabled in settings", reason="disabled")
        if action not in ("like", "comment"):
            return OutboundResult(success=False, error=f"Unsupported engagement action: {action}")
        return await self._network_action(
            ActionKind.ENGAGEMENT,
            lambda: self.network_adapter.engage_with_post(post_url, action, comment),
            {"post_url": post_url, "action": action},
        )

    async def batch_send_connections(self, requests: List[ConnectionRequest]) -> List[OutboundResult]:
        def next_delay() -> float:
            config = self.admission.get_config(Channel.PROFESSIONAL_NETWORK)
            return self.delay_policy.next_delay(
                Channel.PROFESSIONAL_NETWORK.value, config.action_delay_minutes * 60
            )
        return await self._run_batch(requests, self.send_connection_request, next_delay)

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def _run_batch(self, items: list, send_one, next_delay: Callable[[], float]) -> List[OutboundResult]:
        results: List[OutboundResult] = []
        for index, item in enumerate(items):
            result = await send_one(item)
            results.append(result)

            if result.admission_denied:
                remaining = len(items) - index - 1
                if remaining:
                    logger.info("Batch halted (%s); deferring %d item(s) to %s",
                                result.reason, remaining, result.scheduled_for)
                results.extend(
                    OutboundResult(
                        success=False,
                        error=f"Batch halted: {result.error}",
                        reason=result.reason,
                        scheduled_for=result.scheduled_for,
                    )
                    for _ in range(remaining)
                )
                break

            if result.success and index < len(items) - 1:
                delay = next_delay()
                if delay > 0:
                    logger.debug("Waiting %.0fs before next action", delay)
                    await self.sleep(delay)
        return results


def main():
    from rich.console import Console
    from rich.table import Table

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    parser = argparse.ArgumentParser(description="Send approved outreach through admission control")
    parser.add_argument("--emails", type=Path, help="JSON list of emails (to, subject, body, outreach_id)")
    parser.add_argument("--connections", type=Path, help="JSON list of connection requests")
    parser.add_argument("--no-jitter", action="store_true", help="Wait only the configured base delay between network actions")
    args = parser.parse_args()

    if not args.emails and not args.connections:
        parser.print_help()
        return

    sender = OutboundSender(delay_policy=JitterDelayPolicy(max_jitter_seconds=0) if args.no_jitter else None)

    async def run() -> List[OutboundResult]:
        if args.emails:
            items = [OutreachEmail(**row) for row in json.loads(args.emails.read_text(encoding="utf-8"))]
            return await sender.batch_send_emails(items)
        items = [ConnectionRequest(**row) for row in json.loads(args.connections.read_text(encoding="utf-8"))]
        return await sender.batch_send_connections(items)

    results = asyncio.run(run())

    table = Table(title="Outbound results")
    for column in ("#", "Success", "Id", "Error", "Scheduled for"):
        table.add_column(column)
    for number, result in enumerate(results, 1):
        table.add_row(
            str(number),
            "[green]yes[/green]" if result.success else "[red]no[/red]",
            result.message_id or result.action_id or "",
            result.error or "",
            result.scheduled_for or "",
        )
    Console().print(table)


if __name__ == "__main__":
    main()
