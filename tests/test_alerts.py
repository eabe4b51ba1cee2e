"""Operator alerts and the daily digest CLI entry point."""

import asyncio
from datetime import date

from core.alerts import AlertLevel, alert_counts, get_alerts, send_critical, send_warning
from core.notifications import NotificationManager
from core.state_store import SENT_OUTREACH_NS, get_state_store
from execution.send_daily_digest import run


def test_alerts_are_stored_and_filtered(store):
    send_warning("Unhandled webhook event", "No handler", context={"key": "calendly:x"}, echo=False, store=store)
    critical = send_critical("Webhook processing error", "boom", component="event_router", echo=False, store=store)

    assert len(get_alerts(store=store)) == 2
    only_critical = get_alerts(level=AlertLevel.CRITICAL.value, store=store)
    assert [a.alert_id for a in only_critical] == [critical.alert_id]
    assert only_critical[0].component == "event_router"
    assert alert_counts(store=store) == {"info": 0, "warning": 1, "critical": 1}


def test_echoed_alert_prints_panel(store, capsys):
    send_warning("Slack secret missing", "SLACK_SIGNING_SECRET not set", store=store)

    assert "Slack secret missing" in capsys.readouterr().err


def test_digest_dry_run_does_not_notify():
    store = get_state_store()
    store.put(SENT_OUTREACH_NS, "m1", {"sent_at": "2026-01-20T10:00:00+00:00"})

    stats = asyncio.run(run(date(2026, 1, 20), dry_run=True))

    assert stats["outreach_sent"] == 1
    assert NotificationManager(store=store).history() == []
