"""
Operator alerts for the webhook and outbound pipelines.

Raised for unhandled event types, handler failures and misconfiguration.
Alerts are kept in the state store so the health endpoint can report them,
and optionally echoed to stderr as a rich panel.
"""

import sys
import uuid
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from core.state_store import StateStore, get_state_store

ALERTS_NS = "alerts"


class AlertLevel(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class Alert:
    level: str
    title: str
    detail: str
    component: str = "system"
    context: dict[str, Any] = field(default_factory=dict)
    alert_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    raised_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


console = Console(force_terminal=sys.platform != "win32", stderr=True)

PANEL_STYLES = {
    AlertLevel.INFO.value: "blue",
    AlertLevel.WARNING.value: "yellow",
    AlertLevel.CRITICAL.value: "red bold",
}


def _echo(alert: Alert) -> None:
    style = PANEL_STYLES.get(alert.level, "white")
    body = Text(alert.detail)
    for key, value in alert.context.items():
        body.append(f"\n{key}: ", style="dim")
        body.append(str(value))
    body.append(f"\n{alert.component} @ {alert.raised_at}", style="dim")
    console.print(Panel(body, title=Text(f"{alert.level.upper()} {alert.title}", style=style),
                        border_style=style.split()[0]))


def raise_alert(
    level: AlertLevel | str,
    title: str,
    detail: str,
    context: Optional[dict[str, Any]] = None,
    component: str = "system",
    echo: bool = True,
    store: Optional[StateStore] = None,
) -> Alert:
    """
    Record an operator alert.

    Args:
        level: info, warning or critical
        title: Short headline
        detail: What happened
        context: Keys that identify the affected event or channel
        component: Module that raised the alert
        echo: Also print the alert to stderr
    """
    alert = Alert(
        level=AlertLevel(level).value,
        title=title,
        detail=detail,
        component=component,
        context=context or {},
    )
    (store or get_state_store()).put(ALERTS_NS, alert.alert_id, alert.to_dict())
    if echo:
        _echo(alert)
    return alert


def get_alerts(level: Optional[str] = None, limit: int = 50, store: Optional[StateStore] = None) -> list[Alert]:
    """Most recent alerts first, optionally filtered by level."""
    records = (store or get_state_store()).list_documents(ALERTS_NS)
    if level:
        records = [r for r in records if r.get("level") == level]
    records.sort(key=lambda r: r.get("raised_at", ""), reverse=True)
    return [Alert(**r) for r in records[:limit]]


def alert_counts(store: Optional[StateStore] = None) -> dict[str, int]:
    counts = {level.value: 0 for level in AlertLevel}
    for record in (store or get_state_store()).list_documents(ALERTS_NS):
        level = record.get("level", AlertLevel.INFO.value)
        counts[level] = counts.get(level, 0) + 1
    return counts


def send_critical(title: str, detail: str, **kwargs) -> Alert:
    return raise_alert(AlertLevel.CRITICAL, title, detail, **kwargs)


def send_warning(title: str, detail: str, **kwargs) -> Alert:
    return raise_alert(AlertLevel.WARNING, title, detail, **kwargs)


def send_info(title: str, detail: str, **kwargs) -> Alert:
    return raise_alert(AlertLevel.INFO, title, detail, **kwargs)
