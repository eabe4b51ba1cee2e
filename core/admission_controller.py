#!/usr/bin/env python3
"""
Admission Controller
====================

Decides, for every outbound action, whether it may proceed right now.

Checks, in order:
1. Daily cap - sent_count(channel, today) < effective limit, where the
   effective limit is min(warmup_limit(account_age), daily_limit) for
   channels with warmup enabled. Optional per-action-kind caps apply too.
2. Sending window - local minute-of-day inside [start, end], inclusive.
   Windows whose start is after their end wrap past midnight.
3. Inter-action delay - for channels with an action delay, the time since
   the channel's last recorded action.

Counters live in the StateStore, keyed by (channel, local date), and are
incremented only by record_action() after the external call succeeds.
Use hold(channel) around check -> send -> record so concurrent senders on
the same channel serialize.

Usage:
    python -m core.admission_controller --usage
    python -m core.admission_controller --check professional_network --kind connection_request
"""

import asyncio
import json
import logging
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, time as dt_time, timedelta
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from core.config import get_admission_settings, get_channel_defaults, get_warmup_schedule
from core.errors import ConfigurationError
from core.pacing import Clock, SystemClock
from core.state_store import StateStore, get_state_store

logger = logging.getLogger("admission_controller")


class Channel(str, Enum):
    EMAIL = "email"
    PROFESSIONAL_NETWORK = "professional_network"


class ActionKind(str, Enum):
    EMAIL = "email"
    CONNECTION_REQUEST = "connection_request"
    INMAIL = "inmail"
    ENGAGEMENT = "engagement"


class DenialReason(str, Enum):
    DAILY_LIMIT_REACHED = "daily_limit_reached"
    OUTSIDE_WINDOW = "outside_window"
    DELAY_NOT_MET = "delay_not_met"


# Likes and comments pace against the delay but never consume the daily cap.
NON_COUNTING_KINDS = {ActionKind.ENGAGEMENT}


def _parse_hhmm(value: str) -> int:
    try:
        hours, minutes = str(value).strip().split(":", 1)
        parsed = int(hours) * 60 + int(minutes)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid time of day: {value!r}", setting="sending_window") from exc
    if not 0 <= parsed < 24 * 60:
        raise ConfigurationError(f"Time of day out of range: {value!r}", setting="sending_window")
    return parsed


@dataclass
class SendingWindow:
    start: str = "09:00"
    end: str = "17:00"

    def __post_init__(self):
        self.start_minute = _parse_hhmm(self.start)
        self.end_minute = _parse_hhmm(self.end)

    @property
    def wraps_midnight(self) -> bool:
        return self.start_minute > self.end_minute

    def contains(self, minute_of_day: int) -> bool:
        if self.wraps_midnight:
            return minute_of_day >= self.start_minute or minute_of_day <= self.end_minute
        return self.start_minute <= minute_of_day <= self.end_minute

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start, "end": self.end}


@dataclass
class ChannelConfig:
    channel: str
    daily_limit: int
    sending_window: SendingWindow = field(default_factory=SendingWindow)
    action_delay_minutes: int = 0
    warmup_enabled: bool = False
    action_limits: Dict[str, int] = field(default_factory=dict)

    def __post_init__(self):
        if self.daily_limit < 0:
            raise ConfigurationError("daily_limit must be >= 0", setting="daily_limit")
        if self.action_delay_minutes < 0:
            raise ConfigurationError("action_delay_minutes must be >= 0", setting="action_delay_minutes")

    @property
    def action_delay(self) -> timedelta:
        return timedelta(minutes=self.action_delay_minutes)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["sending_window"] = self.sending_window.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChannelConfig":
        window = data.get("sending_window") or {}
        return cls(
            channel=data["channel"],
            daily_limit=int(data.get("daily_limit", 0)),
            sending_window=SendingWindow(
                start=window.get("start", "09:00"), end=window.get("end", "17:00")
            ),
            action_delay_minutes=int(data.get("action_delay_minutes", 0)),
            warmup_enabled=bool(data.get("warmup_enabled", False)),
            action_limits={k: int(v) for k, v in (data.get("action_limits") or {}).items()},
        )

    @classmethod
    def from_defaults(cls, channel: str) -> "ChannelConfig":
        defaults = get_channel_defaults(channel)
        if not defaults:
            raise ConfigurationError(f"No defaults configured for channel {channel}", setting="channels")
        return cls.from_dict({**defaults, "channel": channel})


@dataclass
class AdmissionDecision:
    allowed: bool
    reason: Optional[str] = None
    retry_at: Optional[datetime] = None
    channel: str = ""
    action_kind: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "retry_at": self.retry_at.isoformat() if self.retry_at else None,
            "channel": self.channel,
            "action_kind": self.action_kind,
        }


def warmup_limit(age_days: int, schedule: Optional[List[Dict[str, Any]]] = None) -> int:
    """Daily cap for a sending account that is age_days old."""
    steps = schedule if schedule is not None else get_warmup_schedule()
    for step in steps:
        bound = step.get("max_age_days")
        if bound is None or age_days < int(bound):
            return int(step["limit"])
    return int(steps[-1]["limit"])


def _channel_value(channel) -> str:
    return channel.value if isinstance(channel, Channel) else Channel(channel).value


def _kind_value(kind) -> str:
    return kind.value if isinstance(kind, ActionKind) else ActionKind(kind).value


class AdmissionController:
    """Per-channel caps, warmup, sending windows and inter-action spacing."""

    CONFIG_NS = "admission_config"
    COUNTER_NS = "admission_counts"
    FIRST_ACTION_NS = "admission_first_action"
    LAST_ACTION_NS = "admission_last_action"

    def __init__(self, store: Optional[StateStore] = None, clock: Optional[Clock] = None):
        self.store = store or get_state_store()
        self.clock = clock or SystemClock()
        settings = get_admission_settings()
        self.lock_ttl_seconds = int(settings.get("lock_ttl_seconds", 120))
        self.lock_poll_seconds = float(settings.get("lock_poll_seconds", 0.1))
        self._record_lock = threading.Lock()
        self._channel_locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_config(self, channel) -> ChannelConfig:
        channel = _channel_value(channel)
        stored = self.store.get(self.CONFIG_NS, channel)
        if stored:
            return ChannelConfig.from_dict(stored)

        config = ChannelConfig.from_defaults(channel)
        if not self.store.put_if_absent(self.CONFIG_NS, channel, config.to_dict()):
            return ChannelConfig.from_dict(self.store.get(self.CONFIG_NS, channel))
        logger.info("Created default admission config for %s", channel)
        return config

    def update_config(self, channel, **changes) -> ChannelConfig:
        channel = _channel_value(channel)
        current = self.get_config(channel).to_dict()
        unknown = set(changes) - set(current)
        if unknown:
            raise ConfigurationError(f"Unknown config fields: {sorted(unknown)}", setting=",".join(sorted(unknown)))

        if "sending_window" in changes:
            current["sending_window"] = {**current["sending_window"], **changes.pop("sending_window")}
        current.update(changes)
        config = ChannelConfig.from_dict(current)
        self.store.put(self.CONFIG_NS, channel, config.to_dict())
        logger.info("Updated admission config for %s: %s", channel, config.to_dict())
        return config

    # ------------------------------------------------------------------
    # State reads
    # ------------------------------------------------------------------

    def _today(self, now: Optional[datetime] = None) -> date:
        return (now or self.clock.now()).astimezone(self.clock.tz).date()

    def _counter_key(self, channel: str, day: date, kind: Optional[str] = None) -> str:
        key = f"{channel}:{day.isoformat()}"
        return f"{key}:{kind}" if kind else key

    def sent_today(self, channel, action_kind=None, now: Optional[datetime] = None) -> int:
        channel = _channel_value(channel)
        kind = _kind_value(action_kind) if action_kind else None
        return self.store.get_counter(self.COUNTER_NS, self._counter_key(channel, self._today(now), kind))

    def first_action_date(self, channel) -> Optional[date]:
        doc = self.store.get(self.FIRST_ACTION_NS, _channel_value(channel))
        return date.fromisoformat(doc["date"]) if doc else None

    def last_action_at(self, channel) -> Optional[datetime]:
        doc = self.store.get(self.LAST_ACTION_NS, _channel_value(channel))
        if not doc:
            return None
        return datetime.fromisoformat(doc["at"]).astimezone(self.clock.tz)

    def account_age_days(self, channel, now: Optional[datetime] = None) -> int:
        first = self.first_action_date(channel)
        if first is None:
            return 0
        return max(0, (self._today(now) - first).days)

    def effective_limit(self, channel, now: Optional[datetime] = None) -> int:
        config = self.get_config(channel)
        if not config.warmup_enabled:
            return config.daily_limit
        return min(warmup_limit(self.account_age_days(channel, now)), config.daily_limit)

    def _window_start(self, config: ChannelConfig, day: date) -> datetime:
        start = dt_time(config.sending_window.start_minute // 60, config.sending_window.start_minute % 60)
        return self.clock.tz.localize(datetime.combine(day, start))

    def _next_day_open(self, config: ChannelConfig, today: date) -> datetime:
        """First instant of tomorrow inside the window; midnight when the window wraps."""
        tomorrow = today + timedelta(days=1)
        if config.sending_window.wraps_midnight:
            return self.clock.tz.localize(datetime.combine(tomorrow, dt_time(0, 0)))
        return self._window_start(config, tomorrow)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def check_admission(self, channel, action_kind) -> AdmissionDecision:
        channel = _channel_value(channel)
        kind = _kind_value(action_kind)
        config = self.get_config(channel)
        now = self.clock.now().astimezone(self.clock.tz)
        today = now.date()
        tomorrow_start = self._window_start(config, today + timedelta(days=1))
        next_day_open = self._next_day_open(config, today)

        def deny(reason: DenialReason, retry_at: datetime) -> AdmissionDecision:
            logger.info(
                "Admission denied | channel=%s kind=%s reason=%s retry_at=%s",
                channel, kind, reason.value, retry_at.isoformat(),
            )
            return AdmissionDecision(False, reason.value, retry_at, channel, kind)

        if ActionKind(kind) not in NON_COUNTING_KINDS:
            if self.sent_today(channel, now=now) >= self.effective_limit(channel, now):
                return deny(DenialReason.DAILY_LIMIT_REACHED, next_day_open)
            kind_limit = config.action_limits.get(kind)
            if kind_limit is not None and self.sent_today(channel, kind, now=now) >= kind_limit:
                return deny(DenialReason.DAILY_LIMIT_REACHED, next_day_open)

        minute_of_day = now.hour * 60 + now.minute
        if not config.sending_window.contains(minute_of_day):
            if minute_of_day < config.sending_window.start_minute:
                return deny(DenialReason.OUTSIDE_WINDOW, self._window_start(config, today))
            return deny(DenialReason.OUTSIDE_WINDOW, tomorrow_start)

        if config.action_delay_minutes > 0:
            last = self.last_action_at(channel)
            if last is not None and now - last < config.action_delay:
                return deny(DenialReason.DELAY_NOT_MET, last + config.action_delay)

        return AdmissionDecision(True, channel=channel, action_kind=kind)

    def record_action(self, channel, action_kind) -> None:
        """Account for an action whose external call already succeeded."""
        channel = _channel_value(channel)
        kind = _kind_value(action_kind)
        now = self.clock.now().astimezone(self.clock.tz)
        today = now.date()

        self.store.put_if_absent(self.FIRST_ACTION_NS, channel, {"date": today.isoformat()})

        if ActionKind(kind) not in NON_COUNTING_KINDS:
            total = self.store.incr(self.COUNTER_NS, self._counter_key(channel, today))
            self.store.incr(self.COUNTER_NS, self._counter_key(channel, today, kind))
            logger.info("Recorded %s on %s (%d today)", kind, channel, total)

        with self._record_lock:
            last = self.last_action_at(channel)
            if last is None or now > last:
                self.store.put(self.LAST_ACTION_NS, channel, {"at": now.isoformat()})

    def next_available_time(self, channel) -> datetime:
        """Earliest instant the inter-action delay allows another action."""
        config = self.get_config(channel)
        now = self.clock.now().astimezone(self.clock.tz)
        last = self.last_action_at(channel)
        if last is None or config.action_delay_minutes <= 0:
            return now
        return max(now, last + config.action_delay)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def hold(self, channel) -> AsyncIterator["AdmissionController"]:
        """Serialize check -> send -> record for one channel."""
        channel = _channel_value(channel)
        local_lock = self._channel_locks.setdefault(channel, asyncio.Lock())
        async with local_lock:
            lock_name = f"admission:{channel}"
            token = self.store.acquire_lock(lock_name, ttl_seconds=self.lock_ttl_seconds)
            while token is None:
                await asyncio.sleep(self.lock_poll_seconds)
                token = self.store.acquire_lock(lock_name, ttl_seconds=self.lock_ttl_seconds)
            try:
                yield self
            finally:
                self.store.release_lock(lock_name, token)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def usage(self, channel) -> Dict[str, Any]:
        channel = _channel_value(channel)
        config = self.get_config(channel)
        limit = self.effective_limit(channel)
        sent = self.sent_today(channel)
        last = self.last_action_at(channel)
        return {
            "channel": channel,
            "date": self._today().isoformat(),
            "sent_today": sent,
            "effective_limit": limit,
            "remaining": max(0, limit - sent),
            "by_kind": {
                kind: {"sent": self.sent_today(channel, kind), "limit": cap}
                for kind, cap in config.action_limits.items()
            },
            "account_age_days": self.account_age_days(channel),
            "warmup_enabled": config.warmup_enabled,
            "sending_window": config.sending_window.to_dict(),
            "last_action_at": last.isoformat() if last else None,
            "next_available_at": self.next_available_time(channel).isoformat(),
        }

    def get_current_usage(self) -> Dict[str, Dict[str, Any]]:
        return {c.value: self.usage(c) for c in Channel}


_controller_instance: Optional[AdmissionController] = None
_controller_lock = threading.Lock()


def get_admission_controller() -> AdmissionController:
    """Get thread-safe singleton instance of AdmissionController."""
    global _controller_instance
    if _controller_instance is None:
        with _controller_lock:
            if _controller_instance is None:
                _controller_instance = AdmissionController()
    return _controller_instance


def main():
    """CLI for admission state."""
    import argparse

    from dotenv import load_dotenv
    from rich.console import Console
    from rich.table import Table

    load_dotenv()

    parser = argparse.ArgumentParser(description="Outbound Admission Controller")
    parser.add_argument("--usage", action="store_true", help="Show today's usage per channel")
    parser.add_argument("--check", choices=[c.value for c in Channel], help="Check admission for a channel")
    parser.add_argument("--kind", choices=[k.value for k in ActionKind], default=None)
    parser.add_argument("--json", action="store_true", help="Print raw JSON")

    args = parser.parse_args()
    controller = get_admission_controller()
    console = Console()

    if args.usage:
        usage = controller.get_current_usage()
        if args.json:
            print(json.dumps(usage, indent=2))
            return
        table = Table(title="Outbound Usage")
        for column in ("Channel", "Sent", "Limit", "Remaining", "Age (days)", "Window", "Next available"):
            table.add_column(column)
        for row in usage.values():
            window = row["sending_window"]
            table.add_row(
                row["channel"], str(row["sent_today"]), str(row["effective_limit"]),
                str(row["remaining"]), str(row["account_age_days"]),
                f"{window['start']}-{window['end']}", row["next_available_at"],
            )
        console.print(table)
    elif args.check:
        kind = args.kind or (ActionKind.EMAIL.value if args.check == Channel.EMAIL.value else ActionKind.CONNECTION_REQUEST.value)
        decision = controller.check_admission(args.check, kind)
        print(json.dumps(decision.to_dict(), indent=2))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
