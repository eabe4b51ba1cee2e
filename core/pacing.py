"""
Clock and inter-action delay policies for outbound pacing.

The admission controller never reads the wall clock directly; it is handed a
Clock so day boundaries and sending windows can be evaluated in a configured
timezone and driven deterministically in tests. Delay policies decide how
long a batch sender waits after a successful action.
"""

import asyncio
import os
import random
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Protocol, runtime_checkable

import pytz


DEFAULT_TIMEZONE = "UTC"


@runtime_checkable
class Clock(Protocol):
    """Source of the current time plus the timezone used for day keys."""

    @property
    def tz(self) -> pytz.BaseTzInfo: ...

    def now(self) -> datetime: ...


def resolve_timezone(name: Optional[str] = None) -> pytz.BaseTzInfo:
    tz_name = (name or os.getenv("ADMISSION_TIMEZONE") or DEFAULT_TIMEZONE).strip()
    return pytz.timezone(tz_name)


class SystemClock:
    """Wall clock, returned as an aware datetime in the configured zone."""

    def __init__(self, tz_name: Optional[str] = None):
        self._tz = resolve_timezone(tz_name)

    @property
    def tz(self) -> pytz.BaseTzInfo:
        return self._tz

    def now(self) -> datetime:
        return datetime.now(timezone.utc).astimezone(self._tz)


class FixedClock:
    """Manually advanced clock. Naive datetimes are read as local wall time."""

    def __init__(self, current: datetime, tz_name: str = DEFAULT_TIMEZONE):
        self._tz = pytz.timezone(tz_name)
        self._current = self._localize(current)

    @property
    def tz(self) -> pytz.BaseTzInfo:
        return self._tz

    def _localize(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return self._tz.localize(value)
        return value.astimezone(self._tz)

    def now(self) -> datetime:
        return self._current

    def set(self, value: datetime) -> None:
        self._current = self._localize(value)

    def advance(self, **delta) -> datetime:
        self._current = self._tz.normalize(self._current + timedelta(**delta))
        return self._current


# ---------------------------------------------------------------------------
# Delay policies
# ---------------------------------------------------------------------------

class DelayPolicy(Protocol):
    def next_delay(self, channel: str, base_seconds: float) -> float: ...


class JitterDelayPolicy:
    """Base delay plus a uniform random jitter in [0, max_jitter_seconds]."""

    def __init__(self, max_jitter_seconds: float = 30 * 60, rng: Optional[random.Random] = None):
        self.max_jitter_seconds = max(0.0, float(max_jitter_seconds))
        self._rng = rng or random.Random()

    def next_delay(self, channel: str, base_seconds: float) -> float:
        jitter = self._rng.uniform(0, self.max_jitter_seconds) if self.max_jitter_seconds else 0.0
        return max(0.0, base_seconds) + jitter


SleepFn = Callable[[float], Awaitable[None]]


async def default_sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)
