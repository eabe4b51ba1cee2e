#!/usr/bin/env python3
"""
Admission controller tests: warmup ramp, daily caps, sending windows,
inter-action delay and per-channel serialization.
"""

import asyncio
from datetime import datetime, timedelta

import pytest
import pytz

from core.admission_controller import (
    ActionKind,
    AdmissionController,
    Channel,
    DenialReason,
    SendingWindow,
    warmup_limit,
)
from core.errors import ConfigurationError
from core.pacing import FixedClock


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 1, 20, 10, 0))


@pytest.fixture
def controller(store, clock):
    return AdmissionController(store=store, clock=clock)


def _record(controller, channel, kind, times):
    for _ in range(times):
        controller.record_action(channel, kind)


@pytest.mark.parametrize("age,expected", [
    (0, 10), (6, 10), (7, 25), (13, 25), (14, 50), (20, 50), (21, 100), (400, 100),
])
def test_warmup_limit_steps(age, expected):
    assert warmup_limit(age) == expected


def test_channel_config_seeded_from_defaults(controller, store):
    config = controller.get_config(Channel.PROFESSIONAL_NETWORK)

    assert config.daily_limit == 25
    assert config.action_delay_minutes == 120
    assert config.warmup_enabled is False
    assert config.action_limits == {"connection_request": 15, "inmail": 10}
    assert store.get(AdmissionController.CONFIG_NS, "professional_network")["daily_limit"] == 25


def test_update_config_persists_and_rejects_unknown_fields(controller):
    controller.update_config(Channel.EMAIL, daily_limit=5, sending_window={"end": "18:00"})

    config = controller.get_config(Channel.EMAIL)
    assert config.daily_limit == 5
    assert config.sending_window.start == "09:00"
    assert config.sending_window.end == "18:00"

    with pytest.raises(ConfigurationError):
        controller.update_config(Channel.EMAIL, speed="fast")


def test_daily_cap_allows_below_limit_and_denies_at_limit(controller):
    # New account: min(warmup 10, daily 50)
    assert controller.effective_limit(Channel.EMAIL) == 10

    _record(controller, Channel.EMAIL, ActionKind.EMAIL, 9)
    assert controller.check_admission(Channel.EMAIL, ActionKind.EMAIL).allowed

    controller.record_action(Channel.EMAIL, ActionKind.EMAIL)
    decision = controller.check_admission(Channel.EMAIL, ActionKind.EMAIL)

    assert not decision.allowed
    assert decision.reason == DenialReason.DAILY_LIMIT_REACHED.value
    assert decision.retry_at == pytz.UTC.localize(datetime(2026, 1, 21, 9, 0))


def test_cap_without_warmup_uses_daily_limit(controller):
    controller.update_config(Channel.EMAIL, warmup_enabled=False, daily_limit=3)

    _record(controller, Channel.EMAIL, ActionKind.EMAIL, 2)
    assert controller.check_admission(Channel.EMAIL, ActionKind.EMAIL).allowed

    controller.record_action(Channel.EMAIL, ActionKind.EMAIL)
    assert controller.check_admission(Channel.EMAIL, ActionKind.EMAIL).reason == "daily_limit_reached"


def test_account_age_counts_from_first_action(controller, clock):
    controller.record_action(Channel.EMAIL, ActionKind.EMAIL)
    first = controller.first_action_date(Channel.EMAIL)

    clock.advance(days=7)
    controller.record_action(Channel.EMAIL, ActionKind.EMAIL)

    assert controller.first_action_date(Channel.EMAIL) == first
    assert controller.account_age_days(Channel.EMAIL) == 7
    assert controller.effective_limit(Channel.EMAIL) == 25


def test_counters_reset_at_day_boundary(controller, clock):
    _record(controller, Channel.EMAIL, ActionKind.EMAIL, 10)
    assert not controller.check_admission(Channel.EMAIL, ActionKind.EMAIL).allowed

    clock.set(datetime(2026, 1, 21, 9, 0))

    assert controller.sent_today(Channel.EMAIL) == 0
    assert controller.check_admission(Channel.EMAIL, ActionKind.EMAIL).allowed


def test_day_key_follows_configured_timezone(store):
    # 20:00 in New York is already the next day in UTC.
    clock = FixedClock(datetime(2026, 1, 20, 20, 0), "America/New_York")
    controller = AdmissionController(store=store, clock=clock)

    controller.record_action(Channel.EMAIL, ActionKind.EMAIL)

    usage = controller.usage(Channel.EMAIL)
    assert usage["date"] == "2026-01-20"
    assert usage["sent_today"] == 1


@pytest.mark.parametrize("hour,minute,allowed", [
    (9, 0, True),
    (13, 30, True),
    (17, 0, True),
    (8, 59, False),
    (17, 1, False),
])
def test_sending_window_is_inclusive(controller, clock, hour, minute, allowed):
    clock.set(datetime(2026, 1, 20, hour, minute))
    assert controller.check_admission(Channel.EMAIL, ActionKind.EMAIL).allowed is allowed


def test_outside_window_retry_at_today_or_tomorrow(controller, clock):
    clock.set(datetime(2026, 1, 20, 7, 15))
    early = controller.check_admission(Channel.EMAIL, ActionKind.EMAIL)
    assert early.reason == DenialReason.OUTSIDE_WINDOW.value
    assert early.retry_at == pytz.UTC.localize(datetime(2026, 1, 20, 9, 0))

    clock.set(datetime(2026, 1, 20, 18, 0))
    late = controller.check_admission(Channel.EMAIL, ActionKind.EMAIL)
    assert late.reason == DenialReason.OUTSIDE_WINDOW.value
    assert late.retry_at == pytz.UTC.localize(datetime(2026, 1, 21, 9, 0))


def test_window_wrapping_midnight(controller, clock):
    controller.update_config(Channel.EMAIL, sending_window={"start": "22:00", "end": "06:00"})

    for hour in (22, 23, 0, 3, 6):
        clock.set(datetime(2026, 1, 20, hour, 0))
        assert controller.check_admission(Channel.EMAIL, ActionKind.EMAIL).allowed, hour

    clock.set(datetime(2026, 1, 20, 12, 0))
    decision = controller.check_admission(Channel.EMAIL, ActionKind.EMAIL)
    assert decision.reason == DenialReason.OUTSIDE_WINDOW.value
    assert decision.retry_at == pytz.UTC.localize(datetime(2026, 1, 20, 22, 0))


def test_daily_limit_on_wrapping_window_retries_at_midnight(controller, clock):
    controller.update_config(
        Channel.EMAIL, warmup_enabled=False, daily_limit=2, sending_window={"start": "22:00", "end": "06:00"}
    )
    clock.set(datetime(2026, 1, 20, 23, 0))
    _record(controller, Channel.EMAIL, ActionKind.EMAIL, 2)

    decision = controller.check_admission(Channel.EMAIL, ActionKind.EMAIL)

    assert decision.reason == DenialReason.DAILY_LIMIT_REACHED.value
    assert decision.retry_at == pytz.UTC.localize(datetime(2026, 1, 21, 0, 0))

    clock.set(decision.retry_at)
    assert controller.check_admission(Channel.EMAIL, ActionKind.EMAIL).allowed


def test_sending_window_rejects_bad_times():
    with pytest.raises(ConfigurationError):
        SendingWindow(start="25:00", end="17:00")
    assert SendingWindow("22:00", "06:00").wraps_midnight


def test_delay_not_met_retry_at_is_last_action_plus_delay(controller, clock):
    controller.record_action(Channel.PROFESSIONAL_NETWORK, ActionKind.CONNECTION_REQUEST)
    last = clock.now()

    clock.advance(minutes=30)
    decision = controller.check_admission(Channel.PROFESSIONAL_NETWORK, ActionKind.CONNECTION_REQUEST)

    assert not decision.allowed
    assert decision.reason == DenialReason.DELAY_NOT_MET.value
    assert decision.retry_at == last + timedelta(minutes=120)

    clock.advance(minutes=90)
    assert controller.check_admission(Channel.PROFESSIONAL_NETWORK, ActionKind.CONNECTION_REQUEST).allowed


def test_delay_is_channel_global(controller, clock):
    controller.record_action(Channel.PROFESSIONAL_NETWORK, ActionKind.INMAIL)
    clock.advance(minutes=5)

    decision = controller.check_admission(Channel.PROFESSIONAL_NETWORK, ActionKind.CONNECTION_REQUEST)
    assert decision.reason == DenialReason.DELAY_NOT_MET.value


def test_email_channel_has_no_delay(controller):
    controller.record_action(Channel.EMAIL, ActionKind.EMAIL)
    assert controller.check_admission(Channel.EMAIL, ActionKind.EMAIL).allowed


def test_engagement_paces_but_does_not_count(controller, clock):
    controller.record_action(Channel.PROFESSIONAL_NETWORK, ActionKind.ENGAGEMENT)

    assert controller.sent_today(Channel.PROFESSIONAL_NETWORK) == 0
    decision = controller.check_admission(Channel.PROFESSIONAL_NETWORK, ActionKind.CONNECTION_REQUEST)
    assert decision.reason == DenialReason.DELAY_NOT_MET.value


def test_per_kind_cap(controller):
    controller.update_config(Channel.PROFESSIONAL_NETWORK, action_delay_minutes=0)
    _record(controller, Channel.PROFESSIONAL_NETWORK, ActionKind.CONNECTION_REQUEST, 15)

    connection = controller.check_admission(Channel.PROFESSIONAL_NETWORK, ActionKind.CONNECTION_REQUEST)
    inmail = controller.check_admission(Channel.PROFESSIONAL_NETWORK, ActionKind.INMAIL)

    assert connection.reason == DenialReason.DAILY_LIMIT_REACHED.value
    assert inmail.allowed
    assert controller.sent_today(Channel.PROFESSIONAL_NETWORK) == 15


def test_last_action_never_moves_backwards(controller, clock):
    controller.record_action(Channel.PROFESSIONAL_NETWORK, ActionKind.INMAIL)
    latest = clock.now()

    clock.set(datetime(2026, 1, 20, 9, 30))
    controller.record_action(Channel.PROFESSIONAL_NETWORK, ActionKind.INMAIL)

    assert controller.last_action_at(Channel.PROFESSIONAL_NETWORK) == latest


def test_next_available_time(controller, clock):
    assert controller.next_available_time(Channel.PROFESSIONAL_NETWORK) == clock.now()

    controller.record_action(Channel.PROFESSIONAL_NETWORK, ActionKind.CONNECTION_REQUEST)
    expected = clock.now() + timedelta(hours=2)
    assert controller.next_available_time(Channel.PROFESSIONAL_NETWORK) == expected


@pytest.mark.asyncio
async def test_hold_serializes_check_and_record(controller):
    controller.update_config(Channel.EMAIL, warmup_enabled=False, daily_limit=1)
    outcomes = []

    async def attempt():
        async with controller.hold(Channel.EMAIL):
            decision = controller.check_admission(Channel.EMAIL, ActionKind.EMAIL)
            await asyncio.sleep(0)
            if decision.allowed:
                controller.record_action(Channel.EMAIL, ActionKind.EMAIL)
            outcomes.append(decision.allowed)

    await asyncio.gather(attempt(), attempt(), attempt())

    assert outcomes.count(True) == 1
    assert controller.sent_today(Channel.EMAIL) == 1


def test_usage_report(controller):
    _record(controller, Channel.PROFESSIONAL_NETWORK, ActionKind.INMAIL, 2)

    usage = controller.get_current_usage()

    network = usage["professional_network"]
    assert network["sent_today"] == 2
    assert network["remaining"] == 23
    assert network["by_kind"]["inmail"] == {"sent": 2, "limit": 10}
    assert usage["email"]["effective_limit"] == 10
