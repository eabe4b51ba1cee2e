"""
Configuration loader for outbound pacing and webhook rules.
"""

from pathlib import Path
from typing import Any, Optional

import yaml


CONFIG_PATH = Path(__file__).parent.parent / "config" / "outreach_rules.yaml"

_cached_rules: Optional[dict[str, Any]] = None


def load_outreach_rules(force_reload: bool = False) -> dict[str, Any]:
    """
    Load and parse outreach_rules.yaml configuration.

    Args:
        force_reload: If True, bypass cache and reload from disk

    Returns:
        Parsed configuration dictionary
    """
    global _cached_rules

    if _cached_rules is not None and not force_reload:
        return _cached_rules

    with open(CONFIG_PATH, "r", encoding="utf-8") as f:
        _cached_rules = yaml.safe_load(f) or {}

    return _cached_rules


def get_channel_defaults(channel: str) -> dict[str, Any]:
    """
    Get the seed configuration for a channel.

    Args:
        channel: One of: email, professional_network

    Returns:
        Dict with daily_limit, sending_window, action_delay_minutes,
        warmup_enabled and optional action_limits
    """
    rules = load_outreach_rules()
    return dict(rules.get("channels", {}).get(channel, {}))


def get_warmup_schedule() -> list[dict[str, Any]]:
    """Ordered warmup steps, each with limit and optional max_age_days."""
    rules = load_outreach_rules()
    return rules.get("warmup_schedule") or [{"limit": 100}]


def get_provider_rules() -> dict[str, dict[str, Any]]:
    """
    Get webhook verification rules keyed by provider name.

    Returns:
        Dict of provider -> {scheme, secret_env, signature_header}
    """
    rules = load_outreach_rules()
    return rules.get("webhooks", {}).get("providers", {})


def get_webhook_settings() -> dict[str, Any]:
    rules = load_outreach_rules()
    return rules.get("webhooks", {})


def get_admission_settings() -> dict[str, Any]:
    rules = load_outreach_rules()
    return rules.get("admission", {})


def get_booking_settings() -> dict[str, Any]:
    rules = load_outreach_rules()
    return rules.get("booking", {})


def get_agent_settings() -> dict[str, Any]:
    """
    Get Agent Service settings.

    Returns:
        Dict with timeout_seconds and roles (research, transcript, reply,
        pre_meeting_email)
    """
    rules = load_outreach_rules()
    return rules.get("agent_service", {})


def get_agent_role(purpose: str, default: str = "") -> str:
    return get_agent_settings().get("roles", {}).get(purpose, default)


def get_notification_settings() -> dict[str, Any]:
    """
    Get notification settings.

    Returns:
        Dict with keys: approval_channel, digest_time, enabled, preview_chars
    """
    rules = load_outreach_rules()
    return rules.get("notifications", {})
