"""
Core modules for outbound admission control and webhook event routing.
"""

from core.event_log import log_event, EventType
from core.alerts import (
    Alert,
    AlertLevel,
    alert_counts,
    get_alerts,
    raise_alert,
    send_critical,
    send_info,
    send_warning,
)
