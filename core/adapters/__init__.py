# Core Adapters Package
# Swappable backends for outbound channels.
#
# Available adapters:
# - EmailSendingAdapter: Email sending (Gmail API, mock)
# - ProfessionalNetworkAdapter: Connection requests, InMail, engagement (Agent Service, mock)

from core.adapters.email_sending import (  # noqa: F401
    EmailSendingAdapter,
    EmailBackend,
    DeliveryStatus,
    SendResult,
    GmailEmailAdapter,
    MockEmailAdapter,
    apply_tracking,
    get_email_adapter,
)
from core.adapters.professional_network import (  # noqa: F401
    ActionResult,
    AgentNetworkAdapter,
    MockNetworkAdapter,
    ProfessionalNetworkAdapter,
    get_network_adapter,
)
