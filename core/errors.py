"""
Error taxonomy shared by the admission controller, the webhook router and
the event handlers.

Admission denials and duplicate deliveries are ordinary values, not errors.
"""


class OutreachError(Exception):
    """Base class for all service errors."""
    pass


class AuthenticationError(OutreachError):
    """Webhook signature or bearer token did not verify."""
    pass


class ConfigurationError(OutreachError):
    """Required secret or setting is missing."""

    def __init__(self, message: str, setting: str = ""):
        super().__init__(message)
        self.setting = setting


class ValidationError(OutreachError):
    """Inbound payload could not be parsed or normalized."""
    pass


class DownstreamFailure(OutreachError):
    """An external collaborator (Agent Service, channel backend, store) failed."""

    def __init__(self, message: str, service: str = "", recoverable: bool = True):
        super().__init__(message)
        self.service = service
        self.recoverable = recoverable


class ApprovalError(ValueError, OutreachError):
    """Approval transition refused."""
    pass


class ApprovalNotFoundError(ApprovalError):
    pass


class ApprovalConflictError(ApprovalError):
    """A decision was already recorded for this outreach item."""

    def __init__(self, outreach_id: str, status: str):
        super().__init__(f"Outreach {outreach_id} already {status}")
        self.outreach_id = outreach_id
        self.status = status
