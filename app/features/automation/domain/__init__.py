"""
Domain subpackage for the lifecycle automation engine.
"""

from .errors import (
    AutomationError,
    ConfigurationError,
    NoOfferTemplateConfigured,
    NoTemplateConfigured,
    PolicyValidationError,
    TransportError,
)
from .models import (
    ACTIVE_OFFER_STATUSES,
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    ActionKind,
    ActionStatus,
    Candidate,
    ClaimOutcome,
    ClaimResult,
    CreateResult,
    DispatchResult,
    EmailTemplate,
    Employee,
    EmployeeData,
    IdentityMismatch,
    JobPosting,
    NewOffer,
    NewQueuedAction,
    Offer,
    OfferStatus,
    OfferTemplate,
    OutboundEmail,
    QueuedAction,
    Recruiter,
    RenderedEmail,
    SendResult,
    SentEmail,
    StageTransition,
)

__all__ = [
    "ACTIVE_OFFER_STATUSES",
    "OPEN_STATUSES",
    "TERMINAL_STATUSES",
    "ActionKind",
    "ActionStatus",
    "AutomationError",
    "Candidate",
    "ClaimOutcome",
    "ClaimResult",
    "ConfigurationError",
    "CreateResult",
    "DispatchResult",
    "EmailTemplate",
    "Employee",
    "EmployeeData",
    "IdentityMismatch",
    "JobPosting",
    "NewOffer",
    "NewQueuedAction",
    "NoOfferTemplateConfigured",
    "NoTemplateConfigured",
    "Offer",
    "OfferStatus",
    "OfferTemplate",
    "OutboundEmail",
    "PolicyValidationError",
    "QueuedAction",
    "Recruiter",
    "RenderedEmail",
    "SendResult",
    "SentEmail",
    "StageTransition",
    "TransportError",
]
