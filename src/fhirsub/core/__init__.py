"""
Core module - types, criteria parsing, matching and errors.
"""

from __future__ import annotations

from .criteria import (
    FHIR_RESOURCE_TYPES,
    RESULT_PARAMETERS,
    CriteriaParser,
    build_criteria,
    escape_value,
)
from .errors import (
    AlreadyAttached,
    DeliveryFailure,
    FhirSubError,
    NotFound,
    SubscriptionNotActive,
    SubscriptionNotFound,
    ValidationError,
)
from .matcher import CriteriaMatcher
from .resource import FhirResource, SearchableResource, SEARCH_PARAMETERS
from .types import (
    ChannelInfo,
    ChannelState,
    ChannelType,
    DispatchResult,
    ParameterConstraint,
    ParsedCriteria,
    PayloadEncoding,
    Subscription,
    SubscriptionIn,
    SubscriptionStatus,
)

__all__ = [
    # Criteria
    "FHIR_RESOURCE_TYPES",
    "RESULT_PARAMETERS",
    "CriteriaParser",
    "build_criteria",
    "escape_value",
    # Errors
    "FhirSubError",
    "ValidationError",
    "NotFound",
    "SubscriptionNotFound",
    "SubscriptionNotActive",
    "AlreadyAttached",
    "DeliveryFailure",
    # Matching
    "CriteriaMatcher",
    "FhirResource",
    "SearchableResource",
    "SEARCH_PARAMETERS",
    # Types
    "ChannelInfo",
    "ChannelState",
    "ChannelType",
    "DispatchResult",
    "ParameterConstraint",
    "ParsedCriteria",
    "PayloadEncoding",
    "Subscription",
    "SubscriptionIn",
    "SubscriptionStatus",
]
