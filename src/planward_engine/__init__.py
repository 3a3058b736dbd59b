"""Planward-Engine: team entitlement resolution for billing plans."""

from planward_engine.billing.entitlements import (
    EntitlementRequirement,
    EntitlementService,
    TeamEntitlements,
)
from planward_engine.billing.metadata import (
    EntitlementValues,
    parse_plan_metadata,
    parse_provider_entitlements,
)

__all__ = [
    "EntitlementRequirement",
    "EntitlementService",
    "EntitlementValues",
    "TeamEntitlements",
    "parse_plan_metadata",
    "parse_provider_entitlements",
]
__version__ = "0.1.0"
