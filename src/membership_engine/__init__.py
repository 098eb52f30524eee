"""Membership-Engine: billing webhook ingestion and entitlement reconciliation."""

from membership_engine.billing.signature import construct_event, verify_signature
from membership_engine.billing.tiers import BusinessTier, MembershipTier, resolve_tier

__all__ = [
    "BusinessTier",
    "MembershipTier",
    "construct_event",
    "resolve_tier",
    "verify_signature",
]
__version__ = "0.1.0"
