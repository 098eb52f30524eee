"""Tier definitions and the tier resolver.

Two closed tier families exist:

- user memberships: FREE (baseline), PLUS, FAMILY
- business plans:   BASIC (baseline), STANDARD, PREMIUM

Resolution policy: the first non-empty tier found in checkout session
metadata, subscription metadata, price metadata, then product metadata wins.
Unrecognised values fall back to the baseline tier instead of failing, so a
mislabelled product never interrupts billing.
"""

from enum import Enum
from typing import Any, Optional

OWNER_USER = "user"
OWNER_BUSINESS = "business"


class MembershipTier(str, Enum):
    FREE = "FREE"
    PLUS = "PLUS"
    FAMILY = "FAMILY"


class BusinessTier(str, Enum):
    BASIC = "BASIC"
    STANDARD = "STANDARD"
    PREMIUM = "PREMIUM"


BASELINE_TIERS = {
    OWNER_USER: MembershipTier.FREE.value,
    OWNER_BUSINESS: BusinessTier.BASIC.value,
}

_TIER_SETS = {
    OWNER_USER: frozenset(t.value for t in MembershipTier),
    OWNER_BUSINESS: frozenset(t.value for t in BusinessTier),
}

# Checked in order at every metadata level.
TIER_METADATA_KEYS = ("membershipTier", "membership_tier", "planTier", "tier")
USER_ID_KEYS = ("userId", "user_id")
BUSINESS_ID_KEYS = ("businessId", "business_id")

# ── Subscription statuses ──

ACTIVE = "active"
TRIALING = "trialing"
PAST_DUE = "past_due"
CANCELED = "canceled"
UNPAID = "unpaid"
INCOMPLETE = "incomplete"

GRANTING_STATUSES = frozenset({ACTIVE, TRIALING})
REVOKING_STATUSES = frozenset({CANCELED, UNPAID, PAST_DUE, INCOMPLETE})

_STATUS_MAP = {
    "active": ACTIVE,
    "trialing": TRIALING,
    "past_due": PAST_DUE,
    "canceled": CANCELED,
    "unpaid": UNPAID,
    "incomplete": INCOMPLETE,
    "incomplete_expired": CANCELED,
    "paused": INCOMPLETE,
}


def normalise_status(status: Optional[str]) -> str:
    """Map a provider status onto the internal set; unknown values revoke."""
    if not status:
        return INCOMPLETE
    return _STATUS_MAP.get(status.strip().lower(), INCOMPLETE)


def baseline_tier(owner_kind: str) -> str:
    return BASELINE_TIERS[owner_kind]


def is_known_tier(tier: str, owner_kind: str) -> bool:
    return tier in _TIER_SETS[owner_kind]


# ── Metadata projection ──


def metadata_of(obj: Any) -> dict[str, Any]:
    """Return the metadata bag of a provider object, or {}."""
    if not isinstance(obj, dict):
        return {}
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def first_metadata_value(metadata: dict[str, Any], keys: tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = metadata.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def first_price(subscription: dict[str, Any]) -> dict[str, Any]:
    """Return the first subscription item's price object, or {}."""
    items = subscription.get("items") or {}
    data = items.get("data") if isinstance(items, dict) else None
    if not data:
        return {}
    price = data[0].get("price") if isinstance(data[0], dict) else None
    return price if isinstance(price, dict) else {}


def price_product(price: dict[str, Any]) -> dict[str, Any]:
    """Return the expanded product of a price, or {} when it is only an id."""
    product = price.get("product")
    return product if isinstance(product, dict) else {}


def tier_candidates(
    subscription: dict[str, Any],
    session: Optional[dict[str, Any]] = None,
) -> list[Optional[str]]:
    """Raw tier value at each level, highest priority first."""
    price = first_price(subscription)
    return [
        first_metadata_value(metadata_of(session), TIER_METADATA_KEYS),
        first_metadata_value(metadata_of(subscription), TIER_METADATA_KEYS),
        first_metadata_value(metadata_of(price), TIER_METADATA_KEYS),
        first_metadata_value(metadata_of(price_product(price)), TIER_METADATA_KEYS),
    ]


def resolve_tier(
    subscription: dict[str, Any],
    session: Optional[dict[str, Any]] = None,
    owner_kind: str = OWNER_USER,
) -> str:
    """Derive the target tier for an owner from provider metadata.

    Pure: reads only its arguments. Returns the baseline tier of
    ``owner_kind`` when no level carries a recognised tier.
    """
    potential = next((c for c in tier_candidates(subscription, session) if c), None)
    if potential is None:
        return baseline_tier(owner_kind)
    normalised = potential.strip().upper()
    if is_known_tier(normalised, owner_kind):
        return normalised
    return baseline_tier(owner_kind)


def resolve_owner_kind(
    subscription: dict[str, Any],
    session: Optional[dict[str, Any]] = None,
) -> str:
    """Business when any level names a business or the product is a business plan."""
    for source in (session, subscription):
        if first_metadata_value(metadata_of(source), BUSINESS_ID_KEYS):
            return OWNER_BUSINESS
    price = first_price(subscription)
    for source in (price, price_product(price)):
        if metadata_of(source).get("type") == OWNER_BUSINESS:
            return OWNER_BUSINESS
    return OWNER_USER


def owner_ids_from_metadata(*sources: Optional[dict[str, Any]]) -> tuple[Optional[str], Optional[str]]:
    """First (user_id, business_id) found across the given objects' metadata."""
    user_id = None
    business_id = None
    for source in sources:
        metadata = metadata_of(source)
        user_id = user_id or first_metadata_value(metadata, USER_ID_KEYS)
        business_id = business_id or first_metadata_value(metadata, BUSINESS_ID_KEYS)
    return user_id, business_id
