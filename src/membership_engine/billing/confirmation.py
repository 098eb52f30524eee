"""Checkout confirmation: the synchronous path a returning user's client calls.

It converges with the webhook path: both end in
``EntitlementSynchronizer.sync`` for the same subscription, so whichever
arrives second re-applies the same state.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from membership_engine.billing.customers import CustomerService
from membership_engine.billing.provider import BillingProvider
from membership_engine.billing.synchronizer import EntitlementSynchronizer, object_id
from membership_engine.billing.tiers import (
    USER_ID_KEYS,
    metadata_of,
    owner_ids_from_metadata,
)
from membership_engine.common.exceptions import CheckoutSessionError, OwnershipError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfirmationResult:
    customer_id: str
    tier: str


def session_owner_ids(checkout: dict[str, Any], subscription: dict[str, Any]) -> list[str]:
    """User ids the provider recorded for a checkout session, in priority order."""
    candidates: list[Optional[str]] = []
    for key in USER_ID_KEYS:
        candidates.append(metadata_of(checkout).get(key))
    candidates.append(checkout.get("client_reference_id"))
    for key in USER_ID_KEYS:
        candidates.append(metadata_of(subscription).get(key))
    return [c.strip() for c in candidates if isinstance(c, str) and c.strip()]


class CheckoutConfirmationReconciler:
    def __init__(
        self,
        provider: BillingProvider,
        synchronizer: EntitlementSynchronizer,
        customers: CustomerService,
    ):
        self.provider = provider
        self.synchronizer = synchronizer
        self.customers = customers

    async def confirm(
        self, session: AsyncSession, caller_id: str, session_id: str,
    ) -> ConfirmationResult:
        """Apply the subscription behind ``session_id`` for its owner.

        Raises ``CheckoutSessionError`` when the session has no subscription
        or customer, and ``OwnershipError`` when none of the session's
        recorded owners is the caller. Nothing is written before both checks.
        """
        checkout = await self.provider.retrieve_checkout_session(session_id)

        subscription_ref = checkout.get("subscription")
        if not subscription_ref:
            raise CheckoutSessionError("No subscription associated with session")
        if isinstance(subscription_ref, dict) and subscription_ref.get("items"):
            subscription = subscription_ref
        else:
            subscription = await self.provider.retrieve_subscription(object_id(subscription_ref))

        customer_id = object_id(checkout.get("customer")) or object_id(subscription.get("customer"))
        if not customer_id:
            raise CheckoutSessionError("Missing provider customer")

        if caller_id not in session_owner_ids(checkout, subscription):
            logger.warning(
                "Checkout session %s confirmed by a non-owner", session_id,
                extra={"owner_id": caller_id, "customer_id": customer_id},
            )
            raise OwnershipError("Checkout session does not belong to this user")

        _, business_id = owner_ids_from_metadata(checkout, subscription)
        customer = checkout.get("customer")
        email = customer.get("email") if isinstance(customer, dict) else None
        await self.customers.link_customer(
            session, caller_id, customer_id, business_id=business_id, email=email,
        )

        result = await self.synchronizer.sync(
            session, subscription,
            checkout_session=checkout, event_created=checkout.get("created"),
        )
        logger.info(
            "Confirmed checkout session %s (%s)", session_id, result.outcome,
            extra={"customer_id": customer_id, "tier": result.tier},
        )
        return ConfirmationResult(customer_id=customer_id, tier=result.tier)
