"""Provider customer linkage and the checkout/portal flows that create it."""

import logging
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from membership_engine.accounts.service import AccountService
from membership_engine.billing.catalog import CatalogService
from membership_engine.billing.models import ProviderLinkageModel
from membership_engine.billing.provider import BillingProvider
from membership_engine.billing.schemas import CheckoutSessionCreate
from membership_engine.billing.tiers import (
    BUSINESS_ID_KEYS,
    TIER_METADATA_KEYS,
    USER_ID_KEYS,
)
from membership_engine.common.config import MembershipSettings
from membership_engine.common.database import upsert_statement
from membership_engine.common.exceptions import (
    CatalogError,
    MissingLinkageError,
    OwnershipError,
)

logger = logging.getLogger(__name__)

LISTING_BOOST = "listing_boost"

# Metadata the engine itself derives; callers may not supply these.
RESERVED_METADATA_KEYS = frozenset(
    TIER_METADATA_KEYS + USER_ID_KEYS + BUSINESS_ID_KEYS + ("productType",)
)


def owner_key(user_id: str, business_id: Optional[str] = None) -> str:
    if business_id:
        return f"business:{business_id}"
    return f"user:{user_id}"


class CustomerService:
    """Owns ProviderLinkage rows: one provider customer per user or business."""

    def __init__(
        self,
        settings: MembershipSettings,
        provider: BillingProvider,
        accounts: AccountService,
        catalog: CatalogService,
    ):
        self.settings = settings
        self.provider = provider
        self.accounts = accounts
        self.catalog = catalog

    # ── Linkage ──

    async def get_linkage(
        self, session: AsyncSession, user_id: str, business_id: Optional[str] = None,
    ) -> Optional[ProviderLinkageModel]:
        result = await session.execute(
            select(ProviderLinkageModel).where(
                ProviderLinkageModel.owner_key == owner_key(user_id, business_id)
            )
        )
        return result.scalar_one_or_none()

    async def link_customer(
        self,
        session: AsyncSession,
        user_id: str,
        customer_id: str,
        business_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> None:
        """Record a linkage if the actor has none yet; existing rows are left alone."""
        stmt = upsert_statement(session, ProviderLinkageModel.__table__).values(
            owner_key=owner_key(user_id, business_id),
            user_id=user_id,
            business_id=business_id,
            provider_customer_id=customer_id,
            email=email,
        )
        await session.execute(stmt.on_conflict_do_nothing())

    async def get_or_create_customer(
        self, session: AsyncSession, user_id: str, business_id: Optional[str] = None,
    ) -> ProviderLinkageModel:
        existing = await self.get_linkage(session, user_id, business_id)
        if existing is not None:
            return existing

        user = await self.accounts.get_user(session, user_id)
        if user is None:
            raise MissingLinkageError(f"User {user_id} not found while creating customer")

        key = owner_key(user_id, business_id)
        # The idempotency key makes concurrent first requests share one customer.
        customer = await self.provider.create_customer(
            email=user.email,
            metadata={
                "userId": user_id,
                "businessId": business_id or "",
                "platform": "community",
            },
            idempotency_key=f"customer-{key}",
        )
        await self.link_customer(
            session, user_id, customer["id"], business_id=business_id, email=user.email,
        )
        logger.info(
            "Created provider customer",
            extra={"customer_id": customer["id"], "owner_id": business_id or user_id},
        )
        linkage = await self.get_linkage(session, user_id, business_id)
        if linkage is None:
            raise MissingLinkageError(f"Linkage for {key} could not be stored")
        return linkage

    async def sync_customer_fields(
        self, session: AsyncSession, customer: dict[str, Any],
    ) -> bool:
        """Copy contact fields from a provider customer onto its linkage."""
        invoice_settings = customer.get("invoice_settings") or {}
        payment_method = invoice_settings.get("default_payment_method") or customer.get(
            "default_source"
        )
        if isinstance(payment_method, dict):
            payment_method = payment_method.get("id")

        result = await session.execute(
            update(ProviderLinkageModel)
            .where(ProviderLinkageModel.provider_customer_id == customer.get("id"))
            .values(
                email=customer.get("email"),
                name=customer.get("name"),
                default_payment_method_id=payment_method,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    # ── Checkout / portal ──

    async def _require_business(
        self, session: AsyncSession, business_id: str, user_id: str,
    ) -> None:
        business = await self.accounts.get_owned_business(session, business_id, user_id)
        if business is None:
            raise OwnershipError("Business not found or unauthorized")

    async def create_checkout_session(
        self,
        session: AsyncSession,
        user_id: str,
        request: CheckoutSessionCreate,
    ) -> dict[str, Any]:
        price = await self.catalog.get_active_price(session, request.price_id)
        if price is None:
            raise CatalogError()
        product = await self.catalog.get_product(session, price.provider_product_id)

        if request.business_id:
            await self._require_business(session, request.business_id, user_id)

        metadata = {
            k: v for k, v in request.metadata.items() if k not in RESERVED_METADATA_KEYS
        }
        if product is not None:
            metadata["productType"] = product.type
            if product.tier:
                metadata["tier"] = product.tier
        if metadata.get("productType") == LISTING_BOOST:
            listing = await self.accounts.get_listing(session, metadata.get("listingId", ""))
            if listing is None or listing.owner_user_id != user_id:
                raise OwnershipError("Listing not found or unauthorized")
        metadata["userId"] = user_id
        metadata["businessId"] = request.business_id or ""

        linkage = await self.get_or_create_customer(session, user_id, request.business_id)

        base_url = self.settings.base_url.rstrip("/")
        params: dict[str, Any] = {
            "customer": linkage.provider_customer_id,
            "client_reference_id": user_id,
            "payment_method_types": ["card"],
            "line_items": [{"price": request.price_id, "quantity": 1}],
            "mode": request.mode,
            "success_url": request.success_url
            or f"{base_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": request.cancel_url or f"{base_url}/billing/cancel",
            "metadata": metadata,
        }
        if request.mode == "subscription":
            subscription_data: dict[str, Any] = {"metadata": metadata}
            if request.trial_period_days:
                subscription_data["trial_period_days"] = request.trial_period_days
            params["subscription_data"] = subscription_data
        else:
            params["payment_intent_data"] = {"metadata": metadata}

        return await self.provider.create_checkout_session(**params)

    async def create_billing_portal_session(
        self,
        session: AsyncSession,
        user_id: str,
        business_id: Optional[str] = None,
        return_url: Optional[str] = None,
    ) -> str:
        if business_id:
            await self._require_business(session, business_id, user_id)
        linkage = await self.get_or_create_customer(session, user_id, business_id)
        portal = await self.provider.create_billing_portal_session(
            linkage.provider_customer_id,
            return_url or f"{self.settings.base_url.rstrip('/')}/billing",
        )
        return portal["url"]
