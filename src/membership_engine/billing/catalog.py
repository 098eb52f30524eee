"""Product catalog — provider bootstrap and the local product/price mirror."""

import logging
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from membership_engine.billing.models import PriceModel, ProductModel
from membership_engine.billing.provider import BillingProvider
from membership_engine.billing.schemas import BootstrapResult
from membership_engine.common.database import upsert_statement
from membership_engine.common.exceptions import ProviderError

logger = logging.getLogger(__name__)

CURRENCY = "aud"


def _recurring(monthly: int, yearly: int) -> list[dict[str, Any]]:
    return [
        {"amount": monthly, "interval": "month"},
        {"amount": yearly, "interval": "year"},
    ]


# Amounts in AUD cents. Yearly plans are priced at ten months.
PRODUCT_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "Member_Free",
        "description": "Free community membership with basic features",
        "type": "membership",
        "tier": "FREE",
        "features": ["Community access", "Basic profile", "View listings", "Join events"],
        "prices": [],
    },
    {
        "name": "Member_Plus",
        "description": "Enhanced membership with premium features",
        "type": "membership",
        "tier": "PLUS",
        "features": [
            "Everything in Free", "Priority support", "Advanced search filters",
            "Direct messaging", "Featured profile badge",
        ],
        "prices": _recurring(999, 9999),
    },
    {
        "name": "Member_Family",
        "description": "Family membership for up to 4 family members",
        "type": "membership",
        "tier": "FAMILY",
        "features": [
            "Everything in Plus", "Up to 4 family members",
            "Family event discounts", "Shared listings",
        ],
        "prices": _recurring(1999, 19999),
    },
    {
        "name": "Biz_Basic",
        "description": "Basic business listing with essential features",
        "type": "business",
        "tier": "BASIC",
        "features": [
            "Business profile", "Contact information", "5 photos",
            "Basic analytics", "Customer reviews",
        ],
        "prices": _recurring(2999, 29999),
    },
    {
        "name": "Biz_Standard",
        "description": "Standard business plan with enhanced visibility",
        "type": "business",
        "tier": "STANDARD",
        "features": [
            "Everything in Basic", "Featured placement", "15 photos",
            "Advanced analytics", "Direct lead collection", "Social media integration",
        ],
        "prices": _recurring(5999, 59999),
    },
    {
        "name": "Biz_Premium",
        "description": "Premium business plan with maximum exposure",
        "type": "business",
        "tier": "PREMIUM",
        "features": [
            "Everything in Standard", "Top listing placement", "Unlimited photos",
            "Priority support", "Custom branding", "API access", "WhatsApp integration",
        ],
        "prices": _recurring(9999, 99999),
    },
    {
        "name": "Listing_Boost",
        "description": "7-day featured placement for your listing",
        "type": "listing_boost",
        "tier": None,
        "features": [
            "7 days featured placement", "Higher search ranking",
            "Badge highlighting", "Email notifications",
        ],
        "prices": [{"amount": 1999, "interval": None}],
    },
]


def price_lookup_key(product_name: str, interval: Optional[str]) -> str:
    return f"{product_name}_{interval or 'one_time'}"


def _find_by_lookup_key(objects: list[dict[str, Any]], lookup_key: str) -> Optional[dict[str, Any]]:
    for obj in objects:
        if (obj.get("metadata") or {}).get("lookup_key") == lookup_key:
            return obj
    return None


class CatalogService:
    """Keeps the provider catalog and the local mirror in step."""

    def __init__(self, provider: BillingProvider):
        self.provider = provider

    async def bootstrap(self, session: AsyncSession) -> BootstrapResult:
        """Find-or-create every defined product and price, then mirror them.

        Keyed by the ``lookup_key`` metadata, so repeated runs create nothing new.
        A provider failure on one product is logged and the rest continue.
        """
        result = BootstrapResult()
        existing_products = await self.provider.list_products()

        for order, definition in enumerate(PRODUCT_DEFINITIONS):
            try:
                product = await self._ensure_product(definition, existing_products)
                await self._mirror_product(session, definition, product["id"], order)
                result.products += 1

                existing_prices = await self.provider.list_prices(product["id"])
                for price_def in definition["prices"]:
                    price = await self._ensure_price(
                        definition, price_def, product["id"], existing_prices,
                    )
                    await self._mirror_price(session, definition, price_def, price, product["id"])
                    result.prices += 1
            except ProviderError:
                logger.exception("Catalog bootstrap failed for %s", definition["name"])

        logger.info(
            "Catalog bootstrap complete: %d products, %d prices",
            result.products, result.prices,
        )
        return result

    async def _ensure_product(
        self, definition: dict[str, Any], existing: list[dict[str, Any]],
    ) -> dict[str, Any]:
        product = _find_by_lookup_key(existing, definition["name"])
        if product is not None:
            logger.info("Found existing product %s for %s", product["id"], definition["name"])
            return product
        product = await self.provider.create_product(
            name=definition["name"],
            description=definition["description"],
            metadata={
                "lookup_key": definition["name"],
                "type": definition["type"],
                "tier": definition["tier"] or "",
            },
        )
        logger.info("Created product %s for %s", product["id"], definition["name"])
        return product

    async def _ensure_price(
        self,
        definition: dict[str, Any],
        price_def: dict[str, Any],
        product_id: str,
        existing: list[dict[str, Any]],
    ) -> dict[str, Any]:
        lookup_key = price_lookup_key(definition["name"], price_def["interval"])
        price = _find_by_lookup_key(existing, lookup_key)
        if price is not None:
            return price
        params: dict[str, Any] = {
            "product": product_id,
            "unit_amount": price_def["amount"],
            "currency": CURRENCY,
            "metadata": {
                "lookup_key": lookup_key,
                "type": definition["type"],
                "tier": definition["tier"] or "",
            },
        }
        if price_def["interval"]:
            params["recurring"] = {"interval": price_def["interval"], "interval_count": 1}
        price = await self.provider.create_price(**params)
        logger.info("Created price %s for %s", price["id"], lookup_key)
        return price

    async def _mirror_product(
        self, session: AsyncSession, definition: dict[str, Any], product_id: str, order: int,
    ) -> None:
        table = ProductModel.__table__
        stmt = upsert_statement(session, table).values(
            provider_product_id=product_id,
            lookup_key=definition["name"],
            name=definition["name"],
            description=definition["description"],
            type=definition["type"],
            tier=definition["tier"],
            features=definition["features"],
            is_active=True,
            display_order=order,
        )
        excluded = stmt.excluded
        await session.execute(
            stmt.on_conflict_do_update(
                index_elements=[table.c.provider_product_id],
                set_={
                    "name": excluded.name,
                    "description": excluded.description,
                    "type": excluded.type,
                    "tier": excluded.tier,
                    "features": excluded.features,
                    "is_active": excluded.is_active,
                    "display_order": excluded.display_order,
                    "updated_at": func.now(),
                },
            )
        )

    async def _mirror_price(
        self,
        session: AsyncSession,
        definition: dict[str, Any],
        price_def: dict[str, Any],
        price: dict[str, Any],
        product_id: str,
    ) -> None:
        table = PriceModel.__table__
        stmt = upsert_statement(session, table).values(
            provider_price_id=price["id"],
            provider_product_id=product_id,
            lookup_key=price_lookup_key(definition["name"], price_def["interval"]),
            amount=price_def["amount"],
            currency=CURRENCY,
            interval=price_def["interval"],
            interval_count=1 if price_def["interval"] else None,
            is_active=True,
        )
        excluded = stmt.excluded
        await session.execute(
            stmt.on_conflict_do_update(
                index_elements=[table.c.provider_price_id],
                set_={
                    "amount": excluded.amount,
                    "is_active": excluded.is_active,
                    "updated_at": func.now(),
                },
            )
        )

    # ── Mirror reads ──

    async def list_products(
        self,
        session: AsyncSession,
        type: Optional[str] = None,
        tier: Optional[str] = None,
    ) -> list[tuple[ProductModel, list[PriceModel]]]:
        stmt = select(ProductModel).where(ProductModel.is_active.is_(True))
        if type:
            stmt = stmt.where(ProductModel.type == type)
        if tier:
            stmt = stmt.where(ProductModel.tier == tier.upper())
        products = (
            await session.execute(stmt.order_by(ProductModel.display_order))
        ).scalars().all()

        listing = []
        for product in products:
            prices = (
                await session.execute(
                    select(PriceModel)
                    .where(
                        PriceModel.provider_product_id == product.provider_product_id,
                        PriceModel.is_active.is_(True),
                    )
                    .order_by(PriceModel.amount)
                )
            ).scalars().all()
            listing.append((product, list(prices)))
        return listing

    async def get_product(
        self, session: AsyncSession, provider_product_id: str,
    ) -> Optional[ProductModel]:
        result = await session.execute(
            select(ProductModel).where(ProductModel.provider_product_id == provider_product_id)
        )
        return result.scalar_one_or_none()

    async def get_active_price(
        self, session: AsyncSession, provider_price_id: str,
    ) -> Optional[PriceModel]:
        result = await session.execute(
            select(PriceModel).where(
                PriceModel.provider_price_id == provider_price_id,
                PriceModel.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()
