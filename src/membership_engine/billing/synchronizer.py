"""Entitlement synchronizer, the single writer of subscription state.

``apply`` takes a provider snapshot and:

1. upserts the subscription row keyed by the provider subscription id,
2. on a granting status writes the tier onto the owner and activates its
   membership/plan record,
3. on a revoking status resets the owner to the baseline tier and
   deactivates the record (the subscription row stays for history).

Every step is keyed by stable ids, so re-applying the same snapshot after
a partial failure converges. Snapshots older than the stored row (earlier
period end, an earlier source event, or a resurrection of a canceled
subscription) are skipped.
"""

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from membership_engine.accounts.models import BusinessModel, MembershipModel, UserModel
from membership_engine.billing.models import (
    ProductModel,
    ProviderLinkageModel,
    SubscriptionModel,
)
from membership_engine.billing.tiers import (
    CANCELED,
    GRANTING_STATUSES,
    OWNER_BUSINESS,
    OWNER_USER,
    REVOKING_STATUSES,
    baseline_tier,
    first_price,
    metadata_of,
    normalise_status,
    owner_ids_from_metadata,
    resolve_owner_kind,
    resolve_tier,
)
from membership_engine.common.database import upsert_statement
from membership_engine.common.exceptions import MissingLinkageError

logger = logging.getLogger(__name__)


def timestamp_to_datetime(value: Any) -> Optional[datetime]:
    """Provider epoch seconds → aware UTC datetime."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def object_id(value: Any) -> Optional[str]:
    """Id of a provider reference that may be a bare id or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id") or None
    return None


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Typed projection of a provider subscription for one owner."""

    owner_id: str
    owner_kind: str
    provider_subscription_id: str
    provider_customer_id: str
    status: str
    tier: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    provider_price_id: Optional[str] = None
    source_event_created: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ApplyResult:
    outcome: str  # applied | stale
    entitlement: Optional[str] = None  # granted | revoked | superseded
    tier: Optional[str] = None


def snapshot_from_subscription(
    subscription: dict[str, Any],
    owner_id: str,
    owner_kind: str,
    tier: str,
    session: Optional[dict[str, Any]] = None,
    status: Optional[str] = None,
    event_created: Optional[int] = None,
) -> SubscriptionSnapshot:
    """Build a snapshot from a provider subscription object.

    Newer provider API versions report billing periods on the subscription
    item rather than the subscription; both places are read. ``event_created``
    is the epoch time of the event or checkout session the object came from.
    """
    items = (subscription.get("items") or {}).get("data") or [{}]
    item = items[0] if isinstance(items[0], dict) else {}

    period_start = subscription.get("current_period_start", item.get("current_period_start"))
    period_end = subscription.get("current_period_end", item.get("current_period_end"))

    customer_id = object_id(subscription.get("customer")) or object_id(
        (session or {}).get("customer")
    )
    if not customer_id:
        raise MissingLinkageError(
            f"Subscription {subscription.get('id')} has no provider customer"
        )

    return SubscriptionSnapshot(
        owner_id=owner_id,
        owner_kind=owner_kind,
        provider_subscription_id=subscription["id"],
        provider_customer_id=customer_id,
        status=normalise_status(status or subscription.get("status")),
        tier=tier,
        current_period_start=timestamp_to_datetime(period_start),
        current_period_end=timestamp_to_datetime(period_end),
        trial_ends_at=timestamp_to_datetime(subscription.get("trial_end")),
        cancel_at=timestamp_to_datetime(subscription.get("cancel_at")),
        canceled_at=timestamp_to_datetime(subscription.get("canceled_at")),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        provider_price_id=first_price(subscription).get("id"),
        source_event_created=timestamp_to_datetime(event_created),
        metadata={**metadata_of(subscription), **metadata_of(session)},
    )


class EntitlementSynchronizer:
    """Applies subscription snapshots to the mirror and the owning aggregate."""

    async def sync(
        self,
        session: AsyncSession,
        subscription: dict[str, Any],
        checkout_session: Optional[dict[str, Any]] = None,
        status: Optional[str] = None,
        event_created: Optional[int] = None,
    ) -> ApplyResult:
        """Resolve owner and tier for a provider subscription, then ``apply`` it.

        Both the webhook path and the checkout confirmation path come through
        here, so they project a subscription identically.
        """
        subscription = await self._with_product_metadata(session, subscription)
        owner_kind, owner_id = await self.resolve_owner(session, subscription, checkout_session)
        tier = resolve_tier(subscription, checkout_session, owner_kind)
        snapshot = snapshot_from_subscription(
            subscription, owner_id, owner_kind, tier,
            session=checkout_session, status=status, event_created=event_created,
        )
        return await self.apply(session, snapshot)

    async def resolve_owner(
        self,
        session: AsyncSession,
        subscription: dict[str, Any],
        checkout_session: Optional[dict[str, Any]] = None,
    ) -> tuple[str, str]:
        """(owner_kind, owner_id) from metadata, falling back to the customer linkage."""
        user_id, business_id = owner_ids_from_metadata(checkout_session, subscription)
        owner_kind = resolve_owner_kind(subscription, checkout_session)

        if not (user_id or business_id) or (owner_kind == OWNER_BUSINESS and not business_id):
            customer_id = object_id(subscription.get("customer")) or object_id(
                (checkout_session or {}).get("customer")
            )
            linkage = await self._linkage_for(session, customer_id) if customer_id else None
            if linkage is not None:
                user_id = user_id or linkage.user_id
                business_id = business_id or linkage.business_id

        if business_id:
            return OWNER_BUSINESS, business_id
        if user_id and owner_kind == OWNER_USER:
            return OWNER_USER, user_id
        raise MissingLinkageError(
            f"No internal owner for subscription {subscription.get('id')}"
        )

    async def _linkage_for(
        self, session: AsyncSession, customer_id: str,
    ) -> Optional[ProviderLinkageModel]:
        result = await session.execute(
            select(ProviderLinkageModel).where(
                ProviderLinkageModel.provider_customer_id == customer_id
            )
        )
        return result.scalar_one_or_none()

    async def _with_product_metadata(
        self, session: AsyncSession, subscription: dict[str, Any],
    ) -> dict[str, Any]:
        """Fill in an unexpanded price product from the local catalog mirror."""
        product_id = first_price(subscription).get("product")
        if not isinstance(product_id, str):
            return subscription
        result = await session.execute(
            select(ProductModel).where(ProductModel.provider_product_id == product_id)
        )
        product = result.scalar_one_or_none()
        if product is None:
            return subscription
        expanded = copy.deepcopy(subscription)
        first_price(expanded)["product"] = {
            "id": product_id,
            "metadata": {"tier": product.tier or "", "type": product.type},
        }
        return expanded

    async def apply(
        self, session: AsyncSession, snapshot: SubscriptionSnapshot,
    ) -> ApplyResult:
        log_extra = {
            "subscription_id": snapshot.provider_subscription_id,
            "owner_id": snapshot.owner_id,
            "owner_kind": snapshot.owner_kind,
            "status": snapshot.status,
            "tier": snapshot.tier,
        }

        # Nothing is written for an owner this platform does not know.
        await self._require_owner(session, snapshot)

        if not await self._upsert_subscription(session, snapshot):
            logger.info("Skipped stale subscription snapshot", extra=log_extra)
            return ApplyResult(outcome="stale", tier=snapshot.tier)

        entitlement = None
        if snapshot.status in GRANTING_STATUSES:
            entitlement = await self._grant(session, snapshot)
        elif snapshot.status in REVOKING_STATUSES:
            entitlement = await self._revoke(session, snapshot)

        logger.info("Applied subscription snapshot", extra=log_extra)
        return ApplyResult(outcome="applied", entitlement=entitlement, tier=snapshot.tier)

    async def _require_owner(
        self, session: AsyncSession, snapshot: SubscriptionSnapshot,
    ) -> None:
        model = UserModel if snapshot.owner_kind == OWNER_USER else BusinessModel
        if await session.get(model, snapshot.owner_id) is None:
            raise MissingLinkageError(
                f"No {snapshot.owner_kind} {snapshot.owner_id} for subscription "
                f"{snapshot.provider_subscription_id}"
            )

    async def _upsert_subscription(
        self, session: AsyncSession, snapshot: SubscriptionSnapshot,
    ) -> bool:
        """Insert or overwrite the row; returns False when the stored row is newer."""
        table = SubscriptionModel.__table__
        values = {
            "provider_subscription_id": snapshot.provider_subscription_id,
            "provider_customer_id": snapshot.provider_customer_id,
            "owner_id": snapshot.owner_id,
            "owner_kind": snapshot.owner_kind,
            "tier": snapshot.tier,
            "status": snapshot.status,
            "provider_price_id": snapshot.provider_price_id,
            "current_period_start": snapshot.current_period_start,
            "current_period_end": snapshot.current_period_end,
            "cancel_at": snapshot.cancel_at,
            "canceled_at": snapshot.canceled_at,
            "trial_ends_at": snapshot.trial_ends_at,
            "cancel_at_period_end": snapshot.cancel_at_period_end,
            "source_event_created": snapshot.source_event_created,
            "provider_metadata": snapshot.metadata,
        }
        stmt = upsert_statement(session, table).values(**values)
        excluded = stmt.excluded
        is_current = and_(
            or_(
                table.c.current_period_end.is_(None),
                excluded.current_period_end.is_(None),
                excluded.current_period_end >= table.c.current_period_end,
            ),
            or_(
                table.c.source_event_created.is_(None),
                excluded.source_event_created.is_(None),
                excluded.source_event_created >= table.c.source_event_created,
            ),
            or_(table.c.status != CANCELED, excluded.status == CANCELED),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.provider_subscription_id],
            set_={
                **{k: excluded[k] for k in values if k != "provider_subscription_id"},
                "source_event_created": func.coalesce(
                    excluded.source_event_created, table.c.source_event_created,
                ),
                "updated_at": func.now(),
            },
            where=is_current,
        ).returning(table.c.id)
        result = await session.execute(stmt)
        return result.first() is not None

    async def _upsert_membership(
        self,
        session: AsyncSession,
        snapshot: SubscriptionSnapshot,
        status: str,
    ) -> None:
        table = MembershipModel.__table__
        stmt = upsert_statement(session, table).values(
            owner_kind=snapshot.owner_kind,
            owner_id=snapshot.owner_id,
            tier=snapshot.tier,
            status=status,
            provider_subscription_id=snapshot.provider_subscription_id,
            end_date=snapshot.current_period_end,
            auto_renew=not snapshot.cancel_at_period_end,
        )
        excluded = stmt.excluded
        set_ = {
            "status": excluded.status,
            "provider_subscription_id": excluded.provider_subscription_id,
            "end_date": excluded.end_date,
            "auto_renew": excluded.auto_renew,
            "updated_at": func.now(),
        }
        if status == "active":
            set_["tier"] = excluded.tier
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.owner_kind, table.c.owner_id],
            set_=set_,
        )
        await session.execute(stmt)

    async def _set_owner_tier(
        self, session: AsyncSession, owner_kind: str, owner_id: str, tier: str,
    ) -> None:
        if owner_kind == OWNER_BUSINESS:
            stmt = update(BusinessModel).where(BusinessModel.id == owner_id).values(plan_tier=tier)
        else:
            stmt = update(UserModel).where(UserModel.id == owner_id).values(membership_tier=tier)
        await session.execute(stmt.execution_options(synchronize_session=False))

    async def _grant(self, session: AsyncSession, snapshot: SubscriptionSnapshot) -> str:
        backing = await self._backing_subscription(session, snapshot)
        # An owner moved onto a plan that runs longer keeps it; late updates
        # for the replaced plan only refresh that plan's mirror row.
        if (
            backing is not None
            and backing.status in GRANTING_STATUSES
            and backing.current_period_end is not None
            and snapshot.current_period_end is not None
            and as_utc(backing.current_period_end) > snapshot.current_period_end
        ):
            logger.info(
                "Grant superseded by a newer subscription",
                extra={
                    "subscription_id": snapshot.provider_subscription_id,
                    "owner_id": snapshot.owner_id,
                },
            )
            return "superseded"

        await self._upsert_membership(session, snapshot, status="active")
        await self._set_owner_tier(
            session, snapshot.owner_kind, snapshot.owner_id, snapshot.tier,
        )
        return "granted"

    async def _revoke(self, session: AsyncSession, snapshot: SubscriptionSnapshot) -> str:
        membership = await self._current_membership(session, snapshot)
        # A revoked subscription only resets the owner if it is the one backing
        # the current entitlement; a replaced plan's cancellation must not
        # clobber its successor.
        if (
            membership is not None
            and membership.provider_subscription_id not in (None, snapshot.provider_subscription_id)
            and membership.status == "active"
        ):
            logger.info(
                "Revocation superseded by a newer subscription",
                extra={
                    "subscription_id": snapshot.provider_subscription_id,
                    "owner_id": snapshot.owner_id,
                },
            )
            return "superseded"

        await self._upsert_membership(session, snapshot, status="inactive")
        await self._set_owner_tier(
            session, snapshot.owner_kind, snapshot.owner_id,
            baseline_tier(snapshot.owner_kind),
        )
        return "revoked"

    async def _current_membership(
        self, session: AsyncSession, snapshot: SubscriptionSnapshot,
    ) -> Optional[MembershipModel]:
        result = await session.execute(
            select(MembershipModel).where(
                MembershipModel.owner_kind == snapshot.owner_kind,
                MembershipModel.owner_id == snapshot.owner_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _backing_subscription(
        self, session: AsyncSession, snapshot: SubscriptionSnapshot,
    ) -> Optional[SubscriptionModel]:
        """Mirror row of another subscription backing the owner's active membership."""
        membership = await self._current_membership(session, snapshot)
        if (
            membership is None
            or membership.status != "active"
            or membership.provider_subscription_id in (None, snapshot.provider_subscription_id)
        ):
            return None
        result = await session.execute(
            select(SubscriptionModel)
            .where(
                SubscriptionModel.provider_subscription_id == membership.provider_subscription_id
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
