"""SQLAlchemy models for provider linkage, subscriptions and the event ledger."""

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from membership_engine.common.models import Base, TimestampMixin, generate_uuid


class ProviderLinkageModel(Base, TimestampMixin):
    """Maps one internal actor to its provider customer id."""

    __tablename__ = "billing_customers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    # "user:<id>" or "business:<id>"; at most one linkage per actor.
    owner_key: Mapped[str] = mapped_column(String(80), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    business_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    provider_customer_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    default_payment_method_id: Mapped[str | None] = mapped_column(String(255), nullable=True)


class SubscriptionModel(Base, TimestampMixin):
    """Internal mirror of a provider subscription. Never hard-deleted."""

    __tablename__ = "billing_subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    provider_subscription_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    provider_customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    owner_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    tier: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    provider_price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    current_period_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancel_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Creation time of the provider event (or checkout session) the row was last written from.
    source_event_created: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    provider_metadata: Mapped[dict] = mapped_column(JSON, default=dict)


class WebhookEventModel(Base, TimestampMixin):
    """Idempotency ledger: one row per provider event id."""

    __tablename__ = "billing_webhook_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_error: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(20), nullable=True)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PaymentModel(Base, TimestampMixin):
    """Audit record of a payment outcome, keyed by payment intent id."""

    __tablename__ = "billing_payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    provider_payment_intent_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    provider_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="aud")
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_method_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_metadata: Mapped[dict] = mapped_column(JSON, default=dict)


class ProductModel(Base, TimestampMixin):
    """Local mirror of a provider catalog product."""

    __tablename__ = "billing_products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    provider_product_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    lookup_key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    tier: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    features: Mapped[list] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class PriceModel(Base, TimestampMixin):
    """Local mirror of a provider catalog price."""

    __tablename__ = "billing_prices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    provider_price_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    provider_product_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("billing_products.provider_product_id"),
        nullable=False, index=True,
    )
    lookup_key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="aud")
    interval: Mapped[str | None] = mapped_column(String(10), nullable=True)
    interval_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class ListingBoostModel(Base, TimestampMixin):
    """One applied listing boost per completed checkout session."""

    __tablename__ = "listing_boosts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    provider_session_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    listing_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("listings.id"), nullable=False, index=True
    )
    boosted_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
