"""Webhook dispatcher: routes verified events to their handlers.

Each handler runs inside the caller's transaction and returns a short
outcome string recorded on the ledger row. Unknown event types are
acknowledged with outcome ``ignored``. Billing emails are sent by
``notify`` once that transaction has committed.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession

from membership_engine.accounts.models import ListingModel
from membership_engine.billing.customers import LISTING_BOOST, CustomerService
from membership_engine.billing.models import ListingBoostModel, PaymentModel
from membership_engine.billing.notifications import BillingNotifier
from membership_engine.billing.provider import BillingProvider
from membership_engine.billing.schemas import EventEnvelope
from membership_engine.billing.synchronizer import (
    EntitlementSynchronizer,
    as_utc,
    object_id,
    timestamp_to_datetime,
)
from membership_engine.billing.tiers import CANCELED, metadata_of
from membership_engine.common.config import MembershipSettings
from membership_engine.common.database import upsert_statement
from membership_engine.common.exceptions import MissingLinkageError

logger = logging.getLogger(__name__)

Handler = Callable[[AsyncSession, EventEnvelope], Awaitable[str]]

PAID_SESSION_STATUSES = frozenset({"paid", "no_payment_required"})


def invoice_subscription_id(invoice: dict[str, Any]) -> Optional[str]:
    """Subscription id of an invoice, in either the legacy or the ``parent`` shape."""
    direct = object_id(invoice.get("subscription"))
    if direct:
        return direct
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return object_id(details.get("subscription"))


class WebhookDispatcher:
    """Registry of event handlers keyed by provider event type."""

    def __init__(
        self,
        settings: MembershipSettings,
        provider: BillingProvider,
        synchronizer: EntitlementSynchronizer,
        customers: CustomerService,
        notifier: Optional[BillingNotifier] = None,
    ):
        self.settings = settings
        self.provider = provider
        self.synchronizer = synchronizer
        self.customers = customers
        self.notifier = notifier
        self._handlers: dict[str, Handler] = {
            "customer.subscription.created": self._handle_subscription,
            "customer.subscription.updated": self._handle_subscription,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_invoice_payment_failed,
            "invoice.payment_action_required": self._handle_invoice_action_required,
            "checkout.session.completed": self._handle_checkout_completed,
            "payment_intent.succeeded": self._handle_payment_intent,
            "payment_intent.payment_failed": self._handle_payment_intent,
            "customer.created": self._handle_customer_created,
            "customer.updated": self._handle_customer_updated,
        }
        self._notifications: dict[str, Callable[[dict[str, Any]], Awaitable[bool]]] = {}
        if notifier is not None:
            self._notifications = {
                "invoice.paid": notifier.send_receipt,
                "invoice.payment_failed": notifier.send_payment_failed,
                "invoice.payment_action_required": notifier.send_action_required,
            }

    @property
    def event_types(self) -> frozenset[str]:
        return frozenset(self._handlers)

    async def dispatch(self, session: AsyncSession, event: EventEnvelope) -> str:
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info(
                "Ignoring unhandled event type",
                extra={"event_id": event.id, "event_type": event.type},
            )
            return "ignored"
        return await handler(session, event)

    async def notify(self, event: EventEnvelope) -> bool:
        """Send the billing email for ``event``, if its type has one.

        Called after the dispatch transaction commits, so a rolled-back or
        redelivered event does not mail the customer twice.
        """
        send = self._notifications.get(event.type)
        if send is None:
            return False
        return await send(event.object)

    # ── Subscription lifecycle ──

    async def _handle_subscription(self, session: AsyncSession, event: EventEnvelope) -> str:
        result = await self.synchronizer.sync(
            session, event.object, event_created=event.created,
        )
        return result.outcome

    async def _handle_subscription_deleted(
        self, session: AsyncSession, event: EventEnvelope,
    ) -> str:
        result = await self.synchronizer.sync(
            session, event.object, status=CANCELED, event_created=event.created,
        )
        return result.outcome

    # ── Invoice lifecycle ──

    async def _handle_invoice_paid(self, session: AsyncSession, event: EventEnvelope) -> str:
        invoice = event.object
        outcome = "recorded"
        subscription_id = invoice_subscription_id(invoice)
        if subscription_id:
            # A renewal re-applies the subscription as the provider now reports it.
            subscription = await self.provider.retrieve_subscription(subscription_id)
            result = await self.synchronizer.sync(
                session, subscription, event_created=event.created,
            )
            outcome = result.outcome

        await self._record_invoice_payment(session, invoice, "succeeded", invoice.get("amount_paid"))
        return outcome

    async def _handle_invoice_payment_failed(
        self, session: AsyncSession, event: EventEnvelope,
    ) -> str:
        invoice = event.object
        await self._record_invoice_payment(session, invoice, "failed", invoice.get("amount_due"))
        logger.warning(
            "Invoice payment failed",
            extra={
                "event_id": event.id,
                "customer_id": object_id(invoice.get("customer")),
                "subscription_id": invoice_subscription_id(invoice),
            },
        )
        return "notified"

    async def _handle_invoice_action_required(
        self, session: AsyncSession, event: EventEnvelope,
    ) -> str:
        return "notified"

    async def _record_invoice_payment(
        self,
        session: AsyncSession,
        invoice: dict[str, Any],
        status: str,
        amount: Optional[int],
    ) -> None:
        payment_intent_id = object_id(invoice.get("payment_intent"))
        if not payment_intent_id:
            return
        await self._record_payment(
            session,
            payment_intent_id=payment_intent_id,
            customer_id=object_id(invoice.get("customer")),
            amount=amount,
            currency=invoice.get("currency"),
            status=status,
            description=invoice.get("description") or f"Invoice {invoice.get('id')}",
            metadata=metadata_of(invoice),
        )

    # ── Checkout ──

    async def _handle_checkout_completed(
        self, session: AsyncSession, event: EventEnvelope,
    ) -> str:
        checkout = event.object
        subscription_ref = checkout.get("subscription")
        if subscription_ref:
            subscription = await self.provider.retrieve_subscription(object_id(subscription_ref))
            result = await self.synchronizer.sync(
                session, subscription,
                checkout_session=checkout, event_created=event.created,
            )
            return result.outcome

        if checkout.get("payment_status") not in PAID_SESSION_STATUSES:
            return "ignored"
        metadata = metadata_of(checkout)
        if metadata.get("productType") == LISTING_BOOST and metadata.get("listingId"):
            return await self._apply_listing_boost(session, checkout, metadata["listingId"])
        return "ignored"

    async def _apply_listing_boost(
        self, session: AsyncSession, checkout: dict[str, Any], listing_id: str,
    ) -> str:
        listing = await session.get(ListingModel, listing_id)
        if listing is None:
            raise MissingLinkageError(f"Listing {listing_id} not found for boost")

        anchor = timestamp_to_datetime(checkout.get("created")) or datetime.now(timezone.utc)
        boosted_until = anchor + timedelta(days=self.settings.listing_boost_days)

        table = ListingBoostModel.__table__
        stmt = (
            upsert_statement(session, table)
            .values(
                provider_session_id=checkout["id"],
                listing_id=listing_id,
                boosted_until=boosted_until,
            )
            .on_conflict_do_nothing(index_elements=[table.c.provider_session_id])
            .returning(table.c.id)
        )
        if (await session.execute(stmt)).first() is None:
            return "duplicate"

        current = as_utc(listing.boosted_until)
        if current is None or current < boosted_until:
            await session.execute(
                update(ListingModel)
                .where(ListingModel.id == listing_id)
                .values(boosted_until=boosted_until)
                .execution_options(synchronize_session=False)
            )
        logger.info("Listing %s boosted until %s", listing_id, boosted_until.isoformat())
        return "applied"

    # ── Payment intents ──

    async def _handle_payment_intent(self, session: AsyncSession, event: EventEnvelope) -> str:
        intent = event.object
        status = "succeeded" if event.type == "payment_intent.succeeded" else "failed"
        await self._record_payment(
            session,
            payment_intent_id=intent["id"],
            customer_id=object_id(intent.get("customer")),
            amount=intent.get("amount_received") if status == "succeeded" else intent.get("amount"),
            currency=intent.get("currency"),
            status=status,
            description=intent.get("description"),
            metadata=metadata_of(intent),
            payment_method_id=object_id(intent.get("payment_method")),
        )
        return "recorded"

    async def _record_payment(
        self,
        session: AsyncSession,
        payment_intent_id: str,
        customer_id: Optional[str],
        amount: Optional[int],
        currency: Optional[str],
        status: str,
        description: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        payment_method_id: Optional[str] = None,
    ) -> None:
        """Upsert the payment audit row; a succeeded payment is never downgraded."""
        table = PaymentModel.__table__
        stmt = upsert_statement(session, table).values(
            provider_payment_intent_id=payment_intent_id,
            provider_customer_id=customer_id,
            amount=amount or 0,
            currency=currency or "aud",
            status=status,
            payment_method_id=payment_method_id,
            description=description,
            provider_metadata=metadata or {},
        )
        excluded = stmt.excluded
        await session.execute(
            stmt.on_conflict_do_update(
                index_elements=[table.c.provider_payment_intent_id],
                set_={
                    "status": excluded.status,
                    "amount": excluded.amount,
                    "payment_method_id": func.coalesce(
                        excluded.payment_method_id, table.c.payment_method_id,
                    ),
                    "updated_at": func.now(),
                },
                where=table.c.status != "succeeded",
            )
        )

    # ── Customers ──

    async def _handle_customer_created(
        self, session: AsyncSession, event: EventEnvelope,
    ) -> str:
        logger.info(
            "Provider customer created",
            extra={"event_id": event.id, "customer_id": event.object.get("id")},
        )
        return "ignored"

    async def _handle_customer_updated(
        self, session: AsyncSession, event: EventEnvelope,
    ) -> str:
        customer = event.object
        if not await self.customers.sync_customer_fields(session, customer):
            raise MissingLinkageError(f"No linkage for customer {customer.get('id')}")
        return "applied"
