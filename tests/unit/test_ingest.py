"""Tests for the ingest pipeline."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import select

from membership_engine.accounts.service import AccountService
from membership_engine.billing.catalog import CatalogService
from membership_engine.billing.customers import CustomerService
from membership_engine.billing.dispatcher import WebhookDispatcher
from membership_engine.billing.ledger import EventLedger
from membership_engine.billing.models import SubscriptionModel, WebhookEventModel
from membership_engine.billing.notifications import BillingNotifier
from membership_engine.billing.service import WebhookIngestService
from membership_engine.billing.synchronizer import EntitlementSynchronizer
from membership_engine.common.database import DatabaseManager
from membership_engine.common.exceptions import ProviderError, SignatureVerificationError
from tests.fakes import make_event, make_settings, make_subscription, signed_body


@pytest.fixture
def ledger(settings):
    return EventLedger(settings)


@pytest.fixture
def dispatcher(settings, provider, accounts):
    customers = CustomerService(settings, provider, accounts, CatalogService(provider))
    return WebhookDispatcher(settings, provider, EntitlementSynchronizer(), customers)


@pytest.fixture
def ingest(settings, db, ledger, dispatcher, provider):
    return WebhookIngestService(settings, db, ledger, dispatcher, provider)


def plus_updated(event_id="evt_1", status="active"):
    sub = make_subscription(status=status, metadata={"userId": "u1", "tier": "plus"})
    return make_event(event_id, "customer.subscription.updated", sub)


async def ledger_row(db, event_id):
    async with db.get_session() as session:
        result = await session.execute(
            select(WebhookEventModel).where(WebhookEventModel.event_id == event_id)
        )
        return result.scalar_one_or_none()


async def user_tier(db, accounts):
    async with db.get_session() as session:
        return (await accounts.get_user(session, "u1")).membership_tier


class TestIngest:
    async def test_processes_event(self, db, ingest, accounts, user):
        body, header = signed_body(plus_updated())
        result = await ingest.ingest(body, header)

        assert result.status == "processed"
        assert result.outcome == "applied"
        assert result.attempt == 1
        assert await user_tier(db, accounts) == "PLUS"
        row = await ledger_row(db, "evt_1")
        assert row.processed is True
        assert row.attempts == 1

    async def test_redelivery_has_no_second_effect(self, db, ingest, dispatcher, accounts, user):
        body, header = signed_body(plus_updated())
        with patch.object(dispatcher, "dispatch", wraps=dispatcher.dispatch) as spy:
            await ingest.ingest(body, header)
            result = await ingest.ingest(body, header)

        assert result.status == "duplicate"
        assert spy.call_count == 1
        row = await ledger_row(db, "evt_1")
        assert row.attempts == 2
        assert row.processed is True

    async def test_cancellation_then_baseline(self, db, ingest, accounts, user):
        await ingest.ingest(*signed_body(plus_updated()))
        deleted = make_event(
            "evt_2", "customer.subscription.deleted",
            make_subscription(metadata={"userId": "u1", "tier": "plus"}),
        )
        result = await ingest.ingest(*signed_body(deleted))

        assert result.outcome == "applied"
        assert await user_tier(db, accounts) == "FREE"
        async with db.get_session() as session:
            sub = (await session.execute(select(SubscriptionModel))).scalar_one()
        assert sub.status == "canceled"

    async def test_bad_signature_writes_nothing(self, db, ingest, user):
        body, _ = signed_body(plus_updated())
        _, wrong = signed_body(plus_updated(), secret="whsec_wrong")
        with pytest.raises(SignatureVerificationError):
            await ingest.ingest(body, wrong)
        assert await ledger_row(db, "evt_1") is None

    async def test_failure_leaves_event_retryable(self, db, ingest, provider, accounts, user):
        provider.subscriptions["sub_1"] = make_subscription(
            metadata={"userId": "u1", "tier": "plus"},
        )
        paid = make_event("evt_3", "invoice.paid", {
            "id": "in_1", "customer": "cus_1", "subscription": "sub_1", "amount_paid": 999,
        })
        body, header = signed_body(paid)

        provider.error = ProviderError("Payment provider request timed out")
        with pytest.raises(ProviderError):
            await ingest.ingest(body, header)
        row = await ledger_row(db, "evt_3")
        assert row.processed is False
        assert "timed out" in row.last_error
        assert row.locked_until is None
        assert await user_tier(db, accounts) == "FREE"

        provider.error = None
        result = await ingest.ingest(body, header)
        assert result.status == "processed"
        assert result.attempt == 2
        assert await user_tier(db, accounts) == "PLUS"

    async def test_orphaned_event_is_acknowledged(self, db, ingest):
        sub = make_subscription(metadata={"userId": "nobody", "tier": "plus"})
        body, header = signed_body(make_event("evt_4", "customer.subscription.created", sub))
        result = await ingest.ingest(body, header)

        assert result.status == "processed"
        assert result.outcome == "orphaned"
        row = await ledger_row(db, "evt_4")
        assert row.processed is True
        assert "nobody" in row.last_error
        async with db.get_session() as session:
            assert (await session.execute(select(SubscriptionModel))).first() is None

    async def test_in_flight_claim_is_not_processed(self, db, ingest, ledger, dispatcher, user):
        async with db.get_session() as session:
            await ledger.claim(session, "evt_1", "customer.subscription.updated")
        body, header = signed_body(plus_updated())
        with patch.object(dispatcher, "dispatch", wraps=dispatcher.dispatch) as spy:
            result = await ingest.ingest(body, header)
        assert result.status == "in_flight"
        assert spy.call_count == 0

    async def test_unknown_event_type_acknowledged(self, db, ingest):
        body, header = signed_body(make_event("evt_5", "product.created", {"id": "prod_1"}))
        result = await ingest.ingest(body, header)
        assert result.outcome == "ignored"
        assert (await ledger_row(db, "evt_5")).processed is True


class TestReplay:
    async def test_replays_from_provider(self, db, ingest, provider, accounts, user):
        provider.events["evt_1"] = plus_updated()
        result = await ingest.replay("evt_1")
        assert result.status == "processed"
        assert await user_tier(db, accounts) == "PLUS"

    async def test_replay_of_processed_event_is_duplicate(self, db, ingest, provider, user):
        provider.events["evt_1"] = plus_updated()
        await ingest.replay("evt_1")
        result = await ingest.replay("evt_1")
        assert result.status == "duplicate"
        assert result.attempt == 2


class TestEventOrdering:
    async def test_older_event_delivered_late_is_stale(self, db, ingest, accounts, user):
        newer = plus_updated("evt_new")
        newer["created"] += 2000
        older = plus_updated("evt_old", status="past_due")
        older["created"] += 1000

        assert (await ingest.ingest(*signed_body(newer))).outcome == "applied"
        result = await ingest.ingest(*signed_body(older))

        assert result.status == "processed"
        assert result.outcome == "stale"
        assert await user_tier(db, accounts) == "PLUS"
        async with db.get_session() as session:
            sub = (await session.execute(select(SubscriptionModel))).scalar_one()
        assert sub.status == "active"


class TestConcurrentDelivery:
    @pytest.fixture
    async def file_db(self, tmp_path):
        manager = DatabaseManager(make_settings(db_url=f"sqlite+aiosqlite:///{tmp_path}/ledger.db"))
        await manager.init()
        await manager.create_all()
        async with manager.get_session() as session:
            await AccountService().create_user(session, email="u1@example.com", user_id="u1")
        yield manager
        await manager.close()

    async def test_same_event_is_processed_once(self, settings, file_db, ledger, dispatcher, provider):
        service = WebhookIngestService(settings, file_db, ledger, dispatcher, provider)
        body, header = signed_body(plus_updated())

        results = await asyncio.gather(*(service.ingest(body, header) for _ in range(4)))

        statuses = sorted(r.status for r in results)
        assert statuses.count("processed") == 1
        assert set(statuses) - {"processed"} <= {"duplicate", "in_flight"}
        row = await ledger_row(file_db, "evt_1")
        assert row.processed is True
        assert row.attempts == 4
        async with file_db.get_session() as session:
            subs = (await session.execute(select(SubscriptionModel))).scalars().all()
            tier = (await AccountService().get_user(session, "u1")).membership_tier
        assert len(subs) == 1
        assert tier == "PLUS"


class TestNotifications:
    @pytest.fixture
    def notifier(self):
        return MagicMock(spec=BillingNotifier)

    @pytest.fixture
    def notifying_ingest(self, settings, db, ledger, provider, accounts, notifier):
        customers = CustomerService(settings, provider, accounts, CatalogService(provider))
        dispatcher = WebhookDispatcher(
            settings, provider, EntitlementSynchronizer(), customers, notifier=notifier,
        )
        return WebhookIngestService(settings, db, ledger, dispatcher, provider)

    def failed_invoice(self, event_id="evt_9"):
        return make_event(event_id, "invoice.payment_failed", {
            "id": "in_1", "customer": "cus_1", "subscription": "sub_1",
            "payment_intent": "pi_1", "amount_due": 999, "currency": "aud",
        })

    async def test_sent_once_after_commit(self, db, notifying_ingest, notifier):
        sent_after = []

        async def check_committed(invoice):
            sent_after.append((await ledger_row(db, "evt_9")).processed)
            return True

        notifier.send_payment_failed.side_effect = check_committed
        body, header = signed_body(self.failed_invoice())
        await notifying_ingest.ingest(body, header)
        await notifying_ingest.ingest(body, header)

        assert sent_after == [True]

    async def test_send_failure_still_acknowledges(self, db, notifying_ingest, notifier):
        notifier.send_payment_failed.side_effect = RuntimeError("smtp down")
        result = await notifying_ingest.ingest(*signed_body(self.failed_invoice()))

        assert result.status == "processed"
        assert (await ledger_row(db, "evt_9")).processed is True

    async def test_not_sent_when_dispatch_fails(self, db, notifying_ingest, provider, notifier):
        provider.error = ProviderError("Payment provider request timed out")
        paid = make_event("evt_3", "invoice.paid", {
            "id": "in_1", "customer": "cus_1", "subscription": "sub_1", "amount_paid": 999,
        })
        with pytest.raises(ProviderError):
            await notifying_ingest.ingest(*signed_body(paid))
        notifier.send_receipt.assert_not_awaited()
