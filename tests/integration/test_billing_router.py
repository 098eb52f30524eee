"""Integration tests for the billing portal, catalog and event ledger endpoints."""

import pytest

from membership_engine.accounts.service import AccountService
from tests.fakes import make_event, make_subscription


@pytest.fixture
async def member(app_db):
    async with app_db.get_session() as session:
        await AccountService().create_user(session, email="u1@example.com", user_id="u1")


class TestHealth:
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert resp.json()["service"] == "membership-engine"


class TestPortal:
    async def test_portal(self, client, member, caller_headers):
        resp = await client.post("/billing/portal", json={}, headers=caller_headers("u1"))
        assert resp.status_code == 200
        assert resp.json()["url"].startswith("https://portal.test/")

    async def test_business_not_owned(self, client, member, caller_headers):
        resp = await client.post(
            "/billing/portal", json={"businessId": "b-other"}, headers=caller_headers("u1"),
        )
        assert resp.status_code == 403

    async def test_requires_caller(self, client):
        resp = await client.post("/billing/portal", json={})
        assert resp.status_code == 401


class TestCatalog:
    async def test_bootstrap_requires_admin(self, client):
        resp = await client.post("/billing/products/bootstrap")
        assert resp.status_code == 422

    async def test_bootstrap_then_list(self, client, admin_headers):
        resp = await client.post("/billing/products/bootstrap", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["products"] == 7

        resp = await client.get("/billing/products", params={"type": "membership"})
        assert resp.status_code == 200
        products = resp.json()["products"]
        assert [p["tier"] for p in products] == ["FREE", "PLUS", "FAMILY"]
        plus = products[1]
        assert [p["amount"] for p in plus["prices"]] == [999, 9999]

    async def test_invalid_type_filter(self, client):
        resp = await client.get("/billing/products", params={"type": "bogus"})
        assert resp.status_code == 422


class TestEvents:
    async def test_list_and_filter(self, client, admin_headers, provider, member):
        provider.events["evt_1"] = make_event(
            "evt_1", "customer.subscription.updated",
            make_subscription(metadata={"userId": "u1", "tier": "plus"}),
        )
        resp = await client.post("/billing/events/evt_1/replay", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["status"] == "processed"

        resp = await client.get("/billing/events", headers=admin_headers)
        assert [e["event_id"] for e in resp.json()] == ["evt_1"]
        resp = await client.get("/billing/events", params={"processed": "false"}, headers=admin_headers)
        assert resp.json() == []

        resp = await client.get("/billing/events/evt_1", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "applied"

    async def test_unknown_event(self, client, admin_headers):
        resp = await client.get("/billing/events/evt_nope", headers=admin_headers)
        assert resp.status_code == 404

    async def test_replay_missing_at_provider(self, client, admin_headers):
        resp = await client.post("/billing/events/evt_nope/replay", headers=admin_headers)
        assert resp.status_code == 502

    async def test_requires_admin(self, client):
        resp = await client.get("/billing/events", headers={"X-Membership-Api-Key": "wrong"})
        assert resp.status_code == 403
