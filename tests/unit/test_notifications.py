"""Tests for billing notifications."""

from unittest.mock import AsyncMock, patch

import httpx

from membership_engine.billing.notifications import BillingNotifier

INVOICE = {
    "id": "in_1",
    "customer_email": "u1@example.com",
    "customer_name": "Una",
    "amount_paid": 1999,
    "amount_due": 1999,
    "currency": "aud",
    "hosted_invoice_url": "https://invoice.test/in_1",
}


class TestBillingNotifier:
    async def test_no_provider_returns_false(self):
        assert await BillingNotifier().send_receipt(INVOICE) is False

    async def test_no_customer_email(self):
        notifier = BillingNotifier(provider="sendgrid", api_key="k")
        with patch.object(httpx.AsyncClient, "post", new=AsyncMock()) as post:
            assert await notifier.send_receipt({"id": "in_2"}) is False
        post.assert_not_awaited()

    async def test_sendgrid_receipt(self):
        notifier = BillingNotifier(provider="SendGrid", api_key="sg-key")
        with patch.object(
            httpx.AsyncClient, "post", new=AsyncMock(return_value=httpx.Response(202)),
        ) as post:
            assert await notifier.send_receipt(INVOICE) is True

        url = post.await_args.args[0]
        payload = post.await_args.kwargs["json"]
        assert url == "https://api.sendgrid.com/v3/mail/send"
        assert payload["personalizations"] == [{"to": [{"email": "u1@example.com"}]}]
        assert "19.99 AUD" in payload["content"][0]["value"]
        assert post.await_args.kwargs["headers"]["Authorization"] == "Bearer sg-key"

    async def test_resend_payment_failed(self):
        notifier = BillingNotifier(provider="resend", api_key="re-key")
        with patch.object(
            httpx.AsyncClient, "post", new=AsyncMock(return_value=httpx.Response(200)),
        ) as post:
            assert await notifier.send_payment_failed(INVOICE) is True
        payload = post.await_args.kwargs["json"]
        assert payload["to"] == ["u1@example.com"]
        assert payload["subject"] == "Payment failed"

    async def test_provider_error_status(self):
        notifier = BillingNotifier(provider="resend", api_key="re-key")
        with patch.object(
            httpx.AsyncClient, "post",
            new=AsyncMock(return_value=httpx.Response(500, text="down")),
        ):
            assert await notifier.send_action_required(INVOICE) is False

    async def test_transport_error_is_swallowed(self):
        notifier = BillingNotifier(provider="sendgrid", api_key="k")
        with patch.object(
            httpx.AsyncClient, "post",
            new=AsyncMock(side_effect=httpx.ConnectError("unreachable")),
        ):
            assert await notifier.send_receipt(INVOICE) is False
