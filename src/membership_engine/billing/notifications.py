"""Billing emails — payment receipts and dunning notices via SendGrid / Resend."""

import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


def _format_amount(amount: Optional[int], currency: Optional[str]) -> str:
    cents = amount or 0
    return f"{cents / 100:.2f} {(currency or 'aud').upper()}"


class BillingNotifier:
    """Sends invoice notifications to the paying customer.

    Supports SendGrid and Resend. With no provider configured the message
    is only logged. Delivery failures never propagate into event handling.
    """

    def __init__(
        self,
        provider: str = "",
        api_key: str = "",
        from_email: str = "billing@example.com",
        from_name: str = "Membership Billing",
        timeout: float = 30.0,
    ):
        self.provider = provider.lower()  # "sendgrid" or "resend"
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.timeout = timeout

    async def send_receipt(self, invoice: dict[str, Any]) -> bool:
        amount = _format_amount(invoice.get("amount_paid"), invoice.get("currency"))
        body = (
            f"Hi {invoice.get('customer_name') or 'there'},\n\n"
            f"We received your payment of {amount}.\n"
        )
        if invoice.get("hosted_invoice_url"):
            body += f"\nView your invoice: {invoice['hosted_invoice_url']}\n"
        return await self._notify(invoice, "Payment received", body)

    async def send_payment_failed(self, invoice: dict[str, Any]) -> bool:
        amount = _format_amount(invoice.get("amount_due"), invoice.get("currency"))
        body = (
            f"Hi {invoice.get('customer_name') or 'there'},\n\n"
            f"We could not collect your payment of {amount}. "
            f"Please update your payment method to keep your membership active.\n"
        )
        return await self._notify(invoice, "Payment failed", body)

    async def send_action_required(self, invoice: dict[str, Any]) -> bool:
        body = (
            f"Hi {invoice.get('customer_name') or 'there'},\n\n"
            f"Your bank needs you to confirm a payment before it can complete.\n"
        )
        if invoice.get("hosted_invoice_url"):
            body += f"\nConfirm it here: {invoice['hosted_invoice_url']}\n"
        return await self._notify(invoice, "Action required for your payment", body)

    async def _notify(self, invoice: dict[str, Any], subject: str, body: str) -> bool:
        to_email = invoice.get("customer_email")
        if not to_email:
            logger.info("Invoice %s has no customer email; skipping notice", invoice.get("id"))
            return False

        if self.provider == "sendgrid":
            return await self._send_sendgrid(to_email, subject, body)
        elif self.provider == "resend":
            return await self._send_resend(to_email, subject, body)
        logger.info("No email provider configured; would send %r to %s", subject, to_email)
        return False

    async def _send_sendgrid(self, to: str, subject: str, body: str) -> bool:
        """Send via SendGrid v3 API."""
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    "https://api.sendgrid.com/v3/mail/send",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "personalizations": [{"to": [{"email": to}]}],
                        "from": {"email": self.from_email, "name": self.from_name},
                        "subject": subject,
                        "content": [{"type": "text/plain", "value": body}],
                    },
                    timeout=self.timeout,
                )
            if resp.status_code in (200, 202):
                logger.info("SendGrid email sent to %s", to)
                return True
            logger.warning("SendGrid error: %s %s", resp.status_code, resp.text)
            return False
        except httpx.HTTPError:
            logger.exception("SendGrid send failed")
            return False

    async def _send_resend(self, to: str, subject: str, body: str) -> bool:
        """Send via Resend API."""
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    "https://api.resend.com/emails",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "from": f"{self.from_name} <{self.from_email}>",
                        "to": [to],
                        "subject": subject,
                        "text": body,
                    },
                    timeout=self.timeout,
                )
            if resp.status_code in (200, 201):
                logger.info("Resend email sent to %s", to)
                return True
            logger.warning("Resend error: %s %s", resp.status_code, resp.text)
            return False
        except httpx.HTTPError:
            logger.exception("Resend send failed")
            return False
