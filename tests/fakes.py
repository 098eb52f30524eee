"""In-memory payment provider and builders for provider-shaped objects."""

import copy
import json
import time
from typing import Any, Optional

from membership_engine.billing.signature import sign_header
from membership_engine.common.config import MembershipSettings
from membership_engine.common.exceptions import ProviderError

WEBHOOK_SECRET = "whsec_test_secret"
API_KEY = "test-admin-api-key"
GATEWAY_KEY = "test-gateway-key"

PERIOD_START = 1_760_000_000
MONTH = 30 * 24 * 3600
PERIOD_END = PERIOD_START + MONTH


def make_settings(**overrides) -> MembershipSettings:
    defaults = {
        "db_url": "sqlite+aiosqlite://",
        "api_key": API_KEY,
        "gateway_key": GATEWAY_KEY,
        "stripe_secret_key": "sk_test_fake",
        "stripe_webhook_secret": WEBHOOK_SECRET,
    }
    defaults.update(overrides)
    return MembershipSettings(**defaults)


def make_subscription(
    sub_id: str = "sub_1",
    customer: str = "cus_1",
    status: str = "active",
    period_start: int = PERIOD_START,
    period_end: int = PERIOD_END,
    metadata: Optional[dict[str, str]] = None,
    price_id: str = "price_plus_month",
    price_metadata: Optional[dict[str, str]] = None,
    product: Any = None,
    **extra: Any,
) -> dict[str, Any]:
    price: dict[str, Any] = {
        "id": price_id,
        "object": "price",
        "metadata": price_metadata or {},
        "product": product if product is not None else {"id": "prod_plus", "metadata": {}},
    }
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "cancel_at": None,
        "canceled_at": None,
        "cancel_at_period_end": False,
        "trial_end": None,
        "metadata": metadata if metadata is not None else {},
        "items": {"object": "list", "data": [{"id": f"si_{sub_id}", "price": price}]},
        **extra,
    }


def make_checkout_session(
    session_id: str = "cs_test_1",
    subscription: Any = "sub_1",
    customer: Any = "cus_1",
    metadata: Optional[dict[str, str]] = None,
    client_reference_id: Optional[str] = None,
    **extra: Any,
) -> dict[str, Any]:
    return {
        "id": session_id,
        "object": "checkout.session",
        "mode": "subscription" if subscription else "payment",
        "payment_status": "paid",
        "subscription": subscription,
        "customer": customer,
        "client_reference_id": client_reference_id,
        "metadata": metadata if metadata is not None else {},
        "created": PERIOD_START,
        **extra,
    }


def make_event(event_id: str, event_type: str, obj: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": PERIOD_START,
        "livemode": False,
        "data": {"object": obj},
    }


def signed_body(event: dict[str, Any], secret: str = WEBHOOK_SECRET) -> tuple[bytes, str]:
    body = json.dumps(event).encode()
    return body, sign_header(body, secret, timestamp=int(time.time()))


class FakeProvider:
    """Dict-backed stand-in for ``StripeProvider``."""

    def __init__(self):
        self.checkout_sessions: dict[str, dict[str, Any]] = {}
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.events: dict[str, dict[str, Any]] = {}
        self.customers: list[dict[str, Any]] = []
        self.products: list[dict[str, Any]] = []
        self.prices: list[dict[str, Any]] = []
        self.created_sessions: list[dict[str, Any]] = []
        self.portal_sessions: list[dict[str, Any]] = []
        self.error: Optional[Exception] = None

    def _check(self) -> None:
        if self.error is not None:
            raise self.error

    async def retrieve_checkout_session(self, session_id: str) -> dict[str, Any]:
        self._check()
        if session_id not in self.checkout_sessions:
            raise ProviderError(f"No such checkout session: {session_id}")
        return copy.deepcopy(self.checkout_sessions[session_id])

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        self._check()
        if subscription_id not in self.subscriptions:
            raise ProviderError(f"No such subscription: {subscription_id}")
        return copy.deepcopy(self.subscriptions[subscription_id])

    async def retrieve_event(self, event_id: str) -> dict[str, Any]:
        self._check()
        if event_id not in self.events:
            raise ProviderError(f"No such event: {event_id}")
        return copy.deepcopy(self.events[event_id])

    async def create_customer(
        self, email: Optional[str], metadata: dict[str, str], idempotency_key: str,
    ) -> dict[str, Any]:
        self._check()
        for customer in self.customers:
            if customer["idempotency_key"] == idempotency_key:
                return customer
        customer = {
            "id": f"cus_fake_{len(self.customers) + 1}",
            "email": email,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        }
        self.customers.append(customer)
        return customer

    async def create_checkout_session(self, **params: Any) -> dict[str, Any]:
        self._check()
        session_id = f"cs_fake_{len(self.created_sessions) + 1}"
        self.created_sessions.append(params)
        return {"id": session_id, "url": f"https://checkout.test/{session_id}"}

    async def create_billing_portal_session(
        self, customer_id: str, return_url: str,
    ) -> dict[str, Any]:
        self._check()
        self.portal_sessions.append({"customer": customer_id, "return_url": return_url})
        return {"url": f"https://portal.test/{customer_id}"}

    async def list_products(self) -> list[dict[str, Any]]:
        self._check()
        return copy.deepcopy(self.products)

    async def create_product(
        self, name: str, description: str, metadata: dict[str, str],
    ) -> dict[str, Any]:
        self._check()
        product = {
            "id": f"prod_{name.lower()}",
            "name": name,
            "description": description,
            "metadata": metadata,
        }
        self.products.append(product)
        return product

    async def list_prices(self, product_id: str) -> list[dict[str, Any]]:
        self._check()
        return [copy.deepcopy(p) for p in self.prices if p["product"] == product_id]

    async def create_price(self, **params: Any) -> dict[str, Any]:
        self._check()
        price = {"id": f"price_{params['metadata']['lookup_key'].lower()}", **params}
        self.prices.append(price)
        return price
