"""Payment provider client.

``StripeProvider`` is constructed with its own API key and timeout and
passed to the services that need it. It owns a ``stripe.StripeClient``, so
nothing here mutates the ``stripe`` module's global configuration. Every call
returns plain dicts so the rest of the engine (and the test fakes) never
depend on SDK object types.
"""

import asyncio
import functools
import logging
from typing import Any, Optional, Protocol

import stripe

from membership_engine.common.exceptions import ProviderError

logger = logging.getLogger(__name__)

SESSION_EXPAND = ["subscription", "subscription.items.data.price.product", "customer"]
SUBSCRIPTION_EXPAND = ["items.data.price.product"]


class BillingProvider(Protocol):
    """Operations the engine needs from the payment provider."""

    async def retrieve_checkout_session(self, session_id: str) -> dict[str, Any]: ...

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]: ...

    async def retrieve_event(self, event_id: str) -> dict[str, Any]: ...

    async def create_customer(
        self, email: Optional[str], metadata: dict[str, str], idempotency_key: str,
    ) -> dict[str, Any]: ...

    async def create_checkout_session(self, **params: Any) -> dict[str, Any]: ...

    async def create_billing_portal_session(
        self, customer_id: str, return_url: str,
    ) -> dict[str, Any]: ...

    async def list_products(self) -> list[dict[str, Any]]: ...

    async def create_product(
        self, name: str, description: str, metadata: dict[str, str],
    ) -> dict[str, Any]: ...

    async def list_prices(self, product_id: str) -> list[dict[str, Any]]: ...

    async def create_price(self, **params: Any) -> dict[str, Any]: ...


def to_plain(obj: Any) -> Any:
    """Convert an SDK object tree into plain JSON-compatible dicts/lists."""
    if obj is None or type(obj) in (dict, list, str, int, float, bool):
        return obj
    return obj.to_dict()


class StripeProvider:
    """Stripe-backed ``BillingProvider`` with bounded call timeouts.

    The HTTP client carries the same timeout as the ``wait_for`` around each
    call, so a worker thread never outlives a timed-out request for long.
    """

    def __init__(self, api_key: str, timeout: float = 10.0, max_network_retries: int = 1):
        self.api_key = api_key
        self.timeout = timeout
        self.client: Optional[stripe.StripeClient] = None
        if api_key:
            self.client = stripe.StripeClient(
                api_key,
                http_client=stripe.RequestsClient(timeout=timeout),
                max_network_retries=max_network_retries,
            )

    def _require_client(self) -> stripe.StripeClient:
        if self.client is None:
            raise ProviderError("Payment provider is not configured")
        return self.client

    async def _call(self, fn, *args: Any, **kwargs: Any) -> Any:
        call = functools.partial(fn, *args, **kwargs)
        try:
            result = await asyncio.wait_for(asyncio.to_thread(call), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            logger.error("Stripe call %s timed out after %ss", fn.__qualname__, self.timeout)
            raise ProviderError("Payment provider request timed out") from exc
        except stripe.StripeError as exc:
            logger.error("Stripe call %s failed: %s", fn.__qualname__, exc)
            raise ProviderError(f"Payment provider error: {exc.user_message or exc}") from exc
        return to_plain(result)

    async def retrieve_checkout_session(self, session_id: str) -> dict[str, Any]:
        client = self._require_client()
        return await self._call(
            client.checkout.sessions.retrieve, session_id, params={"expand": SESSION_EXPAND},
        )

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        client = self._require_client()
        return await self._call(
            client.subscriptions.retrieve, subscription_id,
            params={"expand": SUBSCRIPTION_EXPAND},
        )

    async def retrieve_event(self, event_id: str) -> dict[str, Any]:
        return await self._call(self._require_client().events.retrieve, event_id)

    async def create_customer(
        self, email: Optional[str], metadata: dict[str, str], idempotency_key: str,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"metadata": metadata}
        if email:
            params["email"] = email
        return await self._call(
            self._require_client().customers.create,
            params=params,
            options={"idempotency_key": idempotency_key},
        )

    async def create_checkout_session(self, **params: Any) -> dict[str, Any]:
        return await self._call(self._require_client().checkout.sessions.create, params=params)

    async def create_billing_portal_session(
        self, customer_id: str, return_url: str,
    ) -> dict[str, Any]:
        return await self._call(
            self._require_client().billing_portal.sessions.create,
            params={"customer": customer_id, "return_url": return_url},
        )

    async def list_products(self) -> list[dict[str, Any]]:
        result = await self._call(
            self._require_client().products.list, params={"active": True, "limit": 100},
        )
        return list(result.get("data", []))

    async def create_product(
        self, name: str, description: str, metadata: dict[str, str],
    ) -> dict[str, Any]:
        return await self._call(
            self._require_client().products.create,
            params={"name": name, "description": description, "metadata": metadata},
        )

    async def list_prices(self, product_id: str) -> list[dict[str, Any]]:
        result = await self._call(
            self._require_client().prices.list,
            params={"product": product_id, "active": True, "limit": 100},
        )
        return list(result.get("data", []))

    async def create_price(self, **params: Any) -> dict[str, Any]:
        return await self._call(self._require_client().prices.create, params=params)
