"""Billing API routers."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from membership_engine.billing.schemas import (
    BootstrapResult,
    CheckoutSessionCreate,
    CheckoutSessionResponse,
    ConfirmCheckoutRequest,
    ConfirmCheckoutResponse,
    IngestResult,
    PortalRequest,
    PortalResponse,
    PriceResponse,
    ProductListResponse,
    ProductResponse,
    WebhookAck,
    WebhookEventResponse,
)
from membership_engine.common.config import get_settings
from membership_engine.common.exceptions import (
    CatalogError,
    CheckoutSessionError,
    MalformedEventError,
    MissingLinkageError,
    OwnershipError,
    ProviderError,
    SignatureVerificationError,
)
from membership_engine.common.security import CallerContext, require_api_key, require_caller

logger = logging.getLogger(__name__)

webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
checkout_router = APIRouter(prefix="/checkout", tags=["checkout"])
router = APIRouter(prefix="/billing", tags=["billing"])


def _get_db():
    from membership_engine.deps import get_db
    return get_db()


def _ack(result: IngestResult) -> WebhookAck:
    if result.status == "in_flight":
        raise HTTPException(status_code=409, detail="Event is already being processed")
    return WebhookAck(event_id=result.event_id, status=result.status, outcome=result.outcome)


# ── Provider webhooks ──

@webhook_router.post("/billing", response_model=WebhookAck)
async def billing_webhook(
    request: Request,
    stripe_signature: str = Header("", alias="Stripe-Signature"),
):
    """Receive a provider event. Non-2xx answers make the provider redeliver."""
    if not get_settings().stripe_webhook_secret:
        logger.error("Webhook secret is not configured")
        raise HTTPException(status_code=500, detail="Webhook configuration error")

    from membership_engine.deps import get_ingest_service

    body = await request.body()
    try:
        result = await get_ingest_service().ingest(body, stripe_signature)
    except (SignatureVerificationError, MalformedEventError) as e:
        raise HTTPException(status_code=400, detail=e.message)
    except Exception:
        # Already logged with the ledger failure; the provider redelivers on a 4xx.
        raise HTTPException(status_code=400, detail="Webhook processing failed")
    return _ack(result)


# ── Checkout ──

@checkout_router.post("/confirm", response_model=ConfirmCheckoutResponse)
async def confirm_checkout(
    request: Request,
    caller: CallerContext = Depends(require_caller),
):
    try:
        body = ConfirmCheckoutRequest.model_validate(await request.json())
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid request")

    from membership_engine.deps import get_confirmation_service

    svc = get_confirmation_service()
    db = _get_db()
    try:
        async with db.get_session() as session:
            result = await svc.confirm(session, caller.user_id, body.session_id)
    except CheckoutSessionError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except MissingLinkageError:
        raise HTTPException(status_code=400, detail="No account found for this checkout")
    except OwnershipError as e:
        raise HTTPException(status_code=403, detail=e.message)
    except Exception:
        logger.exception("Failed to confirm checkout session")
        raise HTTPException(status_code=500, detail="Failed to confirm checkout")
    return ConfirmCheckoutResponse(customer_id=result.customer_id, tier=result.tier)


@checkout_router.post("/sessions", response_model=CheckoutSessionResponse, status_code=201)
async def create_checkout_session(
    body: CheckoutSessionCreate,
    caller: CallerContext = Depends(require_caller),
):
    from membership_engine.deps import get_customer_service

    svc = get_customer_service()
    db = _get_db()
    try:
        async with db.get_session() as session:
            checkout = await svc.create_checkout_session(session, caller.user_id, body)
    except CatalogError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except MissingLinkageError:
        raise HTTPException(status_code=400, detail="User not found")
    except OwnershipError as e:
        raise HTTPException(status_code=403, detail=e.message)
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=e.message)
    return CheckoutSessionResponse(session_id=checkout["id"], url=checkout.get("url"))


# ── Billing portal ──

@router.post("/portal", response_model=PortalResponse)
async def create_portal_session(
    body: PortalRequest,
    caller: CallerContext = Depends(require_caller),
):
    from membership_engine.deps import get_customer_service

    svc = get_customer_service()
    db = _get_db()
    try:
        async with db.get_session() as session:
            url = await svc.create_billing_portal_session(
                session, caller.user_id,
                business_id=body.business_id,
                return_url=body.return_url,
            )
    except MissingLinkageError:
        raise HTTPException(status_code=400, detail="User not found")
    except OwnershipError as e:
        raise HTTPException(status_code=403, detail=e.message)
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=e.message)
    return PortalResponse(url=url)


# ── Catalog ──

@router.get("/products", response_model=ProductListResponse)
async def list_products(
    type: Optional[str] = Query(None, pattern="^(membership|business|listing_boost)$"),
    tier: Optional[str] = None,
):
    from membership_engine.deps import get_catalog_service

    svc = get_catalog_service()
    db = _get_db()
    async with db.get_session() as session:
        listing = await svc.list_products(session, type=type, tier=tier)
        return ProductListResponse(
            products=[
                ProductResponse(
                    provider_product_id=p.provider_product_id,
                    lookup_key=p.lookup_key,
                    name=p.name,
                    description=p.description or "",
                    type=p.type,
                    tier=p.tier,
                    features=p.features or [],
                    prices=[PriceResponse.model_validate(price) for price in prices],
                )
                for p, prices in listing
            ]
        )


@router.post("/products/bootstrap", response_model=BootstrapResult)
async def bootstrap_catalog(_=Depends(require_api_key)):
    from membership_engine.deps import get_catalog_service

    svc = get_catalog_service()
    db = _get_db()
    try:
        async with db.get_session() as session:
            return await svc.bootstrap(session)
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=e.message)


# ── Event ledger ──

@router.get("/events", response_model=list[WebhookEventResponse])
async def list_events(
    processed: Optional[bool] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    _=Depends(require_api_key),
):
    from membership_engine.deps import get_ledger

    ledger = get_ledger()
    db = _get_db()
    async with db.get_session() as session:
        events = await ledger.list_events(session, processed=processed, limit=limit, offset=offset)
        return [WebhookEventResponse.model_validate(e) for e in events]


@router.get("/events/{event_id}", response_model=WebhookEventResponse)
async def get_event(event_id: str, _=Depends(require_api_key)):
    from membership_engine.deps import get_ledger

    ledger = get_ledger()
    db = _get_db()
    async with db.get_session() as session:
        event = await ledger.get(session, event_id)
        if event is None:
            raise HTTPException(status_code=404, detail="Event not found")
        return WebhookEventResponse.model_validate(event)


@router.post("/events/{event_id}/replay", response_model=WebhookAck)
async def replay_event(event_id: str, _=Depends(require_api_key)):
    from membership_engine.deps import get_ingest_service

    try:
        result = await get_ingest_service().replay(event_id)
    except MalformedEventError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=e.message)
    return _ack(result)
