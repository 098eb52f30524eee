"""Webhook ingestion through the signature gate and the event ledger."""

import logging

from membership_engine.billing.dispatcher import WebhookDispatcher
from membership_engine.billing.ledger import EventLedger
from membership_engine.billing.provider import BillingProvider
from membership_engine.billing.schemas import EventEnvelope, IngestResult
from membership_engine.billing.signature import construct_event, parse_event
from membership_engine.common.config import MembershipSettings
from membership_engine.common.database import DatabaseManager
from membership_engine.common.exceptions import MissingLinkageError

logger = logging.getLogger(__name__)


class WebhookIngestService:
    """Runs one provider event through the pipeline exactly once.

    Transactions: the ledger claim commits on its own so the attempt count
    survives failures; dispatch and ``mark_processed`` commit together; a
    failure is recorded in a third transaction and re-raised so the
    provider redelivers. Billing emails go out only after the commit.
    """

    def __init__(
        self,
        settings: MembershipSettings,
        db: DatabaseManager,
        ledger: EventLedger,
        dispatcher: WebhookDispatcher,
        provider: BillingProvider,
    ):
        self.settings = settings
        self.db = db
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.provider = provider

    async def ingest(self, body: bytes, signature: str) -> IngestResult:
        # Verification happens before any database access.
        event = construct_event(
            body,
            signature,
            self.settings.stripe_webhook_secret,
            tolerance=self.settings.webhook_tolerance_seconds,
        )
        return await self.process(event)

    async def replay(self, event_id: str) -> IngestResult:
        """Re-fetch an event from the provider API and process it.

        The event comes straight from the authenticated API, so no signature applies.
        """
        event = parse_event(await self.provider.retrieve_event(event_id))
        logger.info("Replaying event", extra={"event_id": event.id, "event_type": event.type})
        return await self.process(event)

    async def process(self, event: EventEnvelope) -> IngestResult:
        log_extra = {"event_id": event.id, "event_type": event.type}

        async with self.db.get_session() as session:
            claim = await self.ledger.claim(session, event.id, event.type)
        log_extra["attempt"] = claim.attempt

        if claim.already_processed:
            logger.info("Duplicate delivery acknowledged", extra=log_extra)
            return IngestResult(event_id=event.id, status="duplicate", attempt=claim.attempt)
        if not claim.acquired:
            logger.info("Event is being processed by another worker", extra=log_extra)
            return IngestResult(event_id=event.id, status="in_flight", attempt=claim.attempt)

        try:
            async with self.db.get_session() as session:
                note = None
                try:
                    outcome = await self.dispatcher.dispatch(session, event)
                except MissingLinkageError as exc:
                    # Terminal: redelivery cannot create the missing owner.
                    await session.rollback()
                    outcome, note = "orphaned", exc.message
                    logger.warning(
                        "Event has no internal owner: %s", exc.message,
                        extra={**log_extra, "outcome": outcome},
                    )
                await self.ledger.mark_processed(session, event.id, outcome, note=note)
        except Exception as exc:
            logger.exception("Webhook handler failed", extra=log_extra)
            await self._record_failure(event.id, f"{type(exc).__name__}: {exc}")
            raise

        logger.info("Processed webhook event", extra={**log_extra, "outcome": outcome})
        if outcome != "orphaned":
            await self._notify(event, log_extra)
        return IngestResult(
            event_id=event.id, status="processed", attempt=claim.attempt, outcome=outcome,
        )

    async def _notify(self, event: EventEnvelope, log_extra: dict) -> None:
        # The event is already committed as processed; email trouble is only logged.
        try:
            await self.dispatcher.notify(event)
        except Exception:
            logger.exception("Failed to send billing notification", extra=log_extra)

    async def _record_failure(self, event_id: str, error: str) -> None:
        try:
            async with self.db.get_session() as session:
                await self.ledger.record_failure(session, event_id, error)
        except Exception:
            # The lease expires on its own.
            logger.exception("Could not record failure", extra={"event_id": event_id})
