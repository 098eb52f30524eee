"""Event ledger: idempotency anchor for webhook processing.

Every delivery of a provider event increments ``attempts`` on the row keyed
by the event id. ``processed`` flips false→true once, after all downstream
writes committed; it never flips back. An unprocessed row can be claimed
for processing by one worker at a time through a short lease, so two
concurrent deliveries of the same event never both run the dispatcher.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from membership_engine.billing.models import WebhookEventModel
from membership_engine.common.config import MembershipSettings
from membership_engine.common.database import upsert_statement
from membership_engine.common.models import generate_uuid

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1024


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ClaimResult:
    already_processed: bool
    attempt: int
    # False when the event is processed or another worker holds the lease.
    acquired: bool


class EventLedger:
    """Durable record of webhook event ids and their processing state."""

    def __init__(self, settings: MembershipSettings):
        self.settings = settings

    async def claim(
        self,
        session: AsyncSession,
        event_id: str,
        event_type: str = "",
        now: Optional[datetime] = None,
    ) -> ClaimResult:
        """Record a delivery of ``event_id`` and try to take the processing lease."""
        now = now or _utcnow()
        table = WebhookEventModel.__table__

        stmt = upsert_statement(session, table).values(
            id=generate_uuid(),
            event_id=event_id,
            event_type=event_type,
            processed=False,
            attempts=1,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.event_id],
            set_={"attempts": table.c.attempts + 1, "updated_at": now},
        ).returning(table.c.processed, table.c.attempts)
        row = (await session.execute(stmt)).one()
        processed, attempt = bool(row.processed), int(row.attempts)

        if processed:
            return ClaimResult(already_processed=True, attempt=attempt, acquired=False)

        lease = timedelta(seconds=self.settings.ledger_lease_seconds)
        result = await session.execute(
            update(WebhookEventModel)
            .where(
                WebhookEventModel.event_id == event_id,
                WebhookEventModel.processed.is_(False),
                or_(
                    WebhookEventModel.locked_until.is_(None),
                    WebhookEventModel.locked_until < now,
                ),
            )
            .values(locked_until=now + lease)
            .execution_options(synchronize_session=False)
        )
        return ClaimResult(
            already_processed=False,
            attempt=attempt,
            acquired=result.rowcount == 1,
        )

    async def mark_processed(
        self,
        session: AsyncSession,
        event_id: str,
        outcome: str,
        note: Optional[str] = None,
    ) -> bool:
        """Flip ``processed`` to true. Returns False if it already was.

        ``note`` is kept in ``last_error`` for events acknowledged without effect.
        """
        result = await session.execute(
            update(WebhookEventModel)
            .where(
                WebhookEventModel.event_id == event_id,
                WebhookEventModel.processed.is_(False),
            )
            .values(
                processed=True,
                processed_at=_utcnow(),
                outcome=outcome,
                last_error=note[:MAX_ERROR_LENGTH] if note else None,
                locked_until=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_failure(
        self,
        session: AsyncSession,
        event_id: str,
        error: str,
    ) -> None:
        """Keep the event unprocessed, store the error and release the lease."""
        await session.execute(
            update(WebhookEventModel)
            .where(
                WebhookEventModel.event_id == event_id,
                WebhookEventModel.processed.is_(False),
            )
            .values(
                last_error=(error or "Unknown error")[:MAX_ERROR_LENGTH],
                locked_until=None,
            )
            .execution_options(synchronize_session=False)
        )

    async def get(
        self, session: AsyncSession, event_id: str,
    ) -> Optional[WebhookEventModel]:
        result = await session.execute(
            select(WebhookEventModel).where(WebhookEventModel.event_id == event_id)
        )
        return result.scalar_one_or_none()

    async def list_events(
        self,
        session: AsyncSession,
        processed: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookEventModel]:
        query = select(WebhookEventModel)
        if processed is not None:
            query = query.where(WebhookEventModel.processed.is_(processed))
        query = query.order_by(WebhookEventModel.created_at.desc())
        query = query.offset(offset).limit(limit)
        result = await session.execute(query)
        return list(result.scalars().all())
