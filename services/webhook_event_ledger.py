"""
Webhook Event Ledger - audit trail of inbound gateway webhooks

One row per distinct (provider, event_id); repeat deliveries bump delivery_count.
This is an audit record for replay and reconciliation. Money movement is
deduplicated by the transaction reference, never by this table.
"""

import hashlib
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from models import WebhookEventLedger, WebhookEventStatus, utcnow
from utils.atomic_transactions import async_atomic_transaction

logger = logging.getLogger(__name__)


def webhook_event_id(event_type: str, reference: Optional[str], raw_body: bytes) -> str:
    """Stable id for a delivery: event type plus reference, or a body hash when there is no reference"""
    if reference:
        return f"{event_type}:{reference}"
    return f"{event_type}:sha256:{hashlib.sha256(raw_body).hexdigest()}"


class WebhookEventRecorder:
    """Records webhook deliveries and their processing outcome"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def record_received(
        self,
        provider: str,
        event_id: str,
        event_type: str,
        reference: Optional[str] = None,
        amount: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Insert the event, or count a repeat delivery; returns the delivery count"""
        try:
            async with async_atomic_transaction(self.session_factory, f"webhook_event:{provider}") as session:
                session.add(
                    WebhookEventLedger(
                        event_provider=provider,
                        event_id=event_id,
                        event_type=event_type or "unknown",
                        reference_id=reference,
                        amount=amount,
                        status=WebhookEventStatus.PROCESSING.value,
                        delivery_count=1,
                        payload=payload,
                    )
                )
            logger.info(f"📥 WEBHOOK_EVENT: {provider} {event_id} recorded")
            return 1
        except IntegrityError:
            pass

        async with async_atomic_transaction(self.session_factory, f"webhook_redelivery:{provider}") as session:
            result = await session.execute(
                update(WebhookEventLedger)
                .where(
                    WebhookEventLedger.event_provider == provider,
                    WebhookEventLedger.event_id == event_id,
                )
                .values(delivery_count=WebhookEventLedger.delivery_count + 1)
                .returning(WebhookEventLedger.delivery_count)
                .execution_options(synchronize_session=False)
            )
            count = result.scalar_one()
        logger.info(f"🔁 WEBHOOK_REDELIVERY: {provider} {event_id} delivery #{count}")
        return count

    async def mark(
        self,
        provider: str,
        event_id: str,
        status: WebhookEventStatus,
        result: Optional[str] = None,
        error: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        values: Dict[str, Any] = {"status": status.value, "processing_result": result, "error_message": error}
        if user_id is not None:
            values["user_id"] = user_id
        if status is not WebhookEventStatus.PROCESSING:
            values["completed_at"] = utcnow()

        async with async_atomic_transaction(self.session_factory, f"webhook_mark:{provider}") as session:
            await session.execute(
                update(WebhookEventLedger)
                .where(
                    WebhookEventLedger.event_provider == provider,
                    WebhookEventLedger.event_id == event_id,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    async def get(self, provider: str, event_id: str) -> Optional[WebhookEventLedger]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookEventLedger).where(
                    WebhookEventLedger.event_provider == provider,
                    WebhookEventLedger.event_id == event_id,
                )
            )
            return result.scalar_one_or_none()

    async def list_by_status(
        self,
        statuses: Iterable[WebhookEventStatus],
        since: Optional[datetime] = None,
    ) -> List[WebhookEventLedger]:
        conditions = [WebhookEventLedger.status.in_([status.value for status in statuses])]
        if since is not None:
            conditions.append(WebhookEventLedger.created_at >= since)
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookEventLedger).where(*conditions).order_by(WebhookEventLedger.created_at)
            )
            return list(result.scalars().all())
