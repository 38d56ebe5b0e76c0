from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.subscriptions.db_models import Subscription, SubscriptionEvent
from app.domain.subscriptions.statuses import ActorType, EventType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    actor_type: ActorType
    actor_id: str | None = None


SYSTEM_ACTOR = Actor(ActorType.SYSTEM)


def _jsonable(metadata: dict[str, Any] | None) -> dict[str, Any]:
    if not metadata:
        return {}
    cleaned: dict[str, Any] = {}
    for key, value in metadata.items():
        if isinstance(value, (date, datetime)):
            cleaned[key] = value.isoformat()
        else:
            cleaned[key] = value
    return cleaned


async def record_event(
    session: AsyncSession,
    subscription: Subscription,
    event_type: EventType,
    actor: Actor = SYSTEM_ACTOR,
    *,
    schedule_id: str | None = None,
    job_id: str | None = None,
    invoice_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    notes: str | None = None,
) -> SubscriptionEvent | None:
    """Append an audit event inside a savepoint of the caller's transaction.

    A failed write is logged and dropped; the surrounding mutation stands.
    """

    event = SubscriptionEvent(
        subscription_id=subscription.subscription_id,
        business_id=subscription.business_id,
        schedule_id=schedule_id,
        job_id=job_id,
        invoice_id=invoice_id,
        event_type=event_type,
        actor_type=actor.actor_type,
        actor_id=actor.actor_id,
        event_metadata=_jsonable(metadata),
        notes=notes,
    )
    try:
        async with session.begin_nested():
            session.add(event)
    except SQLAlchemyError:
        logger.exception(
            "subscription_event_write_failed",
            extra={
                "extra": {
                    "subscription_id": subscription.subscription_id,
                    "event_type": str(event_type),
                }
            },
        )
        return None
    return event


async def list_events(
    session: AsyncSession, subscription_id: str, *, limit: int = 100
) -> list[SubscriptionEvent]:
    stmt = (
        select(SubscriptionEvent)
        .where(SubscriptionEvent.subscription_id == subscription_id)
        .order_by(SubscriptionEvent.created_at.desc(), SubscriptionEvent.event_id)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
