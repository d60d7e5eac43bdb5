from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from eventcurator.domain.lifecycle import EVENT_PUBLISHED, EVENT_TRANSITIONS
from eventcurator.domain.models import Event, EventRelationship, EventSource
from eventcurator.persistence.guards import tenant_predicate
from eventcurator.persistence.lifecycle import LifecycleStore


store: LifecycleStore[Event] = LifecycleStore(Event, EVENT_TRANSITIONS, resource_type="event")

RELATIONSHIP_SUPERSEDES = "supersedes"


async def link_source(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_id: str,
    source_id: str,
) -> EventSource:
    link = EventSource(id=str(uuid4()), tenant_id=tenant_id, event_id=event_id, source_id=source_id)
    session.add(link)
    await session.flush()
    return link


async def get_source_id(session: AsyncSession, tenant_id: str, event_id: str) -> str | None:
    # First discovering source wins when an event was seen on several.
    result = await session.execute(
        select(EventSource.source_id)
        .where(tenant_predicate(EventSource, tenant_id), EventSource.event_id == event_id)
        .order_by(EventSource.discovered_at, EventSource.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def add_relationship(
    session: AsyncSession,
    *,
    tenant_id: str,
    from_event_id: str,
    to_event_id: str,
    relationship_type: str,
) -> EventRelationship:
    relationship = EventRelationship(
        id=str(uuid4()),
        tenant_id=tenant_id,
        from_event_id=from_event_id,
        to_event_id=to_event_id,
        relationship_type=relationship_type,
    )
    session.add(relationship)
    await session.flush()
    return relationship


async def list_relationships(
    session: AsyncSession, tenant_id: str, event_id: str
) -> list[EventRelationship]:
    result = await session.execute(
        select(EventRelationship)
        .where(
            tenant_predicate(EventRelationship, tenant_id),
            EventRelationship.from_event_id == event_id,
        )
        .order_by(EventRelationship.created_at, EventRelationship.id)
    )
    return list(result.scalars().all())


async def list_published_between(
    session: AsyncSession,
    tenant_id: str,
    *,
    period_start: datetime,
    period_end: datetime,
) -> list[tuple[Event, str | None]]:
    # Outer join keeps events whose source link was never recorded.
    stmt = (
        store.scoped_select(tenant_id)
        .add_columns(EventSource.source_id)
        .outerjoin(
            EventSource,
            and_(EventSource.event_id == Event.id, EventSource.tenant_id == Event.tenant_id),
        )
        .where(
            Event.status == EVENT_PUBLISHED,
            Event.starts_at >= period_start,
            Event.starts_at <= period_end,
        )
        .order_by(Event.starts_at, Event.id)
    )
    result = await session.execute(stmt)
    seen: set[str] = set()
    rows: list[tuple[Event, str | None]] = []
    for event, source_id in result.all():
        if event.id in seen:
            continue
        seen.add(event.id)
        rows.append((event, source_id))
    return rows
