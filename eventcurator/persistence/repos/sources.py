from __future__ import annotations

from datetime import datetime

from sqlalchemy import and_, case, or_
from sqlalchemy.ext.asyncio import AsyncSession

from eventcurator.domain.lifecycle import SOURCE_ACTIVE, SOURCE_INACTIVE, SOURCE_TRANSITIONS
from eventcurator.domain.models import Source
from eventcurator.persistence.lifecycle import LifecycleStore


store: LifecycleStore[Source] = LifecycleStore(Source, SOURCE_TRANSITIONS, resource_type="source")


async def list_due_sources(
    session: AsyncSession,
    tenant_id: str,
    *,
    as_of: datetime,
    limit: int,
) -> list[Source]:
    # Never-scheduled sources come first, then the longest overdue.
    stmt = (
        store.scoped_select(tenant_id)
        .where(
            Source.status == SOURCE_ACTIVE,
            or_(Source.next_navigation_at.is_(None), Source.next_navigation_at <= as_of),
        )
        .order_by(Source.next_navigation_at.is_not(None), Source.next_navigation_at, Source.id)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def record_failure(
    session: AsyncSession,
    tenant_id: str,
    source_id: str,
    *,
    threshold: int,
) -> None:
    # Increment and (at the threshold) decommission in one statement so concurrent
    # failure reports cannot lose counts.
    reaches_threshold = and_(
        Source.status == SOURCE_ACTIVE,
        Source.failure_count + 1 >= threshold,
    )
    await store.apply_atomic(
        session,
        tenant_id,
        source_id,
        {
            "failure_count": Source.failure_count + 1,
            "status": case((reaches_threshold, SOURCE_INACTIVE), else_=Source.status),
        },
    )


async def record_success(
    session: AsyncSession,
    tenant_id: str,
    source_id: str,
    *,
    navigated_at: datetime,
) -> None:
    await store.apply_atomic(
        session,
        tenant_id,
        source_id,
        {"failure_count": 0, "last_navigated_at": navigated_at},
    )
