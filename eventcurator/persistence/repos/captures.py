from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from eventcurator.domain.lifecycle import CAPTURE_TRANSITIONS
from eventcurator.domain.models import Capture
from eventcurator.persistence.lifecycle import LifecycleStore


store: LifecycleStore[Capture] = LifecycleStore(Capture, CAPTURE_TRANSITIONS, resource_type="capture")


async def list_latest_for_source(
    session: AsyncSession,
    tenant_id: str,
    source_id: str,
    *,
    limit: int = 2,
) -> list[Capture]:
    result = await session.execute(
        store.scoped_select(tenant_id)
        .where(Capture.source_id == source_id)
        .order_by(Capture.captured_at.desc(), Capture.created_at.desc(), Capture.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def id_in_use(session: AsyncSession, capture_id: str) -> bool:
    # Primary keys are global, so this deliberately ignores tenant and soft delete.
    result = await session.execute(select(Capture.id).where(Capture.id == capture_id))
    return result.scalar_one_or_none() is not None
