from __future__ import annotations

from decimal import Decimal
from typing import Iterable
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from eventcurator.core.timeutil import utc_now
from eventcurator.domain.models import ExperimentBudget
from eventcurator.persistence.guards import tenant_predicate


async def insert_allocations(
    session: AsyncSession,
    *,
    tenant_id: str,
    experiment_id: str,
    allocations: Iterable[tuple[str, str, Decimal, str]],
) -> list[ExperimentBudget]:
    # Allocations arrive as (platform, dimension, total, unit); used always starts at zero.
    rows = [
        ExperimentBudget(
            id=str(uuid4()),
            tenant_id=tenant_id,
            experiment_id=experiment_id,
            platform=platform,
            dimension=dimension,
            total=total,
            used=Decimal("0"),
            unit=unit,
        )
        for platform, dimension, total, unit in allocations
    ]
    if not rows:
        return rows
    session.add_all(rows)
    await session.flush()
    return rows


async def list_entries(
    session: AsyncSession, tenant_id: str, experiment_id: str
) -> list[ExperimentBudget]:
    result = await session.execute(
        select(ExperimentBudget)
        .where(
            tenant_predicate(ExperimentBudget, tenant_id),
            ExperimentBudget.experiment_id == experiment_id,
        )
        .order_by(ExperimentBudget.created_at, ExperimentBudget.platform, ExperimentBudget.dimension)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def increment_used(
    session: AsyncSession,
    *,
    tenant_id: str,
    experiment_id: str,
    platform: str,
    dimension: str,
    amount: Decimal,
) -> int:
    # Arithmetic happens in the database so concurrent consumers never lose updates.
    result = await session.execute(
        update(ExperimentBudget)
        .where(
            tenant_predicate(ExperimentBudget, tenant_id),
            ExperimentBudget.experiment_id == experiment_id,
            ExperimentBudget.platform == platform,
            ExperimentBudget.dimension == dimension,
        )
        .values(used=ExperimentBudget.used + amount, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
