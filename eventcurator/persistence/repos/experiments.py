from __future__ import annotations

from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from eventcurator.core.errors import ConcurrencyConflictError
from eventcurator.core.timeutil import utc_now
from eventcurator.domain.lifecycle import ANALYSIS_PENDING, EXPERIMENT_TRANSITIONS
from eventcurator.domain.models import AnalysisRequest, Experiment, ExperimentOutcome
from eventcurator.persistence.guards import tenant_predicate
from eventcurator.persistence.lifecycle import LifecycleStore


store: LifecycleStore[Experiment] = LifecycleStore(
    Experiment, EXPERIMENT_TRANSITIONS, resource_type="experiment"
)

# Stage writes may only set these pointer columns.
_ANALYSIS_POINTERS = frozenset({"context_path", "verdict_path"})


async def create_analysis_request(
    session: AsyncSession,
    *,
    tenant_id: str,
    experiment_id: str,
    snapshot_path: str,
) -> AnalysisRequest:
    request = AnalysisRequest(
        id=str(uuid4()),
        tenant_id=tenant_id,
        experiment_id=experiment_id,
        snapshot_path=snapshot_path,
        status=ANALYSIS_PENDING,
    )
    session.add(request)
    await session.flush()
    return request


async def get_analysis_request(
    session: AsyncSession, tenant_id: str, analysis_id: str
) -> AnalysisRequest | None:
    result = await session.execute(
        select(AnalysisRequest)
        .where(AnalysisRequest.id == analysis_id, tenant_predicate(AnalysisRequest, tenant_id))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def advance_analysis_request(
    session: AsyncSession,
    tenant_id: str,
    analysis_id: str,
    *,
    expected_status: str,
    target_status: str,
    pointers: dict[str, str] | None = None,
) -> None:
    # Status-predicated CAS: a concurrent stage call on the same request loses here.
    pointers = pointers or {}
    unknown = set(pointers) - _ANALYSIS_POINTERS
    if unknown:
        raise ValueError(f"unsupported analysis pointer columns: {sorted(unknown)}")
    result = await session.execute(
        update(AnalysisRequest)
        .where(
            AnalysisRequest.id == analysis_id,
            tenant_predicate(AnalysisRequest, tenant_id),
            AnalysisRequest.status == expected_status,
        )
        .values(status=target_status, updated_at=utc_now(), **pointers)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise ConcurrencyConflictError("analysis_request", analysis_id, expected_status)


async def insert_outcome(
    session: AsyncSession,
    *,
    tenant_id: str,
    experiment_id: str,
    outcome_path: str,
) -> ExperimentOutcome:
    outcome = ExperimentOutcome(
        id=str(uuid4()),
        tenant_id=tenant_id,
        experiment_id=experiment_id,
        outcome_path=outcome_path,
    )
    session.add(outcome)
    await session.flush()
    return outcome


async def list_outcomes(
    session: AsyncSession, tenant_id: str, experiment_id: str
) -> list[ExperimentOutcome]:
    result = await session.execute(
        select(ExperimentOutcome)
        .where(
            tenant_predicate(ExperimentOutcome, tenant_id),
            ExperimentOutcome.experiment_id == experiment_id,
        )
        .order_by(ExperimentOutcome.created_at, ExperimentOutcome.id)
    )
    return list(result.scalars().all())
