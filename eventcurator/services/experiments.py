from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventcurator.core.errors import (
    BlobExistsError,
    ConcurrencyConflictError,
    InvalidTransitionError,
    NotFoundError,
    UnknownBudgetDimensionError,
    ValidationError,
)
from eventcurator.core.timeutil import ensure_utc
from eventcurator.domain.lifecycle import (
    ANALYSIS_ACCEPTED,
    ANALYSIS_CONTEXT_PREPARED,
    ANALYSIS_VERDICT_PROVIDED,
    EXPERIMENT_ACTIVE,
    EXPERIMENT_CANCELLED,
    EXPERIMENT_COMPLETED,
    EXPERIMENT_FAILED,
    EXPERIMENT_PHASES,
    BudgetStrategy,
    previous_analysis_stage,
)
from eventcurator.domain.models import AnalysisRequest, Experiment, ExperimentBudget
from eventcurator.persistence.db import SessionLocal
from eventcurator.persistence.repos import budgets as budgets_repo
from eventcurator.persistence.repos import experiments as experiments_repo
from eventcurator.services.blobs import BlobStore, blob_path, create_blob_store


logger = logging.getLogger(__name__)


class BudgetAllocation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    platform: str = Field(min_length=1)
    dimension: str = Field(min_length=1)
    total: Decimal = Field(ge=0)
    unit: str = Field(min_length=1)


class BudgetPlan(BaseModel):
    model_config = ConfigDict(extra="forbid")

    strategy: BudgetStrategy
    allocations: list[BudgetAllocation] = Field(default_factory=list)


class ExperimentConfig(BaseModel):
    name: str = Field(min_length=1)
    notes: str | None = None
    budget: BudgetPlan


class UsageEntry(BaseModel):
    platform: str = Field(min_length=1)
    dimension: str = Field(min_length=1)
    amount: Decimal = Field(ge=0)


@dataclass(frozen=True)
class BudgetEntry:
    platform: str
    dimension: str
    total: Decimal
    used: Decimal
    remaining: Decimal
    unit: str


@dataclass(frozen=True)
class BudgetSummary:
    experiment_id: str
    strategy: str
    entries: tuple[BudgetEntry, ...]

    def entry(self, platform: str, dimension: str) -> BudgetEntry | None:
        for item in self.entries:
            if item.platform == platform and item.dimension == dimension:
                return item
        return None


@dataclass(frozen=True)
class OutcomeRecord:
    outcome_id: str
    outcome_path: str
    recorded_at: datetime


def _format_validation_error(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "config"
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts)


def _parse_config(config: ExperimentConfig | Mapping[str, Any]) -> ExperimentConfig:
    try:
        parsed = ExperimentConfig.model_validate(config)
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid experiment config: {_format_validation_error(exc)}") from exc
    seen: set[tuple[str, str]] = set()
    for allocation in parsed.budget.allocations:
        key = (allocation.platform, allocation.dimension)
        if key in seen:
            raise ValidationError(
                f"duplicate budget allocation for platform='{key[0]}', dimension='{key[1]}'"
            )
        seen.add(key)
    return parsed


def _parse_usage(entries: Iterable[UsageEntry | Mapping[str, Any]]) -> list[UsageEntry]:
    try:
        return [UsageEntry.model_validate(entry) for entry in entries]
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid budget usage: {_format_validation_error(exc)}") from exc


def _to_entry(row: ExperimentBudget) -> BudgetEntry:
    total = Decimal(row.total)
    used = Decimal(row.used)
    # Remaining is derived on every read, never stored.
    return BudgetEntry(
        platform=row.platform,
        dimension=row.dimension,
        total=total,
        used=used,
        remaining=total - used,
        unit=row.unit,
    )


class ExperimentAccess:
    """Experiment lifecycle, forward-only analysis pipeline, budget ledger and outcome log.

    Every operation runs in its own session and commits once. Blob documents are
    written before the relational row that points at them, so a failed upload
    never leaves a row referencing a missing blob.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        blob_store: BlobStore | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._blobs = blob_store or create_blob_store()

    async def begin_experiment(
        self,
        tenant_id: str,
        source_id: str,
        config: ExperimentConfig | Mapping[str, Any],
    ) -> str:
        parsed = _parse_config(config)
        async with self._session_factory() as session:
            experiment_id = await experiments_repo.store.create(
                session,
                tenant_id=tenant_id,
                status=EXPERIMENT_ACTIVE,
                source_id=source_id,
                name=parsed.name,
                notes=parsed.notes,
                phase=EXPERIMENT_PHASES[0],
                budget_strategy=parsed.budget.strategy,
            )
            await budgets_repo.insert_allocations(
                session,
                tenant_id=tenant_id,
                experiment_id=experiment_id,
                allocations=[
                    (item.platform, item.dimension, item.total, item.unit)
                    for item in parsed.budget.allocations
                ],
            )
            await session.commit()
        logger.info(
            "experiment_begun tenant=%s experiment=%s source=%s allocations=%s",
            tenant_id,
            experiment_id,
            source_id,
            len(parsed.budget.allocations),
        )
        return experiment_id

    async def submit_for_analysis(self, tenant_id: str, experiment_id: str, snapshot: Any) -> str:
        async with self._session_factory() as session:
            await experiments_repo.store.find(session, tenant_id, experiment_id)
            snapshot_path = await self._blobs.upload(
                blob_path("experiments", experiment_id, "snapshots", str(uuid4())),
                snapshot,
            )
            request = await experiments_repo.create_analysis_request(
                session,
                tenant_id=tenant_id,
                experiment_id=experiment_id,
                snapshot_path=snapshot_path,
            )
            await session.commit()
        logger.info(
            "analysis_submitted tenant=%s experiment=%s analysis=%s",
            tenant_id,
            experiment_id,
            request.id,
        )
        return request.id

    async def _load_for_stage(
        self, session: AsyncSession, tenant_id: str, analysis_id: str, target: str
    ) -> AnalysisRequest:
        request = await experiments_repo.get_analysis_request(session, tenant_id, analysis_id)
        if request is None:
            raise NotFoundError("analysis_request", analysis_id)
        required = previous_analysis_stage(target)
        if request.status != required:
            # Covers both skip-ahead and already-past calls; nothing has been written yet.
            raise InvalidTransitionError("analysis_request", analysis_id, request.status, target)
        return request

    async def _upload_stage_document(
        self,
        session: AsyncSession,
        tenant_id: str,
        analysis_id: str,
        path: str,
        document: Any,
        *,
        expected_status: str,
    ) -> str:
        try:
            return await self._blobs.upload(path, document)
        except BlobExistsError:
            current = await experiments_repo.get_analysis_request(session, tenant_id, analysis_id)
            if current is None or current.status != expected_status:
                raise ConcurrencyConflictError(
                    "analysis_request", analysis_id, expected_status
                ) from None
            # Left by an attempt whose row write failed; the row CAS still picks one winner.
            return await self._blobs.upload(path, document, overwrite=True)

    async def _summarize(
        self, session: AsyncSession, tenant_id: str, experiment: Experiment
    ) -> BudgetSummary:
        rows = await budgets_repo.list_entries(session, tenant_id, experiment.id)
        return BudgetSummary(
            experiment_id=experiment.id,
            strategy=experiment.budget_strategy,
            entries=tuple(_to_entry(row) for row in rows),
        )

    async def prepare_analysis_context(self, tenant_id: str, analysis_id: str) -> dict[str, Any]:
        target = ANALYSIS_CONTEXT_PREPARED
        async with self._session_factory() as session:
            request = await self._load_for_stage(session, tenant_id, analysis_id, target)
            experiment = await experiments_repo.store.find(session, tenant_id, request.experiment_id)
            summary = await self._summarize(session, tenant_id, experiment)
            snapshot = await self._blobs.download(request.snapshot_path)
            context = {
                "experiment": {
                    "name": experiment.name,
                    "notes": experiment.notes,
                    "phase": experiment.phase,
                    "budget_strategy": experiment.budget_strategy,
                    "program": experiment.program_json,
                },
                # Decimal amounts travel as strings to keep full precision.
                "budget": [
                    {
                        "platform": entry.platform,
                        "dimension": entry.dimension,
                        "total": str(entry.total),
                        "used": str(entry.used),
                        "remaining": str(entry.remaining),
                        "unit": entry.unit,
                    }
                    for entry in summary.entries
                ],
                "snapshot": snapshot,
            }
            expected = request.status
            context_path = await self._upload_stage_document(
                session,
                tenant_id,
                analysis_id,
                blob_path("experiments", experiment.id, "contexts", analysis_id),
                context,
                expected_status=expected,
            )
            await experiments_repo.advance_analysis_request(
                session,
                tenant_id,
                analysis_id,
                expected_status=expected,
                target_status=target,
                pointers={"context_path": context_path},
            )
            await session.commit()
        logger.info("analysis_context_prepared tenant=%s analysis=%s", tenant_id, analysis_id)
        return context

    async def provide_verdict(self, tenant_id: str, analysis_id: str, decision: Any) -> None:
        target = ANALYSIS_VERDICT_PROVIDED
        async with self._session_factory() as session:
            request = await self._load_for_stage(session, tenant_id, analysis_id, target)
            expected = request.status
            verdict_path = await self._upload_stage_document(
                session,
                tenant_id,
                analysis_id,
                blob_path("experiments", request.experiment_id, "verdicts", analysis_id),
                decision,
                expected_status=expected,
            )
            await experiments_repo.advance_analysis_request(
                session,
                tenant_id,
                analysis_id,
                expected_status=expected,
                target_status=target,
                pointers={"verdict_path": verdict_path},
            )
            await session.commit()
        logger.info("analysis_verdict_provided tenant=%s analysis=%s", tenant_id, analysis_id)

    async def accept_verdict(self, tenant_id: str, analysis_id: str) -> Any:
        target = ANALYSIS_ACCEPTED
        async with self._session_factory() as session:
            request = await self._load_for_stage(session, tenant_id, analysis_id, target)
            verdict = await self._blobs.download(request.verdict_path)
            await experiments_repo.advance_analysis_request(
                session,
                tenant_id,
                analysis_id,
                expected_status=request.status,
                target_status=target,
            )
            await session.commit()
        logger.info("analysis_verdict_accepted tenant=%s analysis=%s", tenant_id, analysis_id)
        return verdict

    async def get_analysis_status(self, tenant_id: str, analysis_id: str) -> str:
        async with self._session_factory() as session:
            request = await experiments_repo.get_analysis_request(session, tenant_id, analysis_id)
        if request is None:
            raise NotFoundError("analysis_request", analysis_id)
        return request.status

    async def record_outcome(self, tenant_id: str, experiment_id: str, outcome: Any) -> str:
        async with self._session_factory() as session:
            await experiments_repo.store.find(session, tenant_id, experiment_id)
            outcome_path = await self._blobs.upload(
                blob_path("experiments", experiment_id, "outcomes", str(uuid4())),
                outcome,
            )
            row = await experiments_repo.insert_outcome(
                session,
                tenant_id=tenant_id,
                experiment_id=experiment_id,
                outcome_path=outcome_path,
            )
            await session.commit()
        logger.info(
            "experiment_outcome_recorded tenant=%s experiment=%s outcome=%s",
            tenant_id,
            experiment_id,
            row.id,
        )
        return row.id

    async def list_outcomes(self, tenant_id: str, experiment_id: str) -> list[OutcomeRecord]:
        async with self._session_factory() as session:
            await experiments_repo.store.find(session, tenant_id, experiment_id)
            rows = await experiments_repo.list_outcomes(session, tenant_id, experiment_id)
        return [
            OutcomeRecord(
                outcome_id=row.id,
                outcome_path=row.outcome_path,
                recorded_at=ensure_utc(row.created_at),
            )
            for row in rows
        ]

    async def record_program(self, tenant_id: str, experiment_id: str, program: Any) -> int:
        async with self._session_factory() as session:
            experiment = await experiments_repo.store.find(session, tenant_id, experiment_id)
            version = await experiments_repo.store.compare_and_set(
                session,
                tenant_id,
                experiment_id,
                expected_version=experiment.version,
                values={"program_json": program},
            )
            await session.commit()
        logger.info(
            "experiment_program_recorded tenant=%s experiment=%s version=%s",
            tenant_id,
            experiment_id,
            version,
        )
        return version

    async def advance_phase(self, tenant_id: str, experiment_id: str, new_phase: str) -> bool:
        if new_phase not in EXPERIMENT_PHASES:
            raise ValidationError(f"unknown experiment phase '{new_phase}'")
        async with self._session_factory() as session:
            experiment = await experiments_repo.store.find(session, tenant_id, experiment_id)
            current = experiment.phase
            if current == new_phase:
                return False
            if EXPERIMENT_PHASES.index(new_phase) < EXPERIMENT_PHASES.index(current):
                raise InvalidTransitionError("experiment", experiment_id, current, new_phase)
            await experiments_repo.store.compare_and_set(
                session,
                tenant_id,
                experiment_id,
                expected_version=experiment.version,
                values={"phase": new_phase},
            )
            await session.commit()
        logger.info(
            "experiment_phase_advanced tenant=%s experiment=%s from=%s to=%s",
            tenant_id,
            experiment_id,
            current,
            new_phase,
        )
        return True

    async def _finish(self, tenant_id: str, experiment_id: str, target: str) -> Experiment:
        async with self._session_factory() as session:
            changed = await experiments_repo.store.transition(
                session, tenant_id, experiment_id, target
            )
            if changed:
                await session.commit()
            return await experiments_repo.store.find(session, tenant_id, experiment_id)

    async def complete_experiment(self, tenant_id: str, experiment_id: str) -> Any:
        experiment = await self._finish(tenant_id, experiment_id, EXPERIMENT_COMPLETED)
        return experiment.program_json

    async def fail_experiment(self, tenant_id: str, experiment_id: str) -> None:
        await self._finish(tenant_id, experiment_id, EXPERIMENT_FAILED)

    async def cancel_experiment(self, tenant_id: str, experiment_id: str) -> None:
        await self._finish(tenant_id, experiment_id, EXPERIMENT_CANCELLED)

    async def consume_budget(
        self,
        tenant_id: str,
        experiment_id: str,
        usage: Iterable[UsageEntry | Mapping[str, Any]],
    ) -> BudgetSummary:
        entries = _parse_usage(usage)
        async with self._session_factory() as session:
            experiment = await experiments_repo.store.find(session, tenant_id, experiment_id)
            try:
                for entry in entries:
                    matched = await budgets_repo.increment_used(
                        session,
                        tenant_id=tenant_id,
                        experiment_id=experiment_id,
                        platform=entry.platform,
                        dimension=entry.dimension,
                        amount=entry.amount,
                    )
                    if matched == 0:
                        raise UnknownBudgetDimensionError(entry.platform, entry.dimension)
            except UnknownBudgetDimensionError:
                # All-or-nothing: increments already issued in this call are discarded.
                await session.rollback()
                logger.warning(
                    "budget_consume_rejected tenant=%s experiment=%s", tenant_id, experiment_id
                )
                raise
            await session.commit()
            summary = await self._summarize(session, tenant_id, experiment)
        logger.info(
            "budget_consumed tenant=%s experiment=%s entries=%s",
            tenant_id,
            experiment_id,
            len(entries),
        )
        return summary

    async def summarize_budget(self, tenant_id: str, experiment_id: str) -> BudgetSummary:
        async with self._session_factory() as session:
            experiment = await experiments_repo.store.find(session, tenant_id, experiment_id)
            return await self._summarize(session, tenant_id, experiment)
