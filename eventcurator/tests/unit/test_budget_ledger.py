from __future__ import annotations

from decimal import Decimal

import pytest

from eventcurator.core.errors import NotFoundError, UnknownBudgetDimensionError, ValidationError
from eventcurator.services.experiments import ExperimentAccess, UsageEntry
from eventcurator.services.sources import SourceAccess


CONFIG = {
    "name": "budget tracking",
    "budget": {
        "strategy": "soft_limit",
        "allocations": [
            {"platform": "anthropic", "dimension": "tokens", "total": "1000", "unit": "tokens"},
            {"platform": "browserbase", "dimension": "minutes", "total": "10.5", "unit": "minutes"},
        ],
    },
}


async def _begin(session_factory, blob_store) -> tuple[ExperimentAccess, str]:
    sources = SourceAccess(session_factory=session_factory, failure_threshold=3)
    source_id = await sources.onboard_source("t1", "Stadium", "https://example.org/stadium")
    experiments = ExperimentAccess(session_factory=session_factory, blob_store=blob_store)
    return experiments, await experiments.begin_experiment("t1", source_id, CONFIG)


@pytest.mark.asyncio
async def test_new_ledger_has_nothing_used(session_factory, blob_store) -> None:
    experiments, experiment_id = await _begin(session_factory, blob_store)
    summary = await experiments.summarize_budget("t1", experiment_id)
    assert summary.strategy == "soft_limit"
    assert len(summary.entries) == 2
    minutes = summary.entry("browserbase", "minutes")
    assert minutes.total == Decimal("10.5")
    assert minutes.used == Decimal("0")
    assert minutes.remaining == Decimal("10.5")
    assert minutes.unit == "minutes"


@pytest.mark.asyncio
async def test_consume_increments_only_matching_entries(session_factory, blob_store) -> None:
    experiments, experiment_id = await _begin(session_factory, blob_store)
    await experiments.consume_budget(
        "t1", experiment_id, [{"platform": "anthropic", "dimension": "tokens", "amount": "250"}]
    )
    summary = await experiments.consume_budget(
        "t1",
        experiment_id,
        [UsageEntry(platform="anthropic", dimension="tokens", amount=Decimal("100"))],
    )
    tokens = summary.entry("anthropic", "tokens")
    assert tokens.used == Decimal("350")
    assert tokens.remaining == Decimal("650")
    minutes = summary.entry("browserbase", "minutes")
    assert minutes.used == Decimal("0")


@pytest.mark.asyncio
async def test_over_consumption_is_recorded_not_blocked(session_factory, blob_store) -> None:
    experiments, experiment_id = await _begin(session_factory, blob_store)
    summary = await experiments.consume_budget(
        "t1", experiment_id, [{"platform": "browserbase", "dimension": "minutes", "amount": 12}]
    )
    minutes = summary.entry("browserbase", "minutes")
    assert minutes.used == Decimal("12")
    assert minutes.remaining == Decimal("-1.5")


@pytest.mark.asyncio
async def test_unknown_dimension_rolls_back_whole_call(session_factory, blob_store) -> None:
    experiments, experiment_id = await _begin(session_factory, blob_store)
    with pytest.raises(UnknownBudgetDimensionError) as excinfo:
        await experiments.consume_budget(
            "t1",
            experiment_id,
            [
                {"platform": "anthropic", "dimension": "tokens", "amount": "10"},
                {"platform": "anthropic", "dimension": "requests", "amount": "1"},
            ],
        )
    assert excinfo.value.dimension == "requests"
    summary = await experiments.summarize_budget("t1", experiment_id)
    assert summary.entry("anthropic", "tokens").remaining == Decimal("1000")
    assert summary.entry("browserbase", "minutes").remaining == Decimal("10.5")


@pytest.mark.asyncio
async def test_negative_amounts_are_rejected(session_factory, blob_store) -> None:
    experiments, experiment_id = await _begin(session_factory, blob_store)
    with pytest.raises(ValidationError):
        await experiments.consume_budget(
            "t1", experiment_id, [{"platform": "anthropic", "dimension": "tokens", "amount": "-5"}]
        )
    summary = await experiments.summarize_budget("t1", experiment_id)
    assert summary.entry("anthropic", "tokens").used == Decimal("0")


@pytest.mark.asyncio
async def test_budget_is_tenant_scoped(session_factory, blob_store) -> None:
    experiments, experiment_id = await _begin(session_factory, blob_store)
    with pytest.raises(NotFoundError):
        await experiments.summarize_budget("t2", experiment_id)
    with pytest.raises(NotFoundError):
        await experiments.consume_budget(
            "t2", experiment_id, [{"platform": "anthropic", "dimension": "tokens", "amount": "1"}]
        )
