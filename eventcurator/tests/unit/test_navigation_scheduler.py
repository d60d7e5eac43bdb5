from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from eventcurator.core.config import get_settings
from eventcurator.core.errors import ValidationError
from eventcurator.core.timeutil import isoformat_z
from eventcurator.services.scheduler import (
    FREQUENCY_INTERVALS_MS,
    InMemoryScheduleRegistry,
    NavigationScheduler,
)


FIXED_NOW = datetime(2026, 1, 20, 8, 30, tzinfo=timezone.utc)


def _scheduler(**kwargs) -> NavigationScheduler:
    kwargs.setdefault("time_provider", lambda: FIXED_NOW)
    return NavigationScheduler(**kwargs)


def test_frequency_intervals() -> None:
    assert FREQUENCY_INTERVALS_MS == {
        "hourly": 3_600_000,
        "daily": 86_400_000,
        "weekly": 604_800_000,
        "monthly": 2_592_000_000,
    }
    scheduler = _scheduler(custom_interval_ms=900_000)
    assert scheduler.interval_ms("custom") == 900_000
    with pytest.raises(ValidationError):
        scheduler.interval_ms("fortnightly")


@pytest.mark.asyncio
async def test_next_navigation_is_last_plus_interval() -> None:
    scheduler = _scheduler()
    schedule = await scheduler.schedule_next_navigation("s", "hourly", "2026-01-15T10:00:00.000Z")
    assert isoformat_z(schedule.next_navigation_at) == "2026-01-15T11:00:00.000Z"
    assert schedule.last_navigated_at == datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_never_navigated_source_is_due_now() -> None:
    scheduler = NavigationScheduler()
    before = datetime.now(timezone.utc)
    schedule = await scheduler.schedule_next_navigation("s", "daily", None)
    after = datetime.now(timezone.utc)
    assert before <= schedule.next_navigation_at <= after
    assert schedule.last_navigated_at is None


@pytest.mark.asyncio
async def test_schedule_replaces_previous_wholesale() -> None:
    registry = InMemoryScheduleRegistry()
    scheduler = _scheduler(registry=registry)
    await scheduler.schedule_next_navigation("s", "weekly", "2026-01-01T00:00:00Z")
    await scheduler.schedule_next_navigation("s", "hourly", None)
    stored = registry.get("s")
    assert len(registry) == 1
    assert stored.frequency == "hourly"
    assert stored.last_navigated_at is None
    assert stored.next_navigation_at == FIXED_NOW


@pytest.mark.asyncio
async def test_roster_orders_most_overdue_first() -> None:
    scheduler = _scheduler()
    await scheduler.schedule_next_navigation("recent", "daily", "2026-01-15T00:00:00Z")
    await scheduler.schedule_next_navigation("stale", "daily", "2026-01-10T00:00:00Z")
    await scheduler.schedule_next_navigation("middle", "daily", "2026-01-13T00:00:00Z")

    roster = await scheduler.assemble_navigation_roster(
        ["recent", "stale", "middle"], "2026-01-17T00:00:00Z"
    )
    assert [entry.source_id for entry in roster] == ["stale", "middle", "recent"]
    assert [entry.priority for entry in roster] == [6.0, 3.0, 1.0]
    assert roster[0].scheduled_at == datetime(2026, 1, 11, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_roster_boundary_is_inclusive_with_zero_priority() -> None:
    scheduler = _scheduler()
    await scheduler.schedule_next_navigation("edge", "hourly", "2026-01-17T11:00:00Z")
    await scheduler.schedule_next_navigation("early", "hourly", "2026-01-17T11:30:00Z")
    roster = await scheduler.assemble_navigation_roster(
        ["edge", "early"], datetime(2026, 1, 17, 12, 0, tzinfo=timezone.utc)
    )
    assert [(entry.source_id, entry.priority) for entry in roster] == [("edge", 0.0)]


@pytest.mark.asyncio
async def test_roster_excludes_unregistered_and_rounds_priority() -> None:
    scheduler = _scheduler()
    await scheduler.schedule_next_navigation("s", "daily", "2026-01-15T00:00:00Z")
    roster = await scheduler.assemble_navigation_roster(
        ["unknown", "s"], "2026-01-16T08:00:00Z"
    )
    assert [entry.source_id for entry in roster] == ["s"]
    assert roster[0].priority == 0.33


@pytest.mark.asyncio
async def test_roster_defaults_to_current_time() -> None:
    scheduler = _scheduler()
    await scheduler.schedule_next_navigation("s", "hourly", FIXED_NOW - timedelta(hours=3))
    roster = await scheduler.assemble_navigation_roster(["s"])
    assert roster[0].priority == 2.0


@pytest.mark.asyncio
async def test_zero_custom_interval_uses_unit_priority() -> None:
    scheduler = _scheduler(custom_interval_ms=0)
    await scheduler.schedule_next_navigation("s", "custom", "2026-01-15T00:00:00Z")
    roster = await scheduler.assemble_navigation_roster(["s"], "2026-01-16T00:00:00Z")
    assert roster[0].priority == 1.0


@pytest.mark.asyncio
async def test_adjust_cadence_for_registered_source_persists() -> None:
    registry = InMemoryScheduleRegistry()
    scheduler = _scheduler(registry=registry)
    await scheduler.schedule_next_navigation("s", "daily", "2026-01-15T10:00:00Z")
    adjustment = await scheduler.adjust_cadence("s", "hourly", "venue posts hourly updates")
    assert adjustment.previous_frequency == "daily"
    assert adjustment.new_frequency == "hourly"
    assert adjustment.reason == "venue posts hourly updates"
    assert isoformat_z(adjustment.next_navigation_at) == "2026-01-15T11:00:00.000Z"
    stored = registry.get("s")
    assert stored.frequency == "hourly"
    assert stored.next_navigation_at == adjustment.next_navigation_at
    assert stored.last_navigated_at == datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_adjust_cadence_for_unregistered_source_does_not_persist() -> None:
    registry = InMemoryScheduleRegistry()
    scheduler = _scheduler(registry=registry, default_frequency="weekly")
    adjustment = await scheduler.adjust_cadence("ghost", "monthly", "quiet venue")
    assert adjustment.previous_frequency == "weekly"
    assert adjustment.next_navigation_at == FIXED_NOW
    assert registry.get("ghost") is None
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_default_frequency_comes_from_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SCHEDULER_DEFAULT_FREQUENCY", "monthly")
    get_settings.cache_clear()
    adjustment = await _scheduler().adjust_cadence("ghost", "daily", "seasonal")
    assert adjustment.previous_frequency == "monthly"
