from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Iterable, Literal, Protocol

from eventcurator.core.config import get_settings
from eventcurator.core.errors import ValidationError
from eventcurator.core.timeutil import parse_timestamp, utc_now


logger = logging.getLogger(__name__)

CadenceFrequency = Literal["hourly", "daily", "weekly", "monthly", "custom"]

_HOUR_MS = 60 * 60 * 1000
_DAY_MS = 24 * _HOUR_MS

# Monthly uses a 30-day approximation; "custom" is resolved from configuration.
FREQUENCY_INTERVALS_MS: dict[str, int] = {
    "hourly": _HOUR_MS,
    "daily": _DAY_MS,
    "weekly": 7 * _DAY_MS,
    "monthly": 30 * _DAY_MS,
}
CADENCE_FREQUENCIES: frozenset[str] = frozenset({*FREQUENCY_INTERVALS_MS, "custom"})


@dataclass(frozen=True)
class SourceSchedule:
    source_id: str
    frequency: str
    next_navigation_at: datetime
    last_navigated_at: datetime | None


@dataclass(frozen=True)
class NavigationRosterEntry:
    source_id: str
    scheduled_at: datetime
    # Intervals overdue, rounded to 2 decimals; 0 means due exactly now.
    priority: float


@dataclass(frozen=True)
class CadenceAdjustment:
    source_id: str
    previous_frequency: str
    new_frequency: str
    reason: str
    next_navigation_at: datetime


class ScheduleRegistry(Protocol):
    def get(self, source_id: str) -> SourceSchedule | None: ...

    def put(self, schedule: SourceSchedule) -> None: ...


class InMemoryScheduleRegistry:
    """Process-local schedule map; safe for one scheduler instance per process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._schedules: dict[str, SourceSchedule] = {}

    def get(self, source_id: str) -> SourceSchedule | None:
        with self._lock:
            return self._schedules.get(source_id)

    def put(self, schedule: SourceSchedule) -> None:
        # Schedules are replaced wholesale, never patched field by field.
        with self._lock:
            self._schedules[schedule.source_id] = schedule

    def __len__(self) -> int:
        with self._lock:
            return len(self._schedules)


class NavigationScheduler:
    def __init__(
        self,
        *,
        registry: ScheduleRegistry | None = None,
        default_frequency: str | None = None,
        custom_interval_ms: int | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        settings = get_settings()
        self._registry = registry if registry is not None else InMemoryScheduleRegistry()
        self._default_frequency = _require_frequency(
            default_frequency or settings.scheduler_default_frequency
        )
        self._custom_interval_ms = (
            custom_interval_ms
            if custom_interval_ms is not None
            else settings.scheduler_custom_interval_ms
        )
        if self._custom_interval_ms < 0:
            raise ValidationError("custom cadence interval must be non-negative")
        # Allow time injection for deterministic tests.
        self._time_provider = time_provider or utc_now

    def interval_ms(self, frequency: str) -> int:
        frequency = _require_frequency(frequency)
        if frequency == "custom":
            return self._custom_interval_ms
        return FREQUENCY_INTERVALS_MS[frequency]

    def _next_navigation(self, frequency: str, last_navigated_at: datetime | None) -> datetime:
        if last_navigated_at is None:
            return self._time_provider()
        return last_navigated_at + timedelta(milliseconds=self.interval_ms(frequency))

    async def schedule_next_navigation(
        self,
        source_id: str,
        frequency: str,
        last_navigated_at: datetime | str | None,
    ) -> SourceSchedule:
        last = parse_timestamp(last_navigated_at)
        schedule = SourceSchedule(
            source_id=source_id,
            frequency=_require_frequency(frequency),
            next_navigation_at=self._next_navigation(frequency, last),
            last_navigated_at=last,
        )
        self._registry.put(schedule)
        logger.debug(
            "navigation_scheduled source=%s frequency=%s next=%s",
            source_id,
            schedule.frequency,
            schedule.next_navigation_at.isoformat(),
        )
        return schedule

    async def assemble_navigation_roster(
        self,
        source_ids: Iterable[str],
        as_of: datetime | str | None = None,
    ) -> list[NavigationRosterEntry]:
        cutoff = parse_timestamp(as_of) or self._time_provider()
        due: list[NavigationRosterEntry] = []
        for source_id in source_ids:
            schedule = self._registry.get(source_id)
            if schedule is None:
                # Unknown sources are not treated as due.
                continue
            if schedule.next_navigation_at > cutoff:
                continue
            overdue_ms = (cutoff - schedule.next_navigation_at) / timedelta(milliseconds=1)
            interval = self.interval_ms(schedule.frequency)
            priority = overdue_ms / interval if interval > 0 else 1.0
            due.append(
                NavigationRosterEntry(
                    source_id=source_id,
                    scheduled_at=schedule.next_navigation_at,
                    priority=round(priority, 2),
                )
            )
        due.sort(key=lambda entry: entry.priority, reverse=True)
        return due

    async def adjust_cadence(
        self,
        source_id: str,
        new_frequency: str,
        reason: str,
    ) -> CadenceAdjustment:
        new_frequency = _require_frequency(new_frequency)
        existing = self._registry.get(source_id)
        previous_frequency = existing.frequency if existing else self._default_frequency
        last_navigated_at = existing.last_navigated_at if existing else None
        next_navigation_at = self._next_navigation(new_frequency, last_navigated_at)
        if existing is not None:
            self._registry.put(
                replace(existing, frequency=new_frequency, next_navigation_at=next_navigation_at)
            )
        logger.info(
            "cadence_adjusted source=%s from=%s to=%s registered=%s reason=%s",
            source_id,
            previous_frequency,
            new_frequency,
            existing is not None,
            reason,
        )
        return CadenceAdjustment(
            source_id=source_id,
            previous_frequency=previous_frequency,
            new_frequency=new_frequency,
            reason=reason,
            next_navigation_at=next_navigation_at,
        )


def _require_frequency(frequency: str) -> str:
    if frequency not in CADENCE_FREQUENCIES:
        raise ValidationError(f"unknown cadence frequency '{frequency}'")
    return frequency
