from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Mapping


SourceStatus = Literal["pending", "active", "inactive", "retired"]
EventStatus = Literal["ingested", "published", "cancelled", "consolidated"]
CaptureStatus = Literal["preserved", "extracted", "expired"]
ExperimentStatus = Literal["active", "completed", "failed", "cancelled"]
ExperimentPhase = Literal["exploration", "refinement", "optimization", "production"]
BudgetStrategy = Literal["hard_cap", "soft_limit", "elastic"]
AnalysisStatus = Literal["pending", "context_prepared", "verdict_provided", "accepted"]

SOURCE_PENDING = "pending"
SOURCE_ACTIVE = "active"
SOURCE_INACTIVE = "inactive"
SOURCE_RETIRED = "retired"

EVENT_INGESTED = "ingested"
EVENT_PUBLISHED = "published"
EVENT_CANCELLED = "cancelled"
EVENT_CONSOLIDATED = "consolidated"

CAPTURE_PRESERVED = "preserved"
CAPTURE_EXTRACTED = "extracted"
CAPTURE_EXPIRED = "expired"

EXPERIMENT_ACTIVE = "active"
EXPERIMENT_COMPLETED = "completed"
EXPERIMENT_FAILED = "failed"
EXPERIMENT_CANCELLED = "cancelled"

ANALYSIS_PENDING = "pending"
ANALYSIS_CONTEXT_PREPARED = "context_prepared"
ANALYSIS_VERDICT_PROVIDED = "verdict_provided"
ANALYSIS_ACCEPTED = "accepted"

# Strict ordering; each stage may only be entered from the one before it.
ANALYSIS_STAGES: tuple[str, ...] = (
    ANALYSIS_PENDING,
    ANALYSIS_CONTEXT_PREPARED,
    ANALYSIS_VERDICT_PROVIDED,
    ANALYSIS_ACCEPTED,
)

# Phases only move forward.
EXPERIMENT_PHASES: tuple[str, ...] = ("exploration", "refinement", "optimization", "production")

BUDGET_STRATEGIES: tuple[str, ...] = ("hard_cap", "soft_limit", "elastic")


@dataclass(frozen=True)
class TransitionTable:
    """Allowed ``current -> target`` status moves for one resource type.

    Statuses that appear only as targets are terminal.
    """

    transitions: Mapping[str, frozenset[str]]
    statuses: frozenset[str] = field(init=False)

    def __post_init__(self) -> None:
        known: set[str] = set(self.transitions)
        for targets in self.transitions.values():
            known.update(targets)
        object.__setattr__(self, "statuses", frozenset(known))

    def allows(self, current: str, target: str) -> bool:
        return target in self.transitions.get(current, frozenset())

    def is_terminal(self, status: str) -> bool:
        return not self.transitions.get(status)


SOURCE_TRANSITIONS = TransitionTable(
    {
        SOURCE_PENDING: frozenset({SOURCE_ACTIVE, SOURCE_RETIRED}),
        SOURCE_ACTIVE: frozenset({SOURCE_INACTIVE, SOURCE_RETIRED}),
        SOURCE_INACTIVE: frozenset({SOURCE_ACTIVE, SOURCE_RETIRED}),
        SOURCE_RETIRED: frozenset(),
    }
)

EVENT_TRANSITIONS = TransitionTable(
    {
        EVENT_INGESTED: frozenset({EVENT_PUBLISHED, EVENT_CANCELLED, EVENT_CONSOLIDATED}),
        EVENT_PUBLISHED: frozenset({EVENT_CANCELLED, EVENT_CONSOLIDATED}),
        EVENT_CANCELLED: frozenset(),
        EVENT_CONSOLIDATED: frozenset(),
    }
)

CAPTURE_TRANSITIONS = TransitionTable(
    {
        CAPTURE_PRESERVED: frozenset({CAPTURE_EXTRACTED, CAPTURE_EXPIRED}),
        CAPTURE_EXTRACTED: frozenset({CAPTURE_EXPIRED}),
        CAPTURE_EXPIRED: frozenset(),
    }
)

EXPERIMENT_TRANSITIONS = TransitionTable(
    {
        EXPERIMENT_ACTIVE: frozenset(
            {EXPERIMENT_COMPLETED, EXPERIMENT_FAILED, EXPERIMENT_CANCELLED}
        ),
        EXPERIMENT_COMPLETED: frozenset(),
        EXPERIMENT_FAILED: frozenset(),
        EXPERIMENT_CANCELLED: frozenset(),
    }
)


def previous_analysis_stage(target: str) -> str:
    # Resolve the only status from which ``target`` may be entered.
    index = ANALYSIS_STAGES.index(target)
    if index == 0:
        raise ValueError("pending is the initial stage and has no predecessor")
    return ANALYSIS_STAGES[index - 1]
