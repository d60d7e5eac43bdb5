from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from eventcurator.core.timeutil import utc_now


# JSONB on Postgres, portable JSON elsewhere (sqlite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class LifecycleColumns:
    # Shared columns for every versioned, tenant-scoped, soft-deletable resource.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # Incremented exactly once per accepted write; CAS predicates compare against it.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String, nullable=False)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, server_default=func.now()
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Source(LifecycleColumns, Base):
    __tablename__ = "sources"
    __table_args__ = (
        Index("ix_sources_tenant_status_next", "tenant_id", "status", "next_navigation_at"),
    )

    name: Mapped[str] = mapped_column(String)
    url: Mapped[str] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String, default="web_page")
    platform: Mapped[str | None] = mapped_column(String, nullable=True)
    feed_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    crawl_config_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    # Consecutive failures since the last successful navigation.
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_navigated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_navigation_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Event(LifecycleColumns, Base):
    __tablename__ = "events"
    __table_args__ = (
        Index("ix_events_tenant_status_starts", "tenant_id", "status", "starts_at"),
    )

    title: Mapped[str] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    timezone: Mapped[str] = mapped_column(String)
    is_free: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    registration_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Populated only together with status="consolidated"; never inferred from metadata.
    canonical_id: Mapped[str | None] = mapped_column(String, ForeignKey("events.id"), nullable=True)


class EventSource(Base):
    __tablename__ = "event_sources"
    __table_args__ = (
        UniqueConstraint("tenant_id", "event_id", "source_id", name="uq_event_sources_link"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    event_id: Mapped[str] = mapped_column(String, ForeignKey("events.id"), index=True)
    source_id: Mapped[str] = mapped_column(String, ForeignKey("sources.id"), index=True)
    discovered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class EventRelationship(Base):
    __tablename__ = "event_relationships"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    from_event_id: Mapped[str] = mapped_column(String, ForeignKey("events.id"), index=True)
    to_event_id: Mapped[str] = mapped_column(String, ForeignKey("events.id"), index=True)
    relationship_type: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class Capture(LifecycleColumns, Base):
    __tablename__ = "captures"
    __table_args__ = (
        Index("ix_captures_tenant_source_captured", "tenant_id", "source_id", "captured_at"),
    )

    source_id: Mapped[str] = mapped_column(String, ForeignKey("sources.id"), index=True)
    session_id: Mapped[str] = mapped_column(String)
    storage_path: Mapped[str] = mapped_column(Text)
    # sha256 of the captured HTML; drives environment drift detection.
    content_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    extracted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Experiment(LifecycleColumns, Base):
    __tablename__ = "experiments"
    __table_args__ = (
        Index("ix_experiments_tenant_source", "tenant_id", "source_id"),
        Index("ix_experiments_tenant_status", "tenant_id", "status"),
    )

    source_id: Mapped[str] = mapped_column(String, ForeignKey("sources.id"))
    name: Mapped[str] = mapped_column(String)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    phase: Mapped[str] = mapped_column(String, nullable=False, default="exploration")
    budget_strategy: Mapped[str] = mapped_column(String, nullable=False)
    # Opaque synthesized navigation program; absent until one is recorded.
    program_json: Mapped[Any | None] = mapped_column(JSONType, nullable=True)


class AnalysisRequest(Base):
    __tablename__ = "analysis_requests"
    __table_args__ = (
        Index("ix_analysis_requests_experiment_status", "experiment_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    experiment_id: Mapped[str] = mapped_column(String, ForeignKey("experiments.id"), index=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    snapshot_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    context_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    verdict_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, server_default=func.now()
    )


class ExperimentBudget(Base):
    __tablename__ = "experiment_budgets"
    __table_args__ = (
        UniqueConstraint(
            "experiment_id", "platform", "dimension", name="uq_experiment_budgets_dimension"
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    experiment_id: Mapped[str] = mapped_column(String, ForeignKey("experiments.id"), index=True)
    platform: Mapped[str] = mapped_column(String)
    dimension: Mapped[str] = mapped_column(String)
    # Arbitrary precision; fixed at experiment creation.
    total: Mapped[Decimal] = mapped_column(Numeric(asdecimal=True), nullable=False)
    # Only ever incremented in-database.
    used: Mapped[Decimal] = mapped_column(Numeric(asdecimal=True), nullable=False, default=Decimal("0"))
    unit: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, server_default=func.now()
    )


class ExperimentOutcome(Base):
    __tablename__ = "experiment_outcomes"

    # Append-only; rows are never updated or deleted.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    experiment_id: Mapped[str] = mapped_column(String, ForeignKey("experiments.id"), index=True)
    outcome_path: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
