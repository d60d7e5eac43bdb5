from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventcurator.core.errors import InvalidTransitionError, ValidationError
from eventcurator.core.timeutil import ensure_utc, parse_timestamp
from eventcurator.domain.lifecycle import (
    EVENT_CANCELLED,
    EVENT_CONSOLIDATED,
    EVENT_INGESTED,
    EVENT_PUBLISHED,
)
from eventcurator.domain.models import Event
from eventcurator.persistence.db import SessionLocal
from eventcurator.persistence.repos import events as events_repo
from eventcurator.persistence.repos import sources as sources_repo


logger = logging.getLogger(__name__)


class EventData(BaseModel):
    title: str
    description: str | None = None
    starts_at: datetime
    ends_at: datetime | None = None
    timezone: str = "UTC"
    is_free: bool = False
    registration_url: str | None = None
    image_url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("title")
    @classmethod
    def _title_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("title is required")
        return value

    @field_validator("starts_at", "ends_at")
    @classmethod
    def _normalize_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _ends_after_start(self) -> "EventData":
        if self.ends_at is not None and self.ends_at < self.starts_at:
            raise ValueError("ends_at must not be earlier than starts_at")
        return self


@dataclass(frozen=True)
class EventRecord:
    event_id: str
    title: str
    description: str | None
    starts_at: datetime
    ends_at: datetime | None
    timezone: str
    is_free: bool
    registration_url: str | None
    image_url: str | None
    status: str
    canonical_id: str | None
    source_id: str | None
    version: int


@dataclass(frozen=True)
class EventSchedule:
    period_start: datetime
    period_end: datetime
    events: tuple[EventRecord, ...]


def _to_record(row: Event, source_id: str | None) -> EventRecord:
    return EventRecord(
        event_id=row.id,
        title=row.title,
        description=row.description,
        starts_at=ensure_utc(row.starts_at),
        ends_at=ensure_utc(row.ends_at),
        timezone=row.timezone,
        is_free=row.is_free,
        registration_url=row.registration_url,
        image_url=row.image_url,
        status=row.status,
        canonical_id=row.canonical_id,
        source_id=source_id,
        version=row.version,
    )


class EventAccess:
    def __init__(self, *, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def ingest_event(
        self,
        tenant_id: str,
        source_id: str,
        event_data: EventData | Mapping[str, Any],
    ) -> str:
        try:
            data = EventData.model_validate(event_data)
        except PydanticValidationError as exc:
            raise ValidationError(f"invalid event data: {exc.errors()[0].get('msg')}") from exc
        async with self._session_factory() as session:
            await sources_repo.store.find(session, tenant_id, source_id)
            event_id = await events_repo.store.create(
                session,
                tenant_id=tenant_id,
                status=EVENT_INGESTED,
                title=data.title,
                description=data.description,
                starts_at=data.starts_at,
                ends_at=data.ends_at,
                timezone=data.timezone,
                is_free=data.is_free,
                registration_url=data.registration_url,
                image_url=data.image_url,
                metadata_json=data.metadata,
            )
            await events_repo.link_source(
                session, tenant_id=tenant_id, event_id=event_id, source_id=source_id
            )
            await session.commit()
        return event_id

    async def _transition(self, tenant_id: str, event_id: str, target: str) -> bool:
        async with self._session_factory() as session:
            changed = await events_repo.store.transition(session, tenant_id, event_id, target)
            if changed:
                await session.commit()
        return changed

    async def publish_event(self, tenant_id: str, event_id: str) -> bool:
        return await self._transition(tenant_id, event_id, EVENT_PUBLISHED)

    async def cancel_event(self, tenant_id: str, event_id: str) -> bool:
        return await self._transition(tenant_id, event_id, EVENT_CANCELLED)

    async def consolidate_events(self, tenant_id: str, duplicate_id: str, canonical_id: str) -> bool:
        """Fold ``duplicate_id`` into ``canonical_id``; returns False if that already happened."""
        if duplicate_id == canonical_id:
            raise ValidationError("an event cannot be consolidated into itself")
        async with self._session_factory() as session:
            duplicate = await events_repo.store.find(session, tenant_id, duplicate_id)
            canonical = await events_repo.store.find(session, tenant_id, canonical_id)
            if canonical.status in {EVENT_CONSOLIDATED, EVENT_CANCELLED}:
                raise InvalidTransitionError("event", canonical_id, canonical.status, "canonical")
            if duplicate.status == EVENT_CONSOLIDATED:
                if duplicate.canonical_id == canonical_id:
                    return False
                raise InvalidTransitionError(
                    "event", duplicate_id, duplicate.status, EVENT_CONSOLIDATED
                )
            await events_repo.store.transition(
                session,
                tenant_id,
                duplicate_id,
                EVENT_CONSOLIDATED,
                values={"canonical_id": canonical_id},
            )
            await events_repo.add_relationship(
                session,
                tenant_id=tenant_id,
                from_event_id=canonical_id,
                to_event_id=duplicate_id,
                relationship_type=events_repo.RELATIONSHIP_SUPERSEDES,
            )
            await session.commit()
        logger.info(
            "events_consolidated tenant=%s duplicate=%s canonical=%s",
            tenant_id,
            duplicate_id,
            canonical_id,
        )
        return True

    async def compile_event_schedule(
        self,
        tenant_id: str,
        period_start: datetime | str,
        period_end: datetime | str,
    ) -> EventSchedule:
        start = parse_timestamp(period_start)
        end = parse_timestamp(period_end)
        if start is None or end is None:
            raise ValidationError("period_start and period_end are required")
        if end < start:
            raise ValidationError("period_end must not be earlier than period_start")
        async with self._session_factory() as session:
            rows = await events_repo.list_published_between(
                session, tenant_id, period_start=start, period_end=end
            )
        return EventSchedule(
            period_start=start,
            period_end=end,
            events=tuple(_to_record(event, source_id) for event, source_id in rows),
        )

    async def resolve_event_for_processing(self, tenant_id: str, event_id: str) -> EventRecord:
        async with self._session_factory() as session:
            row = await events_repo.store.find(session, tenant_id, event_id)
            source_id = await events_repo.get_source_id(session, tenant_id, event_id)
        return _to_record(row, source_id)
