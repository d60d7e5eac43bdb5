from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from eventcurator.apps.api.deps import get_event_access, get_tenant_id
from eventcurator.apps.api.response import SuccessEnvelope, success_response
from eventcurator.core.timeutil import isoformat_z
from eventcurator.services.events import EventAccess, EventRecord


router = APIRouter(prefix="/events", tags=["events"])


class ScheduledEventResponse(BaseModel):
    id: str
    title: str
    description: str | None
    starts_at: str
    ends_at: str | None
    timezone: str
    is_free: bool
    registration_url: str | None
    image_url: str | None
    source_id: str | None


class EventScheduleResponse(BaseModel):
    period_start: str
    period_end: str
    events: list[ScheduledEventResponse]


def _to_response(record: EventRecord) -> ScheduledEventResponse:
    return ScheduledEventResponse(
        id=record.event_id,
        title=record.title,
        description=record.description,
        starts_at=isoformat_z(record.starts_at),
        ends_at=isoformat_z(record.ends_at) if record.ends_at else None,
        timezone=record.timezone,
        is_free=record.is_free,
        registration_url=record.registration_url,
        image_url=record.image_url,
        source_id=record.source_id,
    )


@router.get("/schedule", response_model=SuccessEnvelope[EventScheduleResponse])
async def get_event_schedule(
    request: Request,
    period_start: datetime = Query(...),
    period_end: datetime = Query(...),
    tenant_id: str = Depends(get_tenant_id),
    events: EventAccess = Depends(get_event_access),
) -> dict:
    schedule = await events.compile_event_schedule(tenant_id, period_start, period_end)
    payload = EventScheduleResponse(
        period_start=isoformat_z(schedule.period_start),
        period_end=isoformat_z(schedule.period_end),
        events=[_to_response(record) for record in schedule.events],
    )
    return success_response(request=request, data=payload)
