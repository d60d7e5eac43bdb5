from __future__ import annotations

from datetime import datetime, timezone

import pytest

from eventcurator.core.errors import InvalidTransitionError, NotFoundError, ValidationError
from eventcurator.persistence.repos import events as events_repo
from eventcurator.services.events import EventAccess
from eventcurator.services.sources import SourceAccess


def _event(title: str, starts_at: str, **extra) -> dict:
    return {"title": title, "starts_at": starts_at, "timezone": "Europe/Berlin", **extra}


async def _setup(session_factory, tenant_id: str = "t1") -> tuple[EventAccess, str]:
    sources = SourceAccess(session_factory=session_factory, failure_threshold=3)
    source_id = await sources.onboard_source(tenant_id, "Concert Hall", "https://example.org/hall")
    return EventAccess(session_factory=session_factory), source_id


@pytest.mark.asyncio
async def test_ingest_event_links_source(session_factory) -> None:
    events, source_id = await _setup(session_factory)
    event_id = await events.ingest_event(
        "t1",
        source_id,
        _event("Symphony No. 9", "2026-02-01T19:00:00Z", ends_at="2026-02-01T21:30:00Z", is_free=True),
    )
    record = await events.resolve_event_for_processing("t1", event_id)
    assert record.status == "ingested"
    assert record.source_id == source_id
    assert record.starts_at == datetime(2026, 2, 1, 19, 0, tzinfo=timezone.utc)
    assert record.is_free is True
    assert record.canonical_id is None


@pytest.mark.asyncio
async def test_ingest_event_validates_payload(session_factory) -> None:
    events, source_id = await _setup(session_factory)
    with pytest.raises(ValidationError):
        await events.ingest_event("t1", source_id, _event("  ", "2026-02-01T19:00:00Z"))
    with pytest.raises(ValidationError):
        await events.ingest_event(
            "t1",
            source_id,
            _event("Backwards", "2026-02-01T19:00:00Z", ends_at="2026-02-01T18:00:00Z"),
        )
    with pytest.raises(ValidationError):
        await events.ingest_event("t1", source_id, {"title": "No start"})


@pytest.mark.asyncio
async def test_ingest_event_requires_visible_source(session_factory) -> None:
    events, source_id = await _setup(session_factory)
    with pytest.raises(NotFoundError):
        await events.ingest_event("t2", source_id, _event("Elsewhere", "2026-02-01T19:00:00Z"))


@pytest.mark.asyncio
async def test_publish_and_cancel_are_idempotent(session_factory) -> None:
    events, source_id = await _setup(session_factory)
    event_id = await events.ingest_event("t1", source_id, _event("Poetry Slam", "2026-02-03T20:00:00Z"))
    assert await events.publish_event("t1", event_id) is True
    assert await events.publish_event("t1", event_id) is False
    assert await events.cancel_event("t1", event_id) is True
    assert await events.cancel_event("t1", event_id) is False
    record = await events.resolve_event_for_processing("t1", event_id)
    assert record.status == "cancelled"
    assert record.version == 3
    with pytest.raises(InvalidTransitionError):
        await events.publish_event("t1", event_id)


@pytest.mark.asyncio
async def test_consolidate_marks_duplicate_and_records_relationship(session_factory) -> None:
    events, source_id = await _setup(session_factory)
    canonical = await events.ingest_event("t1", source_id, _event("Film Night", "2026-02-05T20:00:00Z"))
    duplicate = await events.ingest_event("t1", source_id, _event("Film night!", "2026-02-05T20:00:00Z"))
    await events.publish_event("t1", canonical)

    assert await events.consolidate_events("t1", duplicate, canonical) is True
    record = await events.resolve_event_for_processing("t1", duplicate)
    assert record.status == "consolidated"
    assert record.canonical_id == canonical

    # Re-consolidating into the same canonical is a no-op.
    assert await events.consolidate_events("t1", duplicate, canonical) is False
    assert (await events.resolve_event_for_processing("t1", duplicate)).version == record.version

    async with session_factory() as session:
        relationships = await events_repo.list_relationships(session, "t1", canonical)
    assert [(r.to_event_id, r.relationship_type) for r in relationships] == [
        (duplicate, "supersedes")
    ]


@pytest.mark.asyncio
async def test_consolidate_rejects_invalid_pairs(session_factory) -> None:
    events, source_id = await _setup(session_factory)
    first = await events.ingest_event("t1", source_id, _event("Market", "2026-03-01T09:00:00Z"))
    second = await events.ingest_event("t1", source_id, _event("Market", "2026-03-01T09:00:00Z"))
    third = await events.ingest_event("t1", source_id, _event("Market", "2026-03-01T09:00:00Z"))
    cancelled = await events.ingest_event("t1", source_id, _event("Fair", "2026-03-02T09:00:00Z"))
    await events.cancel_event("t1", cancelled)

    with pytest.raises(ValidationError):
        await events.consolidate_events("t1", first, first)
    with pytest.raises(NotFoundError):
        await events.consolidate_events("t1", first, "missing")
    with pytest.raises(NotFoundError):
        await events.consolidate_events("t2", first, second)
    with pytest.raises(InvalidTransitionError):
        await events.consolidate_events("t1", first, cancelled)

    await events.consolidate_events("t1", second, first)
    # A consolidated event can neither be re-pointed nor act as a canonical.
    with pytest.raises(InvalidTransitionError):
        await events.consolidate_events("t1", second, third)
    with pytest.raises(InvalidTransitionError):
        await events.consolidate_events("t1", third, second)


@pytest.mark.asyncio
async def test_schedule_contains_only_published_events_in_range(session_factory) -> None:
    events, source_id = await _setup(session_factory)
    late = await events.ingest_event("t1", source_id, _event("Late Show", "2026-04-10T22:00:00Z"))
    early = await events.ingest_event("t1", source_id, _event("Matinee", "2026-04-10T14:00:00Z"))
    boundary = await events.ingest_event("t1", source_id, _event("Midnight", "2026-04-12T00:00:00Z"))
    draft = await events.ingest_event("t1", source_id, _event("Draft", "2026-04-10T18:00:00Z"))
    outside = await events.ingest_event("t1", source_id, _event("Next Month", "2026-05-01T18:00:00Z"))
    for event_id in (late, early, boundary, outside):
        await events.publish_event("t1", event_id)

    schedule = await events.compile_event_schedule(
        "t1", "2026-04-10T00:00:00Z", "2026-04-12T00:00:00Z"
    )
    assert [record.event_id for record in schedule.events] == [early, late, boundary]
    assert all(record.source_id == source_id for record in schedule.events)
    assert draft not in {record.event_id for record in schedule.events}

    other_tenant = await events.compile_event_schedule(
        "t2", "2026-04-10T00:00:00Z", "2026-04-12T00:00:00Z"
    )
    assert other_tenant.events == ()


@pytest.mark.asyncio
async def test_schedule_rejects_inverted_period(session_factory) -> None:
    events, _source_id = await _setup(session_factory)
    with pytest.raises(ValidationError):
        await events.compile_event_schedule("t1", "2026-04-12T00:00:00Z", "2026-04-10T00:00:00Z")
