from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from eventcurator.apps.api.deps import get_event_access
from eventcurator.apps.api.main import create_app
from eventcurator.services.events import EventAccess
from eventcurator.services.sources import SourceAccess


def _app(session_factory):
    app = create_app()
    app.dependency_overrides[get_event_access] = lambda: EventAccess(session_factory=session_factory)
    return app


async def _seed(session_factory) -> tuple[str, str]:
    sources = SourceAccess(session_factory=session_factory, failure_threshold=3)
    events = EventAccess(session_factory=session_factory)
    source_id = await sources.onboard_source("t1", "Opera House", "https://example.org/opera")
    published = await events.ingest_event(
        "t1",
        source_id,
        {
            "title": "La Traviata",
            "starts_at": "2026-06-01T18:00:00Z",
            "ends_at": "2026-06-01T21:00:00Z",
            "timezone": "Europe/Vienna",
        },
    )
    draft = await events.ingest_event(
        "t1",
        source_id,
        {"title": "Rehearsal", "starts_at": "2026-06-01T10:00:00Z", "timezone": "Europe/Vienna"},
    )
    await events.publish_event("t1", published)
    return published, draft


@pytest.mark.asyncio
async def test_health(session_factory) -> None:
    transport = ASGITransport(app=_app(session_factory))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/v1/health", headers={"X-Request-Id": "req-1"})
    assert response.status_code == 200
    payload = response.json()
    assert payload["data"] == {"status": "ok", "service": "eventcurator"}
    assert payload["meta"] == {"request_id": "req-1", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-1"


@pytest.mark.asyncio
async def test_schedule_lists_published_events_for_tenant(session_factory) -> None:
    published, draft = await _seed(session_factory)
    params = {"period_start": "2026-06-01T00:00:00Z", "period_end": "2026-06-02T00:00:00Z"}
    transport = ASGITransport(app=_app(session_factory))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/v1/events/schedule", params=params, headers={"X-Tenant-Id": "t1"})
        assert response.status_code == 200
        data = response.json()["data"]
        assert [item["id"] for item in data["events"]] == [published]
        assert data["events"][0]["starts_at"] == "2026-06-01T18:00:00.000Z"
        assert data["events"][0]["ends_at"] == "2026-06-01T21:00:00.000Z"
        assert data["period_end"] == "2026-06-02T00:00:00.000Z"
        assert draft not in {item["id"] for item in data["events"]}

        response = await client.get("/v1/events/schedule", params=params, headers={"X-Tenant-Id": "t2"})
        assert response.status_code == 200
        assert response.json()["data"]["events"] == []


@pytest.mark.asyncio
async def test_schedule_error_envelopes(session_factory) -> None:
    transport = ASGITransport(app=_app(session_factory))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get(
            "/v1/events/schedule",
            params={"period_start": "2026-06-01T00:00:00Z", "period_end": "2026-06-02T00:00:00Z"},
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"

        response = await client.get(
            "/v1/events/schedule",
            params={"period_start": "2026-06-02T00:00:00Z", "period_end": "2026-06-01T00:00:00Z"},
            headers={"X-Tenant-Id": "t1"},
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

        response = await client.get(
            "/v1/events/schedule",
            params={"period_start": "2026-06-01T00:00:00Z", "period_end": "2026-06-02T00:00:00Z"},
            headers={"X-Tenant-Id": "  "},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "TENANT_REQUIRED"
