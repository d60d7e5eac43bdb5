from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventcurator.core.config import get_settings
from eventcurator.core.errors import ValidationError
from eventcurator.core.timeutil import ensure_utc, parse_timestamp, utc_now
from eventcurator.domain.lifecycle import (
    SOURCE_ACTIVE,
    SOURCE_INACTIVE,
    SOURCE_PENDING,
    SOURCE_RETIRED,
)
from eventcurator.domain.models import Source
from eventcurator.persistence.db import SessionLocal
from eventcurator.persistence.repos import sources as sources_repo


logger = logging.getLogger(__name__)

SOURCE_CATEGORIES = frozenset({"web_page", "social_post", "feed", "api", "manual"})


@dataclass(frozen=True)
class NavigationBrief:
    """Everything a navigator needs to visit one source."""

    source_id: str
    name: str
    url: str
    category: str
    platform: str | None
    feed_url: str | None
    crawl_config: dict[str, Any] = field(default_factory=dict)
    status: str = SOURCE_ACTIVE
    failure_count: int = 0
    last_navigated_at: datetime | None = None
    next_navigation_at: datetime | None = None
    version: int = 1


def _to_brief(row: Source) -> NavigationBrief:
    return NavigationBrief(
        source_id=row.id,
        name=row.name,
        url=row.url,
        category=row.category,
        platform=row.platform,
        feed_url=row.feed_url,
        crawl_config=dict(row.crawl_config_json or {}),
        status=row.status,
        failure_count=row.failure_count,
        last_navigated_at=ensure_utc(row.last_navigated_at),
        next_navigation_at=ensure_utc(row.next_navigation_at),
        version=row.version,
    )


class SourceAccess:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        failure_threshold: int | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._failure_threshold = (
            failure_threshold
            if failure_threshold is not None
            else get_settings().source_failure_threshold
        )
        if self._failure_threshold < 1:
            raise ValidationError("source failure threshold must be at least 1")

    async def onboard_source(
        self,
        tenant_id: str,
        name: str,
        url: str,
        *,
        category: str = "web_page",
        platform: str | None = None,
        feed_url: str | None = None,
        crawl_config: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        if not name or not name.strip():
            raise ValidationError("source name is required")
        if not url or not url.strip():
            raise ValidationError("source url is required")
        if category not in SOURCE_CATEGORIES:
            raise ValidationError(f"unknown source category '{category}'")
        async with self._session_factory() as session:
            source_id = await sources_repo.store.create(
                session,
                tenant_id=tenant_id,
                status=SOURCE_PENDING,
                name=name.strip(),
                url=url.strip(),
                category=category,
                platform=platform,
                feed_url=feed_url,
                crawl_config_json=crawl_config or {},
                metadata_json=metadata or {},
            )
            await session.commit()
        return source_id

    async def _transition(self, tenant_id: str, source_id: str, target: str) -> bool:
        async with self._session_factory() as session:
            changed = await sources_repo.store.transition(session, tenant_id, source_id, target)
            if changed:
                await session.commit()
        return changed

    async def commission_source(self, tenant_id: str, source_id: str) -> bool:
        return await self._transition(tenant_id, source_id, SOURCE_ACTIVE)

    async def decommission_source(self, tenant_id: str, source_id: str) -> bool:
        return await self._transition(tenant_id, source_id, SOURCE_INACTIVE)

    async def retire_source(self, tenant_id: str, source_id: str) -> bool:
        return await self._transition(tenant_id, source_id, SOURCE_RETIRED)

    async def report_navigation_failure(self, tenant_id: str, source_id: str) -> NavigationBrief:
        async with self._session_factory() as session:
            await sources_repo.record_failure(
                session, tenant_id, source_id, threshold=self._failure_threshold
            )
            await session.commit()
            row = await sources_repo.store.find(session, tenant_id, source_id)
        if row.status == SOURCE_INACTIVE and row.failure_count >= self._failure_threshold:
            logger.warning(
                "source_auto_decommissioned tenant=%s source=%s failures=%s",
                tenant_id,
                source_id,
                row.failure_count,
            )
        return _to_brief(row)

    async def acknowledge_navigation_success(
        self,
        tenant_id: str,
        source_id: str,
        *,
        navigated_at: datetime | str | None = None,
    ) -> NavigationBrief:
        async with self._session_factory() as session:
            await sources_repo.record_success(
                session,
                tenant_id,
                source_id,
                navigated_at=parse_timestamp(navigated_at) or utc_now(),
            )
            await session.commit()
            row = await sources_repo.store.find(session, tenant_id, source_id)
        return _to_brief(row)

    async def nominate_for_navigation(
        self,
        tenant_id: str,
        limit: int,
        as_of: datetime | str | None = None,
    ) -> list[NavigationBrief]:
        if limit < 1:
            raise ValidationError("nomination limit must be at least 1")
        cutoff = parse_timestamp(as_of) or utc_now()
        async with self._session_factory() as session:
            rows = await sources_repo.list_due_sources(
                session, tenant_id, as_of=cutoff, limit=limit
            )
        return [_to_brief(row) for row in rows]

    async def record_next_navigation(
        self,
        tenant_id: str,
        source_id: str,
        next_navigation_at: datetime | str,
        *,
        expected_version: int | None = None,
    ) -> int:
        when = parse_timestamp(next_navigation_at)
        if when is None:
            raise ValidationError("next_navigation_at is required")
        async with self._session_factory() as session:
            if expected_version is None:
                expected_version = (await sources_repo.store.find(session, tenant_id, source_id)).version
            version = await sources_repo.store.compare_and_set(
                session,
                tenant_id,
                source_id,
                expected_version=expected_version,
                values={"next_navigation_at": when},
            )
            await session.commit()
        return version

    async def resolve_navigation_brief(self, tenant_id: str, source_id: str) -> NavigationBrief:
        async with self._session_factory() as session:
            row = await sources_repo.store.find(session, tenant_id, source_id)
        return _to_brief(row)

    async def remove_source(self, tenant_id: str, source_id: str) -> None:
        async with self._session_factory() as session:
            await sources_repo.store.soft_delete(session, tenant_id, source_id)
            await session.commit()
