from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventcurator.core.errors import BlobExistsError, ConcurrencyConflictError, ValidationError
from eventcurator.core.timeutil import ensure_utc, utc_now
from eventcurator.domain.lifecycle import CAPTURE_EXPIRED, CAPTURE_EXTRACTED, CAPTURE_PRESERVED
from eventcurator.persistence.db import SessionLocal
from eventcurator.persistence.repos import captures as captures_repo
from eventcurator.persistence.repos import sources as sources_repo
from eventcurator.services.blobs import BlobStore, blob_path, create_blob_store


logger = logging.getLogger(__name__)

DRIFT_HTML_CHANGED = "html_changed"
DRIFT_HTML_APPEARED = "html_appeared"
DRIFT_HTML_DISAPPEARED = "html_disappeared"


class ObservationBundle(BaseModel):
    """Archived output of one navigation session; opaque to everything but extraction."""

    id: str | None = None
    source_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    html: str | None = None
    screenshot_url: str | None = None
    network_log_url: str | None = None
    video_url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    captured_at: datetime = Field(default_factory=utc_now)

    @field_validator("captured_at")
    @classmethod
    def _normalize_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def content_hash(self) -> str | None:
        if self.html is None:
            return None
        return hashlib.sha256(self.html.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class EnvironmentDrift:
    has_drifted: bool
    previous_capture_id: str | None
    drift_signals: tuple[str, ...] = ()


def _drift_signals(latest_hash: str | None, previous_hash: str | None) -> tuple[str, ...]:
    if latest_hash is not None and previous_hash is None:
        return (DRIFT_HTML_APPEARED,)
    if latest_hash is None and previous_hash is not None:
        return (DRIFT_HTML_DISAPPEARED,)
    if latest_hash != previous_hash:
        return (DRIFT_HTML_CHANGED,)
    return ()


class CaptureAccess:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        blob_store: BlobStore | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._blobs = blob_store or create_blob_store()

    async def _upload_bundle(
        self,
        session: AsyncSession,
        path: str,
        document: dict[str, Any],
        capture_id: str,
        *,
        replace: bool,
    ) -> None:
        try:
            await self._blobs.upload(path, document, overwrite=replace)
        except BlobExistsError:
            if await captures_repo.id_in_use(session, capture_id):
                raise ConcurrencyConflictError("capture", capture_id, None) from None
            # No row points at the blob: an earlier preserve failed after uploading.
            await self._blobs.upload(path, document, overwrite=True)

    async def preserve_capture(
        self,
        tenant_id: str,
        bundle: ObservationBundle | Mapping[str, Any],
        *,
        capture_id: str | None = None,
    ) -> str:
        try:
            parsed = ObservationBundle.model_validate(bundle)
        except PydanticValidationError as exc:
            raise ValidationError(f"invalid observation bundle: {exc.errors()[0].get('msg')}") from exc
        resolved_id = capture_id or parsed.id or str(uuid4())
        document = parsed.model_copy(update={"id": resolved_id}).model_dump(mode="json")
        path = blob_path("captures", resolved_id, "bundles", resolved_id)
        async with self._session_factory() as session:
            await sources_repo.store.find(session, tenant_id, parsed.source_id)
            existing = await captures_repo.store.get(session, tenant_id, resolved_id)
            caller_chosen = capture_id is not None or parsed.id is not None
            if existing is None and caller_chosen:
                if await captures_repo.id_in_use(session, resolved_id):
                    # Owned by another tenant or soft-deleted; its blob must stay untouched.
                    raise ValidationError(f"capture id {resolved_id} is already in use")
            await self._upload_bundle(
                session, path, document, resolved_id, replace=existing is not None
            )
            fields = {
                "session_id": parsed.session_id,
                "storage_path": path,
                "content_hash": parsed.content_hash(),
                "captured_at": parsed.captured_at,
                "metadata_json": parsed.metadata,
            }
            if existing is None:
                try:
                    await captures_repo.store.create(
                        session,
                        tenant_id=tenant_id,
                        status=CAPTURE_PRESERVED,
                        resource_id=resolved_id,
                        source_id=parsed.source_id,
                        **fields,
                    )
                except IntegrityError as exc:
                    # Another preserve inserted the same id between the check and the insert.
                    raise ConcurrencyConflictError("capture", resolved_id, None) from exc
            else:
                await captures_repo.store.compare_and_set(
                    session,
                    tenant_id,
                    resolved_id,
                    expected_version=existing.version,
                    values=fields,
                )
            await session.commit()
        logger.info(
            "capture_preserved tenant=%s capture=%s source=%s replaced=%s",
            tenant_id,
            resolved_id,
            parsed.source_id,
            existing is not None,
        )
        return resolved_id

    async def recall_capture(self, tenant_id: str, capture_id: str) -> ObservationBundle:
        async with self._session_factory() as session:
            row = await captures_repo.store.find(session, tenant_id, capture_id)
        document = await self._blobs.download(row.storage_path)
        return ObservationBundle.model_validate({**document, "id": row.id})

    async def _transition(self, tenant_id: str, capture_id: str, target: str, **values: Any) -> bool:
        async with self._session_factory() as session:
            changed = await captures_repo.store.transition(
                session, tenant_id, capture_id, target, values=values
            )
            if changed:
                await session.commit()
        return changed

    async def confirm_extraction(self, tenant_id: str, capture_id: str) -> bool:
        return await self._transition(
            tenant_id, capture_id, CAPTURE_EXTRACTED, extracted_at=utc_now()
        )

    async def expire_capture(self, tenant_id: str, capture_id: str) -> bool:
        return await self._transition(tenant_id, capture_id, CAPTURE_EXPIRED)

    async def detect_environment_drift(self, tenant_id: str, source_id: str) -> EnvironmentDrift:
        async with self._session_factory() as session:
            latest = await captures_repo.list_latest_for_source(
                session, tenant_id, source_id, limit=2
            )
        if len(latest) < 2:
            return EnvironmentDrift(has_drifted=False, previous_capture_id=None)
        current, previous = latest
        signals = _drift_signals(current.content_hash, previous.content_hash)
        if signals:
            logger.info(
                "environment_drift_detected tenant=%s source=%s signals=%s",
                tenant_id,
                source_id,
                ",".join(signals),
            )
        return EnvironmentDrift(
            has_drifted=bool(signals),
            previous_capture_id=previous.id,
            drift_signals=signals,
        )
