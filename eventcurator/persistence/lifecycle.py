from __future__ import annotations

import logging
from typing import Any, Generic, Mapping, TypeVar
from uuid import uuid4

from sqlalchemy import Select, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from eventcurator.core.errors import (
    ConcurrencyConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from eventcurator.core.timeutil import utc_now
from eventcurator.domain.lifecycle import TransitionTable
from eventcurator.domain.models import LifecycleColumns
from eventcurator.persistence.guards import require_tenant_id, tenant_predicate


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=LifecycleColumns)

# Columns owned by the store; callers may not write them through ``values``.
_RESERVED_COLUMNS = frozenset({"id", "tenant_id", "version", "created_at"})


class LifecycleStore(Generic[ModelT]):
    """Tenant-scoped persistence with a version counter and compare-and-swap writes.

    One instance per resource type, parametrised by the mapped model and its
    transition table. Every method takes the caller's ``AsyncSession``; the
    caller owns the unit of work and decides when to commit. Conflicts are
    reported, never retried here.
    """

    def __init__(
        self,
        model: type[ModelT],
        transitions: TransitionTable,
        *,
        resource_type: str,
    ) -> None:
        self.model = model
        self.transitions = transitions
        self.resource_type = resource_type

    def scoped_select(self, tenant_id: str) -> Select[tuple[ModelT]]:
        # Soft-deleted rows are invisible to every read path.
        return (
            select(self.model)
            .where(tenant_predicate(self.model, tenant_id), self.model.deleted_at.is_(None))
            .execution_options(populate_existing=True)
        )

    async def create(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        status: str,
        resource_id: str | None = None,
        **fields: Any,
    ) -> str:
        require_tenant_id(tenant_id, table=self.model.__tablename__)
        if status not in self.transitions.statuses:
            raise ValidationError(f"unknown {self.resource_type} status '{status}'")
        reserved = _RESERVED_COLUMNS.intersection(fields)
        if reserved:
            raise ValidationError(f"cannot set reserved columns: {sorted(reserved)}")
        row = self.model(
            id=resource_id or str(uuid4()),
            tenant_id=tenant_id,
            version=1,
            status=status,
            **fields,
        )
        session.add(row)
        await session.flush()
        logger.info(
            "lifecycle_created resource=%s id=%s tenant=%s status=%s",
            self.resource_type,
            row.id,
            tenant_id,
            status,
        )
        return row.id

    async def get(self, session: AsyncSession, tenant_id: str, resource_id: str) -> ModelT | None:
        # Return None for tenant mismatch to keep not-found semantics.
        result = await session.execute(
            self.scoped_select(tenant_id).where(self.model.id == resource_id)
        )
        return result.scalar_one_or_none()

    async def find(self, session: AsyncSession, tenant_id: str, resource_id: str) -> ModelT:
        row = await self.get(session, tenant_id, resource_id)
        if row is None:
            raise NotFoundError(self.resource_type, resource_id)
        return row

    async def compare_and_set(
        self,
        session: AsyncSession,
        tenant_id: str,
        resource_id: str,
        *,
        expected_version: int,
        values: Mapping[str, Any],
    ) -> int:
        """Apply ``values`` only if the stored version still equals ``expected_version``.

        Returns the new version. Raises ``ConcurrencyConflictError`` when another
        writer got there first and ``NotFoundError`` when the row is not visible.
        """
        reserved = _RESERVED_COLUMNS.intersection(values)
        if reserved:
            raise ValidationError(f"cannot set reserved columns: {sorted(reserved)}")
        new_version = expected_version + 1
        stmt = (
            update(self.model)
            .where(
                self.model.id == resource_id,
                tenant_predicate(self.model, tenant_id),
                self.model.deleted_at.is_(None),
                self.model.version == expected_version,
            )
            .values(version=new_version, updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount == 0:
            # Distinguish a lost race from a row that is simply not visible.
            if await self.get(session, tenant_id, resource_id) is None:
                raise NotFoundError(self.resource_type, resource_id)
            logger.info(
                "lifecycle_conflict resource=%s id=%s expected_version=%s",
                self.resource_type,
                resource_id,
                expected_version,
            )
            raise ConcurrencyConflictError(self.resource_type, resource_id, expected_version)
        return new_version

    async def transition(
        self,
        session: AsyncSession,
        tenant_id: str,
        resource_id: str,
        target: str,
        *,
        values: Mapping[str, Any] | None = None,
    ) -> bool:
        """Move a resource to ``target``; returns False when it was already there."""
        row = await self.find(session, tenant_id, resource_id)
        current = row.status
        observed_version = row.version
        if current == target:
            # Safe for at-least-once callers: no write, no version bump.
            return False
        if target not in self.transitions.statuses or not self.transitions.allows(current, target):
            raise InvalidTransitionError(self.resource_type, resource_id, current, target)
        new_version = await self.compare_and_set(
            session,
            tenant_id,
            resource_id,
            expected_version=observed_version,
            values={"status": target, **(values or {})},
        )
        logger.info(
            "lifecycle_transition resource=%s id=%s from=%s to=%s version=%s",
            self.resource_type,
            resource_id,
            current,
            target,
            new_version,
        )
        return True

    async def apply_atomic(
        self,
        session: AsyncSession,
        tenant_id: str,
        resource_id: str,
        values: Mapping[str, Any],
    ) -> None:
        # Server-side arithmetic writes (counters) still advance the version by one.
        stmt = (
            update(self.model)
            .where(
                self.model.id == resource_id,
                tenant_predicate(self.model, tenant_id),
                self.model.deleted_at.is_(None),
            )
            .values(version=self.model.version + 1, updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount == 0:
            raise NotFoundError(self.resource_type, resource_id)

    async def soft_delete(
        self,
        session: AsyncSession,
        tenant_id: str,
        resource_id: str,
        *,
        expected_version: int | None = None,
    ) -> int:
        if expected_version is None:
            expected_version = (await self.find(session, tenant_id, resource_id)).version
        new_version = await self.compare_and_set(
            session,
            tenant_id,
            resource_id,
            expected_version=expected_version,
            values={"deleted_at": utc_now()},
        )
        logger.info(
            "lifecycle_soft_deleted resource=%s id=%s tenant=%s",
            self.resource_type,
            resource_id,
            tenant_id,
        )
        return new_version
