from __future__ import annotations

from typing import Any

from eventcurator.core.config import get_settings


class TenantPredicateError(RuntimeError):
    """Raised when a curated-record query is about to run without a tenant scope."""

    def __init__(self, table: str | None = None) -> None:
        self.table = table
        target = f" on {table}" if table else ""
        super().__init__(f"tenant_id is required to query curated records{target}")


def require_tenant_id(tenant_id: str | None, *, table: str | None = None) -> None:
    if not get_settings().require_tenant_predicate:
        return
    # Whitespace-only ids would match nothing and hide scoping mistakes.
    if tenant_id is None or not tenant_id.strip():
        raise TenantPredicateError(table)


def tenant_predicate(model: Any, tenant_id: str) -> Any:
    # Every tenant-owned table filters through here so the guard cannot be skipped.
    require_tenant_id(tenant_id, table=getattr(model, "__tablename__", None))
    return model.tenant_id == tenant_id
