from __future__ import annotations

from fastapi import Header

from eventcurator.persistence.guards import TenantPredicateError
from eventcurator.services.events import EventAccess


def get_tenant_id(x_tenant_id: str = Header(alias="X-Tenant-Id")) -> str:
    tenant_id = x_tenant_id.strip()
    if not tenant_id:
        raise TenantPredicateError()
    return tenant_id


def get_event_access() -> EventAccess:
    return EventAccess()
