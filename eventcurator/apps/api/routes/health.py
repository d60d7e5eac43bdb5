from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Request
from pydantic import BaseModel

from eventcurator.apps.api.response import SuccessEnvelope, success_response
from eventcurator.core.config import get_settings

router = APIRouter(tags=["health"])


class ServiceStatus(BaseModel):
    status: Literal["ok"] = "ok"
    service: str


@router.get("/health", response_model=SuccessEnvelope[ServiceStatus])
async def service_status(request: Request) -> dict:
    # Liveness only; the curated store is not touched.
    status = ServiceStatus(service=get_settings().app_name)
    return success_response(request=request, data=status.model_dump())
