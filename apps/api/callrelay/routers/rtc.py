"""RTC client configuration endpoint."""
from __future__ import annotations

from fastapi import APIRouter

from ..schemas.rtc import RtcConfigResponse
from ..services import rtc as rtc_service

router = APIRouter()


@router.get("/config", response_model=RtcConfigResponse)
async def get_rtc_config() -> RtcConfigResponse:
    """Return ICE servers, capture constraints and reconnect timings for clients."""

    return rtc_service.client_config()
