"""
Device session API routes
"""

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel
from typing import Awaitable, Callable, Optional
import logging
from datetime import datetime

from discovery.models import DeviceEndpoint
from link_errors import DeviceNotReady, TransportSetupFailure, WaiterTimeout

logger = logging.getLogger(__name__)

# Request models
class BindRequest(BaseModel):
    base_url: str

# Response models
class ReadingResponse(BaseModel):
    uid: str
    observed_at: datetime
    host: str
    path: str

class DeviceStatusResponse(BaseModel):
    ready: bool
    base_url: Optional[str] = None
    polling: bool = False
    last_reading: Optional[ReadingResponse] = None

class NextUIDResponse(BaseModel):
    uid: str
    base_url: str


def _status_response(session) -> DeviceStatusResponse:
    endpoint = session.get_endpoint()
    poller = session.poller
    reading = poller.get_last_reading() if poller else None
    return DeviceStatusResponse(
        ready=endpoint is not None,
        base_url=endpoint.base_url if endpoint else None,
        polling=bool(poller and poller.is_running),
        last_reading=ReadingResponse(**reading.to_dict()) if reading else None
    )


def create_device_routes(session, locate_device: Callable[[], Awaitable[Optional[DeviceEndpoint]]]):
    """Create device session routes"""
    router = APIRouter(prefix="/api/device", tags=["device"])

    @router.get("", response_model=DeviceStatusResponse)
    async def get_device():
        """Current endpoint, polling state and last reading"""
        return _status_response(session)

    @router.put("", response_model=DeviceStatusResponse)
    async def bind_device(request: BindRequest):
        """Bind a device endpoint manually (e.g. typed in by an operator)"""
        try:
            session.set_endpoint(request.base_url)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return _status_response(session)

    @router.delete("", response_model=DeviceStatusResponse)
    async def clear_device():
        """Forget the device and stop polling"""
        await session.clear()
        return _status_response(session)

    @router.post("/discover", response_model=DeviceStatusResponse)
    async def discover_device():
        """Run discovery and bind whatever answers first"""
        try:
            endpoint = await locate_device()
        except TransportSetupFailure as e:
            logger.error(f"Discovery unavailable: {e}")
            raise HTTPException(status_code=503, detail=str(e))

        if endpoint is None:
            raise HTTPException(status_code=404, detail="No device found on the local network")

        session.set_endpoint(endpoint)
        return _status_response(session)

    @router.get("/next-uid", response_model=NextUIDResponse)
    async def next_uid(timeout_ms: int = Query(5000, ge=500, le=60000)):
        """Block until the next card is scanned"""
        try:
            uid = await session.wait_for_next_uid(timeout_ms)
        except DeviceNotReady as e:
            raise HTTPException(status_code=409, detail=str(e))
        except WaiterTimeout as e:
            raise HTTPException(status_code=504, detail=str(e))

        endpoint = session.get_endpoint()
        return NextUIDResponse(uid=uid, base_url=endpoint.base_url if endpoint else "")

    return router
