import logging
from typing import Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.websockets import WebSocketState

from rentalhub.container import Services
from rentalhub.dependencies import AuthContext, get_services, require_both
from rentalhub.schemas.devices import (
    DeviceReportResponse,
    DeviceRequest,
    OnlineDeviceResponse,
    OnlineDevicesResponse,
)

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/devices", tags=["devices"])
ws_router = APIRouter(tags=["devices"])


class WebSocketChannel:
    """Adapts a Starlette WebSocket to the broker's channel interface."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self._closed = False

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self._websocket.client_state == WebSocketState.CONNECTED
            and self._websocket.application_state == WebSocketState.CONNECTED
        )

    def mark_closed(self) -> None:
        self._closed = True

    async def send_json(self, data: dict[str, Any]) -> None:
        await self._websocket.send_json(data)


async def _touch(services: Services, context: AuthContext) -> None:
    await run_in_threadpool(services.sessions.touch_activity, context.session_token)


@router.post("/system-info", response_model=DeviceReportResponse)
async def system_info(
    payload: DeviceRequest,
    context: AuthContext = Depends(require_both),
    services: Services = Depends(get_services),
) -> DeviceReportResponse:
    await _touch(services, context)
    result = await services.devices.get_system_info(payload.device_id, context.principal)
    return DeviceReportResponse(device_id=payload.device_id, report_type="SYSTEM_INFO", payload=result)


@router.post("/location", response_model=DeviceReportResponse)
async def location(
    payload: DeviceRequest,
    context: AuthContext = Depends(require_both),
    services: Services = Depends(get_services),
) -> DeviceReportResponse:
    await _touch(services, context)
    result = await services.devices.get_location(payload.device_id, context.principal)
    return DeviceReportResponse(device_id=payload.device_id, report_type="LOCATION", payload=result)


@router.post("/full-report", response_model=DeviceReportResponse)
async def full_report(
    payload: DeviceRequest,
    context: AuthContext = Depends(require_both),
    services: Services = Depends(get_services),
) -> DeviceReportResponse:
    await _touch(services, context)
    result = await services.devices.get_full_report(payload.device_id, context.principal)
    return DeviceReportResponse(device_id=payload.device_id, report_type="FULL_REPORT", payload=result)


@router.get("/online", response_model=OnlineDevicesResponse)
async def online_devices(
    context: AuthContext = Depends(require_both),
    services: Services = Depends(get_services),
) -> OnlineDevicesResponse:
    principal = context.principal
    devices = services.device_broker.online_devices(principal.business_id, principal.branch_id)
    return OnlineDevicesResponse(
        count=len(devices),
        devices=[
            OnlineDeviceResponse(
                business_id=device.business_id,
                branch_id=device.branch_id,
                device_id=device.device_id,
            )
            for device in devices
        ],
    )


@ws_router.websocket("/ws/devices")
async def device_socket(websocket: WebSocket) -> None:
    broker = websocket.app.state.services.device_broker
    await websocket.accept()
    channel = WebSocketChannel(websocket)
    try:
        await broker.on_connect(channel)
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text") if message.get("text") is not None else message.get("bytes")
            await broker.handle_message(channel, raw)
    except WebSocketDisconnect as exc:
        LOGGER.info("Device socket closed code=%s", exc.code)
    finally:
        channel.mark_closed()
        broker.on_close(channel)
