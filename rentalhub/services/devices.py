"""Registry of connected device agents and request/response correlation.

Registrations and pending requests live in this process only. A device's
control connection and every request addressed to it must reach the same
instance, so multi-instance deployments need sticky routing for
``/ws/devices`` and the device endpoints.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from rentalhub.errors import DeviceAccessDenied, DeviceOffline, DeviceResponseTimeout
from rentalhub.services.tokens import Principal

LOGGER = logging.getLogger(__name__)

DeviceKey = tuple[str, str, str]
REPORT_TYPES = {"SYSTEM_INFO", "LOCATION", "FULL_REPORT"}


class DeviceChannel(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send_json(self, data: dict[str, Any]) -> None: ...


@dataclass(frozen=True)
class OnlineDevice:
    business_id: str
    branch_id: str
    device_id: str


@dataclass
class _PendingRequest:
    future: asyncio.Future
    timer: asyncio.TimerHandle
    channel: DeviceChannel


def device_key(business_id: Any, branch_id: Any, device_id: Any) -> DeviceKey:
    return (str(business_id), str(branch_id), str(device_id))


class DeviceBroker:
    def __init__(self, default_timeout_ms: int = 10000) -> None:
        self._default_timeout_ms = default_timeout_ms
        self._devices: dict[DeviceKey, DeviceChannel] = {}
        self._registrations: dict[DeviceChannel, DeviceKey] = {}
        self._pending: dict[str, _PendingRequest] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def device_count(self) -> int:
        return len(self._devices)

    def is_registered(self, key: DeviceKey) -> bool:
        return key in self._devices

    async def on_connect(self, channel: DeviceChannel) -> None:
        LOGGER.info("Device socket connected, waiting for registration")
        await channel.send_json({"type": "STATUS", "connected": True})

    async def handle_message(self, channel: DeviceChannel, raw: Any) -> None:
        if isinstance(raw, (str, bytes)):
            try:
                data = json.loads(raw)
            except (TypeError, ValueError):
                LOGGER.warning("Invalid JSON received on device socket")
                return
        else:
            data = raw
        if not isinstance(data, dict):
            LOGGER.warning("Ignoring non-object device message")
            return

        # responses win over every other message type
        request_id = data.get("requestId")
        if request_id and self._resolve(request_id, data):
            return

        message_type = data.get("type")
        if message_type == "register":
            await self._register(channel, data)
        elif message_type in REPORT_TYPES:
            LOGGER.info("Unsolicited %s from %s", message_type, self._registrations.get(channel))
        elif request_id:
            LOGGER.debug("Dropping late or unknown response %s", request_id)

    async def _register(self, channel: DeviceChannel, data: dict[str, Any]) -> None:
        device_id = data.get("deviceId")
        business_id = data.get("businessId")
        branch_id = data.get("branchId")
        if not device_id or not business_id or not branch_id:
            await channel.send_json(
                {
                    "type": "register_failed",
                    "reason": "Missing deviceId / businessId / branchId",
                }
            )
            return

        key = device_key(business_id, branch_id, device_id)
        previous_key = self._registrations.get(channel)
        if previous_key is not None and previous_key != key:
            self._drop_registration(channel, previous_key)
        # last registration wins
        self._devices[key] = channel
        self._registrations[channel] = key
        LOGGER.info("Device registered %s, online devices: %s", ":".join(key), len(self._devices))
        await channel.send_json(
            {
                "type": "registered",
                "deviceId": device_id,
                "businessId": business_id,
                "branchId": branch_id,
            }
        )

    def on_close(self, channel: DeviceChannel) -> None:
        key = self._registrations.pop(channel, None)
        if key is not None:
            self._drop_registration(channel, key)
            LOGGER.info("Device disconnected %s, online devices: %s", ":".join(key), len(self._devices))
        else:
            LOGGER.info("Unregistered device socket disconnected")

        for request_id, entry in list(self._pending.items()):
            if entry.channel is channel:
                self._pending.pop(request_id, None)
                entry.timer.cancel()
                if not entry.future.done():
                    entry.future.set_exception(
                        DeviceOffline(f"Device disconnected before answering {request_id}")
                    )

    def _drop_registration(self, channel: DeviceChannel, key: DeviceKey) -> None:
        # a stale socket closing must not evict a newer registration
        if self._devices.get(key) is channel:
            del self._devices[key]

    async def dispatch(
        self, key: DeviceKey, payload: dict[str, Any], timeout_ms: Optional[int] = None
    ) -> dict[str, Any]:
        channel = self._devices.get(key)
        if channel is None or not channel.is_open:
            raise DeviceOffline(f"Device {':'.join(key)} is offline or not connected")

        timeout_s = (timeout_ms or self._default_timeout_ms) / 1000
        request_id = f"req_{uuid.uuid4().hex}"
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        timer = loop.call_later(timeout_s, self._expire, request_id)
        self._pending[request_id] = _PendingRequest(future=future, timer=timer, channel=channel)
        try:
            try:
                await channel.send_json({**payload, "requestId": request_id})
            except Exception as exc:
                raise DeviceOffline(f"Failed to send to device {':'.join(key)}") from exc
            return await future
        finally:
            entry = self._pending.pop(request_id, None)
            if entry is not None:
                entry.timer.cancel()

    def _resolve(self, request_id: str, data: dict[str, Any]) -> bool:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False
        entry.timer.cancel()
        if not entry.future.done():
            entry.future.set_result(data)
        return True

    def _expire(self, request_id: str) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return
        LOGGER.warning("Device request %s timed out", request_id)
        if not entry.future.done():
            entry.future.set_exception(
                DeviceResponseTimeout(f"No response for {request_id}")
            )

    def online_devices(
        self, business_id: Any = None, branch_id: Any = None
    ) -> list[OnlineDevice]:
        devices = []
        for key in self._devices:
            if business_id is not None and key[0] != str(business_id):
                continue
            if branch_id is not None and key[1] != str(branch_id):
                continue
            devices.append(OnlineDevice(business_id=key[0], branch_id=key[1], device_id=key[2]))
        return devices


class DeviceService:
    """Tenant-checked device requests on behalf of an authenticated principal."""

    def __init__(self, broker: DeviceBroker) -> None:
        self._broker = broker

    def validate_access(self, device_id: str, principal: Principal) -> DeviceKey:
        key = device_key(principal.business_id, principal.branch_id, device_id)
        if self._broker.is_registered(key):
            return key
        if any(device.device_id == str(device_id) for device in self._broker.online_devices()):
            LOGGER.warning(
                "Cross-tenant device access denied device_id=%s user_id=%s",
                device_id,
                principal.user_id,
            )
            raise DeviceAccessDenied(
                f"Device {device_id} is not registered to business "
                f"{principal.business_id} branch {principal.branch_id}"
            )
        raise DeviceOffline(f"Device {device_id} is offline or not connected")

    async def _request(self, device_id: str, principal: Principal, request_type: str) -> Any:
        key = self.validate_access(device_id, principal)
        response = await self._broker.dispatch(key, {"type": request_type})
        return response.get("payload")

    async def get_system_info(self, device_id: str, principal: Principal) -> Any:
        return await self._request(device_id, principal, "GET_SYSTEM_INFO")

    async def get_location(self, device_id: str, principal: Principal) -> Any:
        return await self._request(device_id, principal, "GET_LOCATION")

    async def get_full_report(self, device_id: str, principal: Principal) -> Any:
        return await self._request(device_id, principal, "GET_FULL_REPORT")
