from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class DeviceRequest(BaseModel):
    device_id: str = Field(min_length=1, max_length=255)

    @field_validator("device_id")
    @classmethod
    def normalize_device_id(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("device_id is required")
        return cleaned


class DeviceReportResponse(BaseModel):
    device_id: str
    report_type: str
    payload: Optional[Any] = None


class OnlineDeviceResponse(BaseModel):
    business_id: str
    branch_id: str
    device_id: str


class OnlineDevicesResponse(BaseModel):
    count: int
    devices: list[OnlineDeviceResponse]
