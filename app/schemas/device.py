# app/schemas/device.py
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Platform = Literal["web", "mobile", "tablet", "desktop"]


class DeviceInfo(BaseModel):
    """Client metadata stored next to a device fingerprint"""

    platform: Platform = "web"
    browser: Optional[str] = Field(None, max_length=100)
    os: Optional[str] = Field(None, max_length=100)
    user_agent: Optional[str] = Field(None, max_length=500)
    ip_address: Optional[str] = Field(None, max_length=64)
    locale: Optional[str] = Field(None, max_length=64)


class DeviceRegisterRequest(BaseModel):
    # When omitted the fingerprint is derived from the request headers
    device_id: Optional[str] = Field(None, min_length=8, max_length=128)
    platform: Optional[Platform] = None
    browser: Optional[str] = Field(None, max_length=100)
    os: Optional[str] = Field(None, max_length=100)


class DeviceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    device_id: str
    platform: str
    browser: Optional[str] = None
    os: Optional[str] = None
    ip_address: Optional[str] = None
    is_active: bool
    registered_at: datetime
    last_seen_at: datetime


class DeviceListResponse(BaseModel):
    devices: List[DeviceResponse]
    active_count: int
    device_limit: int
    can_add_device: bool
