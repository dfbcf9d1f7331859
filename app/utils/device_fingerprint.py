# app/utils/device_fingerprint.py
import hashlib
from typing import Optional

from fastapi import Request

from app.schemas.device import DeviceInfo


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def detect_platform(user_agent: str) -> str:
    ua = user_agent.lower()
    if "ipad" in ua or "tablet" in ua:
        return "tablet"
    if "mobile" in ua or "android" in ua or "iphone" in ua:
        return "mobile"
    if "electron" in ua:
        return "desktop"
    return "web"


def generate_device_fingerprint(request: Request) -> str:
    """
    Stable device id derived from client signals.

    An explicit ``X-Device-ID`` header (native apps) wins; otherwise the
    user agent, network address and locale are hashed. The access
    controller treats the result as an opaque string.
    """
    explicit = request.headers.get("x-device-id")
    if explicit and explicit.strip():
        return explicit.strip()[:128]

    components = [
        request.headers.get("user-agent", ""),
        client_ip(request) or "",
        request.headers.get("accept-language", ""),
    ]
    digest = hashlib.sha256("|".join(components).encode("utf-8")).hexdigest()
    return f"fp_{digest[:32]}"


def extract_device_info(request: Request) -> DeviceInfo:
    user_agent = request.headers.get("user-agent", "")
    return DeviceInfo(
        platform=detect_platform(user_agent),
        user_agent=user_agent[:500] or None,
        ip_address=client_ip(request),
        locale=request.headers.get("accept-language"),
    )
