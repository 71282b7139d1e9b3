from __future__ import annotations

from typing import Mapping, Optional, Protocol

from filehaven.logging import get_logger
from filehaven.storage.models import LoginLog

logger = get_logger(__name__)

UNKNOWN_IP = "unknown"
UNKNOWN_DEVICE = "Unknown Device"

# Checked in order; the first non-empty header wins.
_IP_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip")


class LoginLogStore(Protocol):
    def create_login_log(
        self,
        email: str,
        user_id: str,
        provider: str,
        *,
        ip: str = UNKNOWN_IP,
        device: str = UNKNOWN_DEVICE,
    ) -> LoginLog: ...


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        # plain dicts are not case-insensitive like starlette's Headers
        value = next(
            (v for k, v in headers.items() if k.lower() == name), None
        )
    return value


def client_ip(headers: Optional[Mapping[str, str]]) -> str:
    if not headers:
        return UNKNOWN_IP
    for name in _IP_HEADERS:
        value = _header(headers, name)
        if not value:
            continue
        if name == "x-forwarded-for":
            value = value.split(",")[0]
        value = value.strip()
        if value:
            return value
    return UNKNOWN_IP


def parse_user_agent(user_agent: Optional[str]) -> str:
    """Describe a user agent as ``"{OS} - {Browser} ({DeviceType})"``."""
    if not user_agent:
        return UNKNOWN_DEVICE

    ua = user_agent.lower()

    os_name = "Unknown"
    if "windows" in ua:
        os_name = "Windows"
    elif "macintosh" in ua or "mac os x" in ua:
        os_name = "macOS"
    elif "linux" in ua:
        os_name = "Linux"
    elif "android" in ua:
        os_name = "Android"
    elif "iphone" in ua or "ipad" in ua:
        os_name = "iOS"

    browser = "Unknown"
    if "chrome" in ua and "edg" not in ua:
        browser = "Chrome"
    elif "firefox" in ua:
        browser = "Firefox"
    elif "safari" in ua and "chrome" not in ua:
        browser = "Safari"
    elif "edg" in ua:
        browser = "Edge"
    elif "opera" in ua:
        browser = "Opera"

    device_type = "Desktop"
    if "mobile" in ua or "android" in ua:
        device_type = "Mobile"
    elif "tablet" in ua or "ipad" in ua:
        device_type = "Tablet"

    return f"{os_name} - {browser} ({device_type})"


class LoginActivityRecorder:
    """Appends a login audit entry after a successful sign-in.

    Recording is best effort: failures are logged and never reach the caller.
    """

    def __init__(self, store: LoginLogStore) -> None:
        self.store = store

    async def record(
        self,
        email: str,
        user_id: str,
        provider: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Optional[LoginLog]:
        try:
            ip = UNKNOWN_IP
            device = UNKNOWN_DEVICE
            if headers is not None:
                ip = client_ip(headers)
                device = parse_user_agent(_header(headers, "user-agent") or "")
            entry = self.store.create_login_log(
                email, user_id, provider, ip=ip, device=device
            )
        except Exception as exc:
            logger.error(
                "login_activity_record_failed",
                user_id=user_id,
                provider=provider,
                error=str(exc),
            )
            return None
        logger.info(
            "login_activity_recorded", user_id=user_id, provider=provider, device=device
        )
        return entry
