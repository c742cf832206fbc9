"""
Static device/app identification sent as query parameters on connect.
"""

import os
import platform
import socket
import sys
import uuid
from dataclasses import dataclass
from typing import List, Optional, Tuple

_OS_NAMES = {
    "Darwin": "MacOS",
    "Windows": "Windows",
    "Linux": "Linux",
}


def default_os_name() -> str:
    return _OS_NAMES.get(platform.system(), "Browser")


def default_app_name() -> str:
    script = os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else ""
    name = script.split(".")[0]
    return name or "python"


def default_device_name() -> str:
    return socket.gethostname() or "Host"


def default_device_id() -> str:
    return f"{uuid.getnode():012x}"


@dataclass(frozen=True)
class DeviceMetadata:
    os: str
    app: str
    device: str
    device_id: str

    @classmethod
    def detect(cls, app_name: Optional[str] = None, app_version: str = "1.0",
               device_name: Optional[str] = None, device_id: Optional[str] = None,
               os_name: Optional[str] = None) -> "DeviceMetadata":
        """
        Fill unset fields from the running process. The device id is prefixed
        with the app version so that each app version shows up as its own
        device in the host.
        """
        return cls(
            os=os_name or default_os_name(),
            app=app_name or default_app_name(),
            device=device_name or default_device_name(),
            device_id=app_version + (device_id or default_device_id()),
        )

    def query_items(self) -> List[Tuple[str, str]]:
        return [
            ("os", self.os),
            ("app", self.app),
            ("device", self.device),
            ("device_id", self.device_id),
        ]
