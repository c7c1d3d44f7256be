"""Transient results exchanged between the gateway, the service and callers."""

import re
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional

from .db import GuestAccessRecord


class RemovalOutcome(str, Enum):
    """Result of removing a hotspot user on the router."""
    REMOVED = "removed"
    NOT_FOUND = "not_found"


def parse_uptime(uptime_str: Optional[str]) -> int:
    """Parse RouterOS uptime string like 1w2d3h4m5s to seconds."""
    if not uptime_str:
        return 0
    # Some builds report HH:MM:SS instead
    if ":" in uptime_str:
        parts = [int(p) for p in uptime_str.split(":") if p.isdigit()]
        total = 0
        for part in parts:
            total = total * 60 + part
        return total

    total = 0
    patterns = [
        (r"(\d+)w", 604800),
        (r"(\d+)d", 86400),
        (r"(\d+)h", 3600),
        (r"(\d+)m(?!s)", 60),
        (r"(\d+)s", 1),
    ]
    for pattern, multiplier in patterns:
        match = re.search(pattern, uptime_str)
        if match:
            total += int(match.group(1)) * multiplier
    return total


def _to_int(value: Optional[str]) -> int:
    try:
        return int(value) if value else 0
    except ValueError:
        return 0


@dataclass
class DeviceSession:
    """A live hotspot session as reported by the router."""
    username: str
    session_id: Optional[str] = None
    address: Optional[str] = None
    mac_address: Optional[str] = None
    uptime: Optional[str] = None
    bytes_in: int = 0
    bytes_out: int = 0

    @property
    def uptime_seconds(self) -> int:
        return parse_uptime(self.uptime)

    @classmethod
    def from_attributes(cls, attrs: Dict[str, str]) -> "DeviceSession":
        return cls(
            username=attrs.get("user", ""),
            session_id=attrs.get(".id"),
            address=attrs.get("address"),
            mac_address=attrs.get("mac-address"),
            uptime=attrs.get("uptime"),
            bytes_in=_to_int(attrs.get("bytes-in")),
            bytes_out=_to_int(attrs.get("bytes-out")),
        )


@dataclass
class GeneratedCredentials:
    """What the front desk hands to the guest."""
    guest_id: int
    room_number: str
    username: str
    password: str
    profile: str
    bandwidth: str
    valid_until: date
    time_limit: str


@dataclass
class RemovalResult:
    """Outcome of revoking a room's access."""
    room_number: str
    noop: bool = False
    usernames: List[str] = field(default_factory=list)
    outcomes: Dict[str, RemovalOutcome] = field(default_factory=dict)
    sessions_disconnected: int = 0
    message: str = ""


@dataclass
class CleanupFailure:
    username: str
    room_number: str
    kind: str
    message: str


@dataclass
class CleanupReport:
    """Aggregate result of an expiry sweep."""
    removed: int = 0
    failed: int = 0
    failures: List[CleanupFailure] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.removed + self.failed


@dataclass
class GuestPresence:
    """An active record annotated with its live session, if any."""
    record: GuestAccessRecord
    online: bool = False
    address: Optional[str] = None
    uptime: Optional[str] = None
    uptime_seconds: int = 0
    bytes_in: int = 0
    bytes_out: int = 0


@dataclass
class SyncReport:
    """Result of reconciling the store against the router's user list."""
    store_users: int = 0
    device_users: int = 0
    created_on_device: int = 0
    removed_from_device: int = 0
    confirmed: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class ConnectionReport:
    """Result of a connection test."""
    success: bool
    host: str
    username: Optional[str] = None
    identity: Optional[str] = None
    version: Optional[str] = None
    board_name: Optional[str] = None
    error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)
