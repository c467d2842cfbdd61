from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

DEFAULT_IP = "127.0.0.1"
UNKNOWN = "Unknown"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class LoginContext:
    """Caller-supplied data about the login; absent fields get placeholders."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None
    device_info: Dict[str, Any] | None = None

    @classmethod
    def coerce(cls, value: "LoginContext | Dict[str, Any] | None") -> "LoginContext":
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        return cls(
            ip=value.get("ip"),
            user_agent=value.get("user_agent") or value.get("userAgent"),
            location=value.get("location"),
            device_info=value.get("device_info") or value.get("deviceInfo"),
        )

    @property
    def ip_or_default(self) -> str:
        return self.ip or DEFAULT_IP

    @property
    def user_agent_or_default(self) -> str:
        return self.user_agent or UNKNOWN

    @property
    def location_or_default(self) -> str:
        return self.location or UNKNOWN

    @property
    def device_info_or_default(self) -> Dict[str, Any]:
        if not isinstance(self.device_info, Mapping):
            return {}
        return dict(self.device_info)


@dataclass
class SessionRecord:
    actor_id: int
    actor_name: str
    login_time: int
    last_active: int
    ip: str = DEFAULT_IP
    user_agent: str = UNKNOWN

    def to_json(self) -> str:
        return json.dumps(
            {
                "actorId": self.actor_id,
                "actorName": self.actor_name,
                "loginTime": self.login_time,
                "lastActive": self.last_active,
                "ip": self.ip,
                "userAgent": self.user_agent,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str) -> "SessionRecord":
        data = json.loads(raw)
        return cls(
            actor_id=int(data["actorId"]),
            actor_name=str(data["actorName"]),
            login_time=int(data["loginTime"]),
            last_active=int(data.get("lastActive", data["loginTime"])),
            ip=data.get("ip") or DEFAULT_IP,
            user_agent=data.get("userAgent") or UNKNOWN,
        )


@dataclass(frozen=True)
class AuditEvent:
    actor_id: int
    actor_name: str
    event_type: str
    details: Dict[str, Any]
    timestamp: int
    severity: str

    def to_json(self) -> str:
        return json.dumps(
            {
                "actorId": self.actor_id,
                "actorName": self.actor_name,
                "eventType": self.event_type,
                "details": self.details,
                "timestamp": self.timestamp,
                "severity": self.severity,
            },
            separators=(",", ":"),
            default=str,
        )

    @classmethod
    def from_json(cls, raw: str) -> "AuditEvent":
        data = json.loads(raw)
        return cls(
            actor_id=int(data["actorId"]),
            actor_name=str(data["actorName"]),
            event_type=str(data["eventType"]),
            details=dict(data.get("details") or {}),
            timestamp=int(data["timestamp"]),
            severity=str(data["severity"]),
        )


@dataclass
class PermissionSnapshot:
    roles: List[str]
    permissions: List[str]
    last_updated: int = field(default_factory=now_ms)
    extras: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        payload: Dict[str, Any] = {
            **self.extras,
            "roles": self.roles,
            "permissions": self.permissions,
            "lastUpdated": self.last_updated,
        }
        return json.dumps(payload, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "PermissionSnapshot":
        data = json.loads(raw)
        roles = list(data.pop("roles", []))
        permissions = list(data.pop("permissions", []))
        last_updated = int(data.pop("lastUpdated", 0))
        return cls(
            roles=roles,
            permissions=permissions,
            last_updated=last_updated,
            extras=data,
        )


@dataclass
class LoginRecord:
    """One entry of an actor's login history list."""

    type: str
    timestamp: int
    ip: str = DEFAULT_IP
    user_agent: str = UNKNOWN

    def to_json(self) -> str:
        return json.dumps(
            {
                "type": self.type,
                "timestamp": self.timestamp,
                "ip": self.ip,
                "userAgent": self.user_agent,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str) -> "LoginRecord":
        data = json.loads(raw)
        return cls(
            type=str(data.get("type", "login")),
            timestamp=int(data["timestamp"]),
            ip=data.get("ip") or DEFAULT_IP,
            user_agent=data.get("userAgent") or UNKNOWN,
        )


@dataclass
class ActorStats:
    total_logins: int = 0
    last_login: Optional[int] = None
    login_streak: int = 0

    def to_json(self) -> str:
        return json.dumps(
            {
                "totalLogins": self.total_logins,
                "lastLogin": self.last_login,
                "loginStreak": self.login_streak,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: Optional[str]) -> "ActorStats":
        if not raw:
            return cls()
        data = json.loads(raw)
        return cls(
            total_logins=int(data.get("totalLogins") or 0),
            last_login=data.get("lastLogin"),
            login_streak=int(data.get("loginStreak") or 0),
        )
