from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.storage.kv import KVStore
from sessionguard.storage.models import AuditEvent, now_ms

logger = get_logger(__name__)

SEVERITY_HIGH = "high"
SEVERITY_MEDIUM = "medium"
SEVERITY_LOW = "low"

HIGH_RISK_EVENTS = frozenset({"login_failed", "unauthorized_access", "suspicious_activity"})
MEDIUM_RISK_EVENTS = frozenset({"password_change", "permission_change", "unusual_login_time"})

GLOBAL_AUDIT_KEY = "global_audit_log"
HIGH_RISK_KEY = "high_risk_events"


def audit_key(actor_id: int) -> str:
    return f"audit_log:{actor_id}"


def classify_severity(event_type: str) -> str:
    """Fixed severity table; unknown event types are low."""
    if event_type in HIGH_RISK_EVENTS:
        return SEVERITY_HIGH
    if event_type in MEDIUM_RISK_EVENTS:
        return SEVERITY_MEDIUM
    return SEVERITY_LOW


async def push_bounded(
    store: KVStore, key: str, value: str, cap: int, ttl_seconds: Optional[int] = None
) -> None:
    """Prepend ``value`` and drop everything past ``cap`` entries."""
    await store.list_push(key, value)
    await store.list_trim(key, 0, cap - 1)
    if ttl_seconds:
        await store.expire(key, ttl_seconds)


@dataclass
class AuditQuery:
    actor_id: Optional[int] = None
    event_type: Optional[str] = None
    severity: Optional[str] = None
    start: Optional[int] = None
    end: Optional[int] = None
    page: int = 1
    page_size: int = 50

    def matches(self, event: AuditEvent) -> bool:
        if self.actor_id is not None and event.actor_id != self.actor_id:
            return False
        if self.event_type and event.event_type != self.event_type:
            return False
        if self.severity and event.severity != self.severity:
            return False
        if self.start is not None and event.timestamp < self.start:
            return False
        if self.end is not None and event.timestamp > self.end:
            return False
        return True


class AuditLog:
    """Append-only audit trail kept in bounded, newest-first lists.

    Writes are a best-effort side channel: ``record`` logs and swallows
    store failures so an audit outage never fails a login.
    """

    def __init__(self, store: KVStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    async def record(
        self,
        actor_id: int,
        actor_name: str,
        event_type: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        event = AuditEvent(
            actor_id=actor_id,
            actor_name=actor_name,
            event_type=event_type,
            details=dict(details or {}),
            timestamp=now_ms(),
            severity=classify_severity(event_type),
        )
        payload = event.to_json()
        ttl = self.settings.audit_ttl_seconds
        try:
            await push_bounded(
                self.store, audit_key(actor_id), payload, self.settings.audit_actor_cap, ttl
            )
            await push_bounded(
                self.store, GLOBAL_AUDIT_KEY, payload, self.settings.audit_global_cap, ttl
            )
            if event.severity == SEVERITY_HIGH:
                await push_bounded(
                    self.store, HIGH_RISK_KEY, payload, self.settings.audit_high_risk_cap, ttl
                )
        except Exception as exc:
            self.logger.error(
                "audit_write_failed",
                actor_id=actor_id,
                event_type=event_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        self.logger.info(
            "audit_event_recorded",
            actor_id=actor_id,
            event_type=event_type,
            severity=event.severity,
        )
        return event

    async def _read(self, key: str, limit: int) -> List[AuditEvent]:
        if limit <= 0:
            return []
        events: List[AuditEvent] = []
        for raw in await self.store.list_range(key, 0, limit - 1):
            try:
                events.append(AuditEvent.from_json(raw))
            except (ValueError, KeyError, TypeError):
                self.logger.warning("audit_entry_malformed", key=key)
        return events

    async def recent(self, actor_id: int, limit: int = 50) -> List[AuditEvent]:
        return await self._read(audit_key(actor_id), limit)

    async def recent_global(self, limit: int = 100) -> List[AuditEvent]:
        return await self._read(GLOBAL_AUDIT_KEY, limit)

    async def high_risk(self, limit: int = 100) -> List[AuditEvent]:
        return await self._read(HIGH_RISK_KEY, limit)

    async def query(self, filters: AuditQuery) -> List[AuditEvent]:
        """Filter and paginate the actor log (or the global log when no actor is given)."""
        if filters.actor_id is not None:
            source = await self._read(audit_key(filters.actor_id), self.settings.audit_actor_cap)
        else:
            source = await self._read(GLOBAL_AUDIT_KEY, self.settings.audit_global_cap)
        matched = [event for event in source if filters.matches(event)]
        page = max(filters.page, 1)
        size = max(filters.page_size, 1)
        offset = (page - 1) * size
        return matched[offset : offset + size]
