from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence, Union

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.audit import AuditLog
from sessionguard.service.stages import run_best_effort
from sessionguard.storage.kv import KVStore
from sessionguard.storage.models import LoginContext, LoginRecord

logger = get_logger(__name__)

UNSET: Any = object()


def last_ip_key(actor_id: int) -> str:
    return f"last_ip:{actor_id}"


@dataclass(frozen=True)
class AnomalyThresholds:
    """Tuning for one pass of the login anomaly checks.

    Working hours are the half-open range ``[start_hour, end_hour)`` in local time.
    A pass with no ``ip_change_event`` skips the IP comparison.
    """

    start_hour: int
    end_hour: int
    burst_sample: int
    burst_min_entries: int
    burst_window_seconds: int
    history_prefix: str
    off_hours_event: str
    burst_event: str
    ip_change_event: Optional[str] = "ip_address_change"

    def history_key(self, actor_id: int) -> str:
        return f"{self.history_prefix}:{actor_id}"

    @property
    def burst_window_label(self) -> str:
        minutes = self.burst_window_seconds // 60
        if minutes and minutes % 60 == 0:
            hours = minutes // 60
            return f"{hours} hour" if hours == 1 else f"{hours} hours"
        return f"{minutes} minutes"


STANDARD_THRESHOLDS = AnomalyThresholds(
    start_hour=6,
    end_hour=22,
    burst_sample=5,
    burst_min_entries=3,
    burst_window_seconds=5 * 60,
    history_prefix="login_history",
    off_hours_event="unusual_login_time",
    burst_event="frequent_login_attempts",
)

# Base checks for elevated actors: same events, wider working hours
ELEVATED_THRESHOLDS = replace(STANDARD_THRESHOLDS, start_hour=5, end_hour=23)

# Admin-only pass layered on top of ELEVATED_THRESHOLDS
ADMIN_THRESHOLDS = AnomalyThresholds(
    start_hour=5,
    end_hour=23,
    burst_sample=10,
    burst_min_entries=5,
    burst_window_seconds=60 * 60,
    history_prefix="admin_login_history",
    off_hours_event="admin_unusual_login_time",
    burst_event="admin_frequent_login",
    ip_change_event=None,
)

ThresholdPasses = Union[AnomalyThresholds, Sequence[AnomalyThresholds]]


class AnomalyDetector:
    """Annotates the audit trail with suspicious login patterns.

    Advisory only: it never rejects a login. Each pass runs off-hours, burst,
    then IP change, each emitting at most one event and failing in isolation.
    """

    def __init__(self, store: KVStore, audit: AuditLog, settings: Settings) -> None:
        self.store = store
        self.audit = audit
        self.settings = settings
        self.logger = logger

    async def detect(
        self,
        actor_id: int,
        actor_name: str,
        context: LoginContext | dict | None = None,
        *,
        thresholds: ThresholdPasses = STANDARD_THRESHOLDS,
        now: Optional[datetime] = None,
        previous_ip: Optional[str] = UNSET,
    ) -> List[str]:
        """Run every pass in order and return the event types that were emitted."""
        ctx = LoginContext.coerce(context)
        current = now or datetime.now(timezone.utc)
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        passes = (thresholds,) if isinstance(thresholds, AnomalyThresholds) else tuple(thresholds)
        emitted: List[str] = []
        for tuning in passes:
            checks = [
                ("off_hours", self._check_off_hours, (actor_id, actor_name, tuning, current)),
                ("burst", self._check_burst, (actor_id, actor_name, tuning, current)),
            ]
            if tuning.ip_change_event:
                checks.append(
                    ("ip_change", self._check_ip_change, (actor_id, actor_name, tuning, ctx, previous_ip))
                )
            for name, check, args in checks:
                result = await run_best_effort(f"anomaly_{name}", check, *args, log=self.logger)
                if result.ok and result.value:
                    emitted.append(result.value)
        self.logger.info("anomaly_detection_completed", actor_id=actor_id, emitted=emitted)
        return emitted

    def _local_hour(self, current: datetime) -> int:
        tz = self.settings.tzinfo()
        return current.astimezone(tz).hour

    async def _check_off_hours(
        self, actor_id: int, actor_name: str, thresholds: AnomalyThresholds, current: datetime
    ) -> Optional[str]:
        hour = self._local_hour(current)
        if thresholds.start_hour <= hour < thresholds.end_hour:
            return None
        event = await self.audit.record(
            actor_id,
            actor_name,
            thresholds.off_hours_event,
            {"hour": hour, "timestamp": int(current.timestamp() * 1000)},
        )
        return thresholds.off_hours_event if event else None

    async def _check_burst(
        self, actor_id: int, actor_name: str, thresholds: AnomalyThresholds, current: datetime
    ) -> Optional[str]:
        raw_entries = await self.store.list_range(
            thresholds.history_key(actor_id), 0, thresholds.burst_sample - 1
        )
        timestamps: List[int] = []
        for raw in raw_entries:
            try:
                timestamps.append(LoginRecord.from_json(raw).timestamp)
            except (ValueError, KeyError, TypeError):
                self.logger.warning("login_history_entry_malformed", actor_id=actor_id)
        if len(timestamps) < thresholds.burst_min_entries:
            return None
        # Newest first: the last sampled entry is the oldest one
        elapsed_ms = int(current.timestamp() * 1000) - timestamps[-1]
        if elapsed_ms >= thresholds.burst_window_seconds * 1000:
            return None
        event = await self.audit.record(
            actor_id,
            actor_name,
            thresholds.burst_event,
            {"attempts": len(timestamps), "timeWindow": thresholds.burst_window_label},
        )
        return thresholds.burst_event if event else None

    async def _check_ip_change(
        self,
        actor_id: int,
        actor_name: str,
        thresholds: AnomalyThresholds,
        ctx: LoginContext,
        previous_ip: Optional[str],
    ) -> Optional[str]:
        if not ctx.ip:
            return None
        if previous_ip is UNSET:
            previous_ip = await self.store.get(last_ip_key(actor_id))
        if not previous_ip or previous_ip == ctx.ip:
            return None
        event = await self.audit.record(
            actor_id,
            actor_name,
            thresholds.ip_change_event,
            {"previousIP": previous_ip, "currentIP": ctx.ip},
        )
        return thresholds.ip_change_event if event else None
