from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple

from sessionguard.config import DAY_SECONDS, Settings
from sessionguard.logging import flow_log_context, get_logger
from sessionguard.service.anomaly import (
    ADMIN_THRESHOLDS,
    ELEVATED_THRESHOLDS,
    STANDARD_THRESHOLDS,
    UNSET,
    AnomalyDetector,
    AnomalyThresholds,
    last_ip_key,
)
from sessionguard.service.audit import AuditLog, classify_severity, push_bounded
from sessionguard.service.errors import ValidationError
from sessionguard.service.notifications import LoginNotifier
from sessionguard.service.permissions import (
    ELEVATED_FALLBACK_PERMISSIONS,
    MINIMAL_PERMISSIONS,
    PermissionCache,
    PermissionLoader,
    PermissionSet,
    elevated_permission_loader,
    standard_permission_loader,
)
from sessionguard.service.stages import StageResult, run_best_effort
from sessionguard.service.tokens import session_key
from sessionguard.storage.kv import KVStore
from sessionguard.storage.models import ActorStats, AuditEvent, LoginContext, LoginRecord

logger = get_logger(__name__)

TOKEN_PREVIEW_CHARS = 20
ADMIN_AUDIT_KEY = "admin_audit_log"
ADMIN_AUDIT_CAP = 1000
ADMIN_HISTORY_CAP = 50


class ActorKind(str, Enum):
    STANDARD = "standard"
    ELEVATED = "elevated"


def failed_attempts_key(actor_id: int) -> str:
    return f"failed_attempts:{actor_id}"


def user_stats_key(actor_id: int) -> str:
    return f"user_stats:{actor_id}"


def daily_stats_key(day: str) -> str:
    return f"daily_stats:{day}"


@dataclass
class FlowState:
    """Per-login scratch state shared between stages of one flow run."""

    actor_id: int
    actor_name: str
    token: str
    context: LoginContext
    now: datetime
    previous_ip: Any = UNSET

    @property
    def now_ms(self) -> int:
        return int(self.now.timestamp() * 1000)


class ActorProfile(Protocol):
    """Extension points an actor kind may customise."""

    kind: ActorKind
    anomaly_thresholds: Tuple[AnomalyThresholds, ...]
    fallback_permissions: PermissionSet
    permission_extras: Dict[str, Any]
    permission_loader: PermissionLoader

    async def custom_stage(self, flow: "LoginFlow", state: FlowState) -> None: ...


class StandardActorProfile:
    kind = ActorKind.STANDARD
    anomaly_thresholds = (STANDARD_THRESHOLDS,)
    fallback_permissions = MINIMAL_PERMISSIONS

    def __init__(self, loader: Optional[PermissionLoader] = None) -> None:
        self.permission_loader: PermissionLoader = loader or standard_permission_loader
        self.permission_extras: Dict[str, Any] = {}

    async def custom_stage(self, flow: "LoginFlow", state: FlowState) -> None:
        flow.logger.debug("standard_login_hook", actor_id=state.actor_id)


class ElevatedActorProfile:
    """Administrative accounts: wider hours, longer sessions, extra bookkeeping."""

    kind = ActorKind.ELEVATED
    # Base checks first, then the admin-only pass on top
    anomaly_thresholds = (ELEVATED_THRESHOLDS, ADMIN_THRESHOLDS)
    fallback_permissions = ELEVATED_FALLBACK_PERMISSIONS

    def __init__(self, loader: Optional[PermissionLoader] = None, *, admin_level: str = "superuser") -> None:
        self.permission_loader: PermissionLoader = loader or elevated_permission_loader
        self.admin_level = admin_level
        self.permission_extras: Dict[str, Any] = {"isAdmin": True, "adminLevel": admin_level}

    async def custom_stage(self, flow: "LoginFlow", state: FlowState) -> None:
        tasks = (
            ("admin_bookkeeping", self._bookkeeping),
            ("admin_login_event", self._log_admin_login),
            ("admin_login_history", self._record_history),
            ("admin_permission_check", self._permission_check),
        )
        for name, task in tasks:
            await run_best_effort(name, task, flow, state, log=flow.logger)

    async def _bookkeeping(self, flow: "LoginFlow", state: FlowState) -> None:
        store = flow.store
        await store.incr("admin_total_logins")
        await store.incr("admin_daily_logins")
        await store.expire("admin_daily_logins", DAY_SECONDS)
        if state.context.ip:
            await store.set(f"admin_last_ip:{state.actor_id}", state.context.ip, DAY_SECONDS)
        await store.set(f"is_admin:{state.actor_id}", "true", DAY_SECONDS)
        # Elevated sessions outlive ordinary ones
        await store.expire(session_key(state.actor_id), flow.settings.elevated_session_ttl_seconds)

    async def _log_admin_login(self, flow: "LoginFlow", state: FlowState) -> None:
        event = AuditEvent(
            actor_id=state.actor_id,
            actor_name=state.actor_name,
            event_type="admin_login",
            details={
                "ip": state.context.ip_or_default,
                "userAgent": state.context.user_agent_or_default,
                "adminLevel": self.admin_level,
                "sessionDuration": f"{flow.settings.elevated_session_ttl_seconds // 3600}h",
            },
            timestamp=state.now_ms,
            severity=classify_severity("admin_login"),
        )
        await push_bounded(flow.store, ADMIN_AUDIT_KEY, event.to_json(), ADMIN_AUDIT_CAP)

    async def _record_history(self, flow: "LoginFlow", state: FlowState) -> None:
        record = LoginRecord(
            type="login",
            timestamp=state.now_ms,
            ip=state.context.ip_or_default,
            user_agent=state.context.user_agent_or_default,
        )
        await push_bounded(
            flow.store,
            ADMIN_THRESHOLDS.history_key(state.actor_id),
            record.to_json(),
            ADMIN_HISTORY_CAP,
            flow.settings.login_history_ttl_seconds,
        )

    async def _permission_check(self, flow: "LoginFlow", state: FlowState) -> None:
        key = f"admin_permission_check:{state.actor_id}"
        last_check = await flow.store.get(key)
        if last_check and state.now_ms - int(last_check) <= DAY_SECONDS * 1000:
            return
        await flow.store.set(key, str(state.now_ms), DAY_SECONDS)
        flow.logger.info("admin_permission_check_refreshed", actor_id=state.actor_id)


class LoginFlow:
    """Post-login pipeline shared by every actor kind.

    Stage order is fixed; each stage is isolated by ``run_best_effort`` so a
    failure is logged and the next stage still runs. ``execute`` never raises:
    the login decision was made upstream and must not be undone here.
    """

    STAGES = (
        "update_session",
        "record_login",
        "detect_anomalies",
        "notify",
        "refresh_permissions",
        "compliance_check",
        "update_statistics",
        "custom_stage",
    )

    def __init__(
        self,
        *,
        store: KVStore,
        audit: AuditLog,
        detector: AnomalyDetector,
        permissions: PermissionCache,
        notifier: LoginNotifier,
        settings: Settings,
        profile: ActorProfile,
    ) -> None:
        self.store = store
        self.audit = audit
        self.detector = detector
        self.permissions = permissions
        self.notifier = notifier
        self.settings = settings
        self.profile = profile
        self.logger = logger

    @staticmethod
    def _check_input(actor_id: Any, actor_name: Any, token: Any) -> None:
        if isinstance(actor_id, bool) or not isinstance(actor_id, int):
            raise ValidationError("actor_id must be an integer", detail={"actor_id": actor_id})
        if not isinstance(actor_name, str) or not actor_name:
            raise ValidationError("actor_name must be a non-empty string")
        if token is not None and not isinstance(token, str):
            raise ValidationError("token must be a string")

    async def execute(
        self,
        actor_id: int,
        actor_name: str,
        token: str,
        context: LoginContext | dict | None = None,
    ) -> None:
        await self.run_stages(actor_id, actor_name, token, context)

    async def run_stages(
        self,
        actor_id: int,
        actor_name: str,
        token: str,
        context: LoginContext | dict | None = None,
        *,
        now: Optional[datetime] = None,
    ) -> List[StageResult]:
        """Run every stage in order and return their results for inspection."""
        try:
            self._check_input(actor_id, actor_name, token)
            ctx = LoginContext.coerce(context)
        except (ValidationError, AttributeError, TypeError) as exc:
            self.logger.warning("login_flow_input_rejected", error=str(exc))
            return []

        state = FlowState(
            actor_id=actor_id,
            actor_name=actor_name,
            token=token or "",
            context=ctx,
            now=now or datetime.now(timezone.utc),
        )
        results: List[StageResult] = []
        with flow_log_context(actor_id=actor_id, actor_kind=self.profile.kind.value):
            self.logger.info("login_flow_started")
            for stage in self.STAGES:
                handler = getattr(self, f"_stage_{stage}")
                results.append(await run_best_effort(stage, handler, state, log=self.logger))
            failed = [result.stage for result in results if not result.ok]
            if failed:
                self.logger.warning("login_flow_degraded", failed_stages=failed)
            else:
                self.logger.info("login_flow_completed")
        return results

    async def _stage_update_session(self, state: FlowState) -> None:
        ttl = self.settings.session_ttl_seconds
        # Capture the previous IP before it is overwritten for the IP-change check
        state.previous_ip = await self.store.get(last_ip_key(state.actor_id))
        await self.store.set(f"user_status:{state.actor_id}", "active", ttl)
        await self.store.set(f"last_login:{state.actor_id}", str(state.now_ms), ttl)
        if state.context.ip:
            await self.store.set(last_ip_key(state.actor_id), state.context.ip, ttl)
        if state.context.user_agent:
            await self.store.set(
                f"last_user_agent:{state.actor_id}", state.context.user_agent, ttl
            )

    async def _stage_record_login(self, state: FlowState) -> None:
        preview = state.token[:TOKEN_PREVIEW_CHARS] + "..." if state.token else ""
        await self.audit.record(
            state.actor_id,
            state.actor_name,
            "login_success",
            {
                "ip": state.context.ip_or_default,
                "userAgent": state.context.user_agent_or_default,
                "location": state.context.location_or_default,
                "deviceInfo": state.context.device_info_or_default,
                "timestamp": state.now_ms,
                "tokenPreview": preview,
            },
        )

    async def _stage_detect_anomalies(self, state: FlowState) -> List[str]:
        return await self.detector.detect(
            state.actor_id,
            state.actor_name,
            state.context,
            thresholds=self.profile.anomaly_thresholds,
            now=state.now,
            previous_ip=state.previous_ip,
        )

    async def _stage_notify(self, state: FlowState) -> bool:
        return await self.notifier.notify_login(state.actor_id, state.actor_name, state.context)

    async def _stage_refresh_permissions(self, state: FlowState) -> None:
        await self.permissions.refresh(
            state.actor_id,
            self.profile.permission_loader,
            fallback=self.profile.fallback_permissions,
            extras=self.profile.permission_extras,
        )

    async def _stage_compliance_check(self, state: FlowState) -> None:
        raw = await self.store.get(failed_attempts_key(state.actor_id))
        if not raw:
            return
        failed_count = int(raw)
        if failed_count > self.settings.failed_attempts_threshold:
            await self.audit.record(
                state.actor_id,
                state.actor_name,
                "multiple_failed_attempts",
                {"failedCount": failed_count, "timestamp": state.now_ms},
            )

    async def _stage_update_statistics(self, state: FlowState) -> ActorStats:
        day_key = daily_stats_key(state.now.astimezone(timezone.utc).date().isoformat())
        await self.store.hash_incr(day_key, "total_logins")
        await self.store.hash_incr(day_key, f"user_{state.actor_id}")
        await self.store.expire(day_key, 7 * DAY_SECONDS)

        stats = ActorStats.from_json(await self.store.get(user_stats_key(state.actor_id)))
        stats.total_logins += 1
        stats.last_login = state.now_ms
        stats.login_streak += 1
        await self.store.set(user_stats_key(state.actor_id), stats.to_json(), 30 * DAY_SECONDS)

        await self.store.incr("global_total_logins")
        await self.store.incr("global_daily_logins")
        await self.store.expire("global_daily_logins", DAY_SECONDS)
        return stats

    async def _stage_custom_stage(self, state: FlowState) -> None:
        await self.profile.custom_stage(self, state)

    async def record_login_failure(
        self,
        actor_id: int,
        actor_name: str,
        context: LoginContext | dict | None = None,
    ) -> None:
        """Count a failed credential check and audit it. Never raises."""

        async def _record() -> None:
            ctx = LoginContext.coerce(context)
            key = failed_attempts_key(actor_id)
            count = await self.store.incr(key)
            await self.store.expire(key, self.settings.failed_attempts_ttl_seconds)
            await self.audit.record(
                actor_id,
                actor_name,
                "login_failed",
                {
                    "ip": ctx.ip_or_default,
                    "userAgent": ctx.user_agent_or_default,
                    "failedCount": count,
                },
            )

        with flow_log_context(actor_id=actor_id, actor_kind=self.profile.kind.value):
            await run_best_effort("record_login_failure", _record, log=self.logger)

    async def get_stats(self, actor_id: int) -> ActorStats:
        return ActorStats.from_json(await self.store.get(user_stats_key(actor_id)))

    async def get_daily_stats(self, day: str) -> Dict[str, int]:
        raw = await self.store.hash_get_all(daily_stats_key(day))
        return {name: int(value) for name, value in raw.items()}


def build_profile(kind: ActorKind | str, loader: Optional[PermissionLoader] = None) -> ActorProfile:
    kind = ActorKind(kind)
    if kind is ActorKind.ELEVATED:
        return ElevatedActorProfile(loader)
    return StandardActorProfile(loader)


def build_login_flow(
    kind: ActorKind | str,
    *,
    store: KVStore,
    audit: AuditLog,
    detector: AnomalyDetector,
    permissions: PermissionCache,
    notifier: LoginNotifier,
    settings: Settings,
    loader: Optional[PermissionLoader] = None,
) -> LoginFlow:
    """Select the actor profile for ``kind`` and wrap it in the shared flow."""
    return LoginFlow(
        store=store,
        audit=audit,
        detector=detector,
        permissions=permissions,
        notifier=notifier,
        settings=settings,
        profile=build_profile(kind, loader),
    )
