from __future__ import annotations

from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from sessionguard.config import Settings, get_settings
from sessionguard.logging import get_logger
from sessionguard.service.anomaly import AnomalyDetector
from sessionguard.service.audit import AuditLog
from sessionguard.service.login_flow import ActorKind, LoginFlow, build_login_flow
from sessionguard.service.notifications import LoginNotifier
from sessionguard.service.permissions import PermissionCache
from sessionguard.service.registry import ServiceRegistry, ServiceStatus
from sessionguard.service.tokens import TokenManager, TokenSigner
from sessionguard.storage.kv import KVStore
from sessionguard.storage.memory import MemoryKVStore
from sessionguard.storage.models import LoginContext
from sessionguard.storage.redis_cache import RedisKVStore, SyncRedisKVStore

logger = get_logger(__name__)

VERSION = "0.1.0"


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with '***' for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class KVStoreService:
    """Registry adapter reporting KV store reachability."""

    version = VERSION

    def __init__(self, store: KVStore, service_name: str = "kv_store") -> None:
        self.store = store
        self.service_name = service_name

    async def initialize(self) -> None:
        await self.store.ping()

    async def destroy(self) -> None:
        await self.store.close()

    async def get_status(self) -> ServiceStatus:
        try:
            reachable = await self.store.ping()
        except Exception as exc:
            logger.warning("kv_store_ping_failed", error_type=type(exc).__name__, error=str(exc))
            return ServiceStatus.ERROR
        return ServiceStatus.RUNNING if reachable else ServiceStatus.ERROR


def _select_store(settings: Settings) -> KVStore:
    if settings.use_memory_store:
        logger.info("runtime_store_initialized", store_type="memory")
        return MemoryKVStore()

    redis_error: Exception | None = None
    try:
        # Sync client in test mode avoids binding the pool to a short-lived loop
        if settings.test_mode:
            store = SyncRedisKVStore(settings.redis_url, socket_timeout=settings.redis_socket_timeout)
        else:
            store = RedisKVStore(settings.redis_url, socket_timeout=settings.redis_socket_timeout)
        store.verify_connection()
        logger.info(
            "runtime_store_initialized",
            store_type="redis",
            redis_url=_mask_url_password(settings.redis_url),
        )
        return store
    except Exception as exc:
        redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for sessions, tokens and audit logs; "
            "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error),
        message=f"Running without Redis under {fallback_mode}; all session state is in-memory only.",
        mode=fallback_mode,
    )
    return MemoryKVStore()


class Runtime:
    """Wires the post-login services around one KV store."""

    def __init__(self, settings: Optional[Settings] = None, store: Optional[KVStore] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else _select_store(self.settings)

        self.signer = TokenSigner.from_settings(self.settings)
        self.tokens = TokenManager(self.store, self.signer, self.settings)
        self.audit = AuditLog(self.store, self.settings)
        self.detector = AnomalyDetector(self.store, self.audit, self.settings)
        self.permissions = PermissionCache(self.store, self.settings)
        self.notifier = LoginNotifier(self.store)
        self.flows: Dict[ActorKind, LoginFlow] = {
            kind: build_login_flow(
                kind,
                store=self.store,
                audit=self.audit,
                detector=self.detector,
                permissions=self.permissions,
                notifier=self.notifier,
                settings=self.settings,
            )
            for kind in ActorKind
        }

        self.registry = ServiceRegistry()
        self.registry.register(KVStoreService(self.store))
        logger.info("runtime_init_completed")

    def flow_for(self, kind: ActorKind | str) -> LoginFlow:
        return self.flows[ActorKind(kind)]

    async def startup(self) -> Dict[str, ServiceStatus]:
        await self.registry.initialize_all()
        return self.registry.all_statuses()

    async def shutdown(self) -> None:
        await self.registry.destroy_all()

    async def complete_login(
        self,
        actor_id: int,
        actor_name: str,
        kind: ActorKind | str = ActorKind.STANDARD,
        context: LoginContext | dict | None = None,
    ) -> str:
        """Issue a token for an already-authenticated actor and run its login flow.

        Token issuance errors propagate; the flow itself never raises.
        """
        ctx = LoginContext.coerce(context)
        flow = self.flow_for(kind)
        token = await self.tokens.issue(actor_id, actor_name, {"kind": flow.profile.kind.value}, context=ctx)
        await flow.execute(actor_id, actor_name, token, ctx)
        return token
