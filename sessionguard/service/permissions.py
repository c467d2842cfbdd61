from __future__ import annotations

import asyncio
import inspect
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.storage.kv import KVStore
from sessionguard.storage.models import PermissionSnapshot, now_ms

logger = get_logger(__name__)

PermissionSet = Dict[str, List[str]]
PermissionLoader = Callable[[int], Union[PermissionSet, Awaitable[PermissionSet]]]

MINIMAL_PERMISSIONS: PermissionSet = {"roles": ["user"], "permissions": ["read"]}
ELEVATED_FALLBACK_PERMISSIONS: PermissionSet = {
    "roles": ["admin"],
    "permissions": ["read", "write", "admin_panel"],
}


def permissions_key(actor_id: int) -> str:
    return f"user_permissions:{actor_id}"


def roles_key(actor_id: int) -> str:
    return f"user_roles:{actor_id}"


async def standard_permission_loader(actor_id: int) -> PermissionSet:
    return {"roles": ["user"], "permissions": ["read", "write"]}


async def elevated_permission_loader(actor_id: int) -> PermissionSet:
    return {
        "roles": ["admin", "superuser", "authenticated"],
        "permissions": [
            "read",
            "write",
            "delete",
            "admin_panel",
            "user_management",
            "system_config",
            "audit_logs",
            "backup_restore",
            "security_settings",
        ],
    }


def _normalize(raw: Any) -> PermissionSet:
    if not isinstance(raw, dict):
        raise TypeError("permission loader must return a mapping")
    roles = raw.get("roles") or []
    permissions = raw.get("permissions") or []
    if isinstance(roles, str) or isinstance(permissions, str):
        raise TypeError("roles and permissions must be collections of strings")
    # Deduplicate while keeping loader order
    return {
        "roles": list(dict.fromkeys(str(role) for role in roles)),
        "permissions": list(dict.fromkeys(str(perm) for perm in permissions)),
    }


class PermissionCache:
    """TTL-bounded role/permission snapshots, rebuilt on every login."""

    def __init__(self, store: KVStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    async def _load(self, actor_id: int, loader: PermissionLoader) -> PermissionSet:
        async def _call() -> Any:
            if inspect.iscoroutinefunction(loader):
                return await loader(actor_id)
            # Sync loaders run in a worker thread so the timeout also bounds them
            result = await asyncio.to_thread(loader, actor_id)
            if inspect.isawaitable(result):
                result = await result
            return result

        result = await asyncio.wait_for(_call(), timeout=self.settings.loader_timeout_seconds)
        return _normalize(result)

    async def refresh(
        self,
        actor_id: int,
        loader: PermissionLoader = standard_permission_loader,
        *,
        fallback: Optional[PermissionSet] = None,
        extras: Optional[Dict[str, Any]] = None,
    ) -> PermissionSnapshot:
        """Load and store a fresh snapshot, overwriting (never merging) the old one.

        A failing or slow loader degrades to ``fallback`` instead of raising.
        Store errors do propagate to the calling stage.
        """
        try:
            loaded = await self._load(actor_id, loader)
        except Exception as exc:
            self.logger.warning(
                "permission_loader_failed_using_fallback",
                actor_id=actor_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            loaded = _normalize(fallback or MINIMAL_PERMISSIONS)
        if not loaded["roles"] and not loaded["permissions"]:
            loaded = _normalize(fallback or MINIMAL_PERMISSIONS)

        snapshot = PermissionSnapshot(
            roles=loaded["roles"],
            permissions=loaded["permissions"],
            last_updated=now_ms(),
            extras=dict(extras or {}),
        )
        ttl = self.settings.permission_ttl_seconds
        await self.store.set(permissions_key(actor_id), snapshot.to_json(), ttl)
        await self.store.set(roles_key(actor_id), json.dumps(snapshot.roles), ttl)
        self.logger.info(
            "permissions_refreshed",
            actor_id=actor_id,
            roles=snapshot.roles,
            permission_count=len(snapshot.permissions),
        )
        return snapshot

    async def get(self, actor_id: int) -> Optional[PermissionSnapshot]:
        raw = await self.store.get(permissions_key(actor_id))
        if not raw:
            return None
        try:
            return PermissionSnapshot.from_json(raw)
        except (ValueError, TypeError):
            self.logger.warning("permission_snapshot_malformed", actor_id=actor_id)
            return None

    async def has_permission(self, actor_id: int, permission: str) -> bool:
        snapshot = await self.get(actor_id)
        return bool(snapshot and permission in snapshot.permissions)

    async def invalidate(self, actor_id: int) -> None:
        await self.store.delete(permissions_key(actor_id), roles_key(actor_id))
