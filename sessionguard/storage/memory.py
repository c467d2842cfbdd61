from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from sessionguard.storage.errors import WrongTypeError


def _slice_bounds(length: int, start: int, end: int) -> Tuple[int, int]:
    """Translate inclusive Redis-style indexes to a Python slice."""
    if start < 0:
        start = max(length + start, 0)
    if end < 0:
        end = length + end
    end = min(end, length - 1)
    return start, end + 1


class MemoryKVStore:
    """In-process key-value store with TTL semantics matching Redis.

    Used when Redis is unavailable under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV.
    Values are plain str, list (head = most recent push), set or dict.
    """

    def __init__(self, *, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.time
        self._data: Dict[str, Any] = {}
        self._expires: Dict[str, float] = {}
        # RLock so compound helpers can re-enter
        self._lock = threading.RLock()

    def _purge_if_expired(self, key: str) -> None:
        deadline = self._expires.get(key)
        if deadline is not None and deadline <= self._clock():
            self._data.pop(key, None)
            self._expires.pop(key, None)

    def _read(self, key: str, kind: type) -> Any:
        self._purge_if_expired(key)
        value = self._data.get(key)
        if value is not None and not isinstance(value, kind):
            raise WrongTypeError(
                "operation against a key holding the wrong kind of value",
                detail={"key": key, "expected": kind.__name__},
            )
        return value

    def ttl(self, key: str) -> Optional[float]:
        """Remaining TTL in seconds, None when the key has no expiry or is absent."""
        with self._lock:
            self._purge_if_expired(key)
            deadline = self._expires.get(key)
            if deadline is None:
                return None
            return deadline - self._clock()

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read(key, str)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            self._data[key] = str(value)
            if ttl_seconds:
                self._expires[key] = self._clock() + ttl_seconds
            else:
                self._expires.pop(key, None)

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                self._purge_if_expired(key)
                if self._data.pop(key, None) is not None:
                    removed += 1
                self._expires.pop(key, None)
        return removed

    async def exists(self, key: str) -> bool:
        with self._lock:
            self._purge_if_expired(key)
            return key in self._data

    async def incr(self, key: str) -> int:
        with self._lock:
            current = self._read(key, str)
            try:
                value = int(current or 0) + 1
            except ValueError as exc:
                raise WrongTypeError("value is not an integer", detail={"key": key}) from exc
            self._data[key] = str(value)
            return value

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            self._purge_if_expired(key)
            if key not in self._data:
                return False
            self._expires[key] = self._clock() + ttl_seconds
            return True

    async def list_push(self, key: str, value: str) -> int:
        with self._lock:
            items = self._read(key, list)
            if items is None:
                items = []
                self._data[key] = items
            items.insert(0, value)
            return len(items)

    async def list_trim(self, key: str, start: int, end: int) -> None:
        with self._lock:
            items = self._read(key, list)
            if items is None:
                return
            lo, hi = _slice_bounds(len(items), start, end)
            kept = items[lo:hi] if lo < hi else []
            if kept:
                self._data[key] = kept
            else:
                self._data.pop(key, None)
                self._expires.pop(key, None)

    async def list_range(self, key: str, start: int, end: int) -> List[str]:
        with self._lock:
            items = self._read(key, list)
            if not items:
                return []
            lo, hi = _slice_bounds(len(items), start, end)
            return list(items[lo:hi]) if lo < hi else []

    async def set_add(self, key: str, member: str) -> int:
        with self._lock:
            members = self._read(key, set)
            if members is None:
                members = set()
                self._data[key] = members
            if member in members:
                return 0
            members.add(member)
            return 1

    async def set_remove(self, key: str, member: str) -> int:
        with self._lock:
            members = self._read(key, set)
            if not members or member not in members:
                return 0
            members.discard(member)
            if not members:
                self._data.pop(key, None)
                self._expires.pop(key, None)
            return 1

    async def set_members(self, key: str) -> List[str]:
        with self._lock:
            members = self._read(key, set)
            return sorted(members) if members else []

    async def hash_incr(self, key: str, field: str, amount: int = 1) -> int:
        with self._lock:
            mapping = self._read(key, dict)
            if mapping is None:
                mapping = {}
                self._data[key] = mapping
            value = int(mapping.get(field, 0)) + amount
            mapping[field] = str(value)
            return value

    async def hash_get_all(self, key: str) -> Dict[str, str]:
        with self._lock:
            mapping = self._read(key, dict)
            return dict(mapping) if mapping else {}

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._data.clear()
            self._expires.clear()
