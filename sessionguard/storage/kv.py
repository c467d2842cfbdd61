from __future__ import annotations

from typing import Dict, List, Optional, Protocol


class KVStore(Protocol):
    """Capability set the session pipeline needs from its key-value store.

    Every method is a coroutine so the pipeline suspends on network I/O.
    Keys that carry a TTL expire passively; expired keys read as absent.
    List indexes follow Redis semantics: inclusive, negative counts from the end.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def incr(self, key: str) -> int: ...

    async def expire(self, key: str, ttl_seconds: int) -> bool: ...

    async def list_push(self, key: str, value: str) -> int: ...

    async def list_trim(self, key: str, start: int, end: int) -> None: ...

    async def list_range(self, key: str, start: int, end: int) -> List[str]: ...

    async def set_add(self, key: str, member: str) -> int: ...

    async def set_remove(self, key: str, member: str) -> int: ...

    async def set_members(self, key: str) -> List[str]: ...

    async def hash_incr(self, key: str, field: str, amount: int = 1) -> int: ...

    async def hash_get_all(self, key: str) -> Dict[str, str]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...
