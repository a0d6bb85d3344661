import threading
import time
from typing import Any, Iterable, Optional, Protocol


class CacheError(RuntimeError):
    pass


class Cache(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(
        self, key: str, value: Any, ttl: float, tags: Iterable[str] = ()
    ) -> None: ...

    def invalidate_tags(self, tags: Iterable[str]) -> None: ...


class NullCache:
    def get(self, key: str) -> Optional[Any]:
        return None

    def set(self, key: str, value: Any, ttl: float, tags: Iterable[str] = ()) -> None:
        return None

    def invalidate_tags(self, tags: Iterable[str]) -> None:
        return None


class MemoryCache:
    """Process-local cache with per-entry expiry and tag invalidation."""

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[float, Any]] = {}
        self._keys_by_tag: dict[str, set[str]] = {}

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: float, tags: Iterable[str] = ()) -> None:
        if ttl <= 0:
            return
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)
            for tag in tags:
                self._keys_by_tag.setdefault(tag, set()).add(key)

    def invalidate_tags(self, tags: Iterable[str]) -> None:
        with self._lock:
            for tag in tags:
                for key in self._keys_by_tag.pop(tag, set()):
                    self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


def budget_cache_key(
    user_id: int, household_id: Optional[int], period_slug: str
) -> str:
    household = household_id if household_id is not None else "-"
    return f"budgets:{user_id}:{household}:{period_slug}"


def budget_cache_tags(user_id: int, household_id: Optional[int]) -> list[str]:
    tags = ["budgets", f"budgets:user:{user_id}", f"dashboard:user:{user_id}"]
    if household_id is not None:
        tags.append(f"budgets:household:{household_id}")
    return tags
