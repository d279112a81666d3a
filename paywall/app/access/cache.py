"""Optional short-lived cache for ownership answers."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Dict, Iterable, Optional, Protocol, Set, Tuple


class OwnershipCache(Protocol):
    """Protocol describing cache operations used by the ownership reader."""

    def get(self, key: str) -> Optional[bool]:
        ...

    def set(self, key: str, value: bool, expires_at: datetime, tags: Set[str]) -> None:
        ...

    def invalidate(self, tags: Iterable[str]) -> None:
        ...


@dataclass
class _CacheEntry:
    value: bool
    expires_at: datetime
    tags: Set[str]

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class InMemoryOwnershipCache:
    """Process-local cache; entries never outlive their expiry."""

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._entries: Dict[str, _CacheEntry] = {}
        self._lock = Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def get(self, key: str) -> Optional[bool]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if not entry:
                return None
            if entry.is_expired(now):
                self._entries.pop(key, None)
                return None
            return entry.value

    def set(self, key: str, value: bool, expires_at: datetime, tags: Set[str]) -> None:
        if expires_at <= self._clock():
            return
        with self._lock:
            self._entries[key] = _CacheEntry(value=value, expires_at=expires_at, tags=set(tags))

    def invalidate(self, tags: Iterable[str]) -> None:
        tag_set = set(tags)
        if not tag_set:
            return
        with self._lock:
            keys_to_delete = [
                key
                for key, entry in self._entries.items()
                if entry.tags.intersection(tag_set)
            ]
            for key in keys_to_delete:
                self._entries.pop(key, None)


def _ownership_key(user_id: str, material_id: str) -> Tuple[str, Set[str]]:
    key = f"owned:{user_id}:{material_id}"
    return key, {f"user:{user_id}", f"material:{material_id}", key}


class OwnershipLookup(Protocol):
    def is_owned(self, user_id: str, material_id: str) -> bool:
        ...


class OwnershipReader:
    """Answers ownership questions, live by default.

    With ``ttl_seconds`` of zero (the default) every call goes to the store.
    A positive TTL bounds how stale an answer can be; status changes made in
    this process invalidate the affected entry immediately.
    """

    def __init__(
        self,
        store: OwnershipLookup,
        *,
        cache: Optional[OwnershipCache] = None,
        ttl_seconds: int = 0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._ttl_seconds = max(ttl_seconds, 0)
        self._cache = cache if self._ttl_seconds else None
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def caching_enabled(self) -> bool:
        return self._cache is not None

    def is_owned(self, user_id: str, material_id: str) -> bool:
        if self._cache is None:
            return self._store.is_owned(user_id, material_id)

        key, tags = _ownership_key(user_id, material_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        owned = self._store.is_owned(user_id, material_id)
        self._cache.set(key, owned, self._clock() + timedelta(seconds=self._ttl_seconds), tags)
        return owned

    def invalidate_ownership(self, user_id: str, material_id: str) -> None:
        if self._cache is not None:
            key, _ = _ownership_key(user_id, material_id)
            self._cache.invalidate({key})


__all__ = ["InMemoryOwnershipCache", "OwnershipCache", "OwnershipLookup", "OwnershipReader"]
