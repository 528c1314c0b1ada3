from typing import Dict, Any, List, Optional, Set, Tuple
import asyncio
import hashlib
import json
from collections import OrderedDict
from datetime import datetime, timedelta, timezone

from domain.models.memory import Fragment, FragmentFilter

Scope = Tuple[str, Optional[str]]


def filter_fingerprint(partition: str, query: FragmentFilter) -> str:
    """Deterministic cache key for a partition-scoped filter.

    Metadata conditions and ``in`` value sets are order-insensitive; the
    embedding is a vector and keeps its order.
    """

    payload = query.model_dump(mode="json")

    conditions = []
    for condition in payload["metadata"]:
        value = condition["value"]
        if condition["operator"] == "in" and isinstance(value, list):
            value = sorted(value, key=lambda v: json.dumps(v, sort_keys=True))
        conditions.append({**condition, "value": value})
    payload["metadata"] = sorted(conditions, key=lambda c: json.dumps(c, sort_keys=True))
    payload["partition"] = partition

    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()
    return hashlib.sha256(encoded).hexdigest()


def filter_scope(partition: str, query: FragmentFilter) -> Scope:
    return (partition, query.session_id)


class FragmentQueryCache:
    """In-memory query cache with TTL and scope-based invalidation.

    Entries are grouped by (partition, session). A write to a session drops
    the entries of that session and the session-less entries of the same
    partition. Each scope carries a generation counter so a read that raced
    with a write cannot repopulate stale results.

    Expired entries are swept on write, and at most ``max_entries`` are kept,
    least recently used evicted first.
    """

    def __init__(self, default_ttl: int = 300, max_entries: int = 1024):
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self.cache: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self._scopes: Dict[Scope, Set[str]] = {}
        self._generations: Dict[Scope, int] = {}
        self._next_expiry: Optional[datetime] = None
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._lock = asyncio.Lock()

    async def generation(self, scope: Scope) -> int:
        """Current generation of a scope, captured before a backend read"""

        async with self._lock:
            return self._generations.get(scope, 0)

    async def set(
        self,
        key: str,
        value: List[Fragment],
        scope: Scope,
        generation: Optional[int] = None,
        ttl: Optional[int] = None,
    ) -> bool:
        """Cache a query result; refused when the scope changed since ``generation``"""

        async with self._lock:
            if generation is not None and self._generations.get(scope, 0) != generation:
                return False

            now = datetime.now(timezone.utc)
            if self._next_expiry is not None and now >= self._next_expiry:
                self._sweep(now)

            self._drop(key)
            while self.cache and len(self.cache) >= self.max_entries:
                oldest = next(iter(self.cache))
                self._drop(oldest)
                self._evictions += 1

            ttl = self.default_ttl if ttl is None else ttl
            expires_at = now + timedelta(seconds=ttl)
            self.cache[key] = {
                "value": [f.model_copy(deep=True) for f in value],
                "scope": scope,
                "expires_at": expires_at,
            }
            self._scopes.setdefault(scope, set()).add(key)
            if self._next_expiry is None or expires_at < self._next_expiry:
                self._next_expiry = expires_at
            return True

    async def get(self, key: str) -> Optional[List[Fragment]]:
        """Get a cached result if present and not expired"""

        async with self._lock:
            entry = self.cache.get(key)
            if entry is None:
                self._misses += 1
                return None

            if datetime.now(timezone.utc) >= entry["expires_at"]:
                self._drop(key)
                self._misses += 1
                return None

            self.cache.move_to_end(key)
            self._hits += 1
            return [f.model_copy(deep=True) for f in entry["value"]]

    async def invalidate(self, partition: str, session_id: Optional[str]) -> int:
        """Drop every entry a write to (partition, session) could affect"""

        scopes = {(partition, session_id), (partition, None)}
        dropped = 0

        async with self._lock:
            for scope in scopes:
                self._generations[scope] = self._generations.get(scope, 0) + 1
                for key in list(self._scopes.pop(scope, ())):
                    if self.cache.pop(key, None) is not None:
                        dropped += 1
        return dropped

    async def delete(self, key: str) -> bool:
        """Delete a key from cache"""

        async with self._lock:
            return self._drop(key)

    async def clear(self) -> None:
        async with self._lock:
            for scope in self._scopes:
                self._generations[scope] = self._generations.get(scope, 0) + 1
            self.cache.clear()
            self._scopes.clear()

    async def clear_expired(self) -> int:
        """Clear expired entries and return count"""

        async with self._lock:
            return self._sweep(datetime.now(timezone.utc))

    async def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""

        async with self._lock:
            now = datetime.now(timezone.utc)
            active_count = sum(
                1 for entry in self.cache.values()
                if now < entry["expires_at"]
            )

            return {
                "total_keys": len(self.cache),
                "active_keys": active_count,
                "expired_keys": len(self.cache) - active_count,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
            }

    def _sweep(self, now: datetime) -> int:
        expired_keys = [
            key for key, entry in self.cache.items()
            if now >= entry["expires_at"]
        ]
        for key in expired_keys:
            self._drop(key)

        self._next_expiry = min((e["expires_at"] for e in self.cache.values()), default=None)
        return len(expired_keys)

    def _drop(self, key: str) -> bool:
        entry = self.cache.pop(key, None)
        if entry is None:
            return False
        keys = self._scopes.get(entry["scope"])
        if keys is not None:
            keys.discard(key)
            if not keys:
                del self._scopes[entry["scope"]]
        return True
