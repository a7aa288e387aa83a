"""
QueryCache - Read cache keyed by canonical (resource type, params) keys.

Features:
- Canonical keys: parameter order and blank values never change the key
- Per-resource-type staleness windows (item reads may use a shorter one)
- Request coalescing for concurrent reads of the same key
- Tag-based invalidation (``student`` for listings, ``student:42`` for items)
- LRU eviction when at capacity
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Mapping

from loguru import logger

from schoolsync.services.auth import AuthRefreshCoordinator
from schoolsync.services.deduplicator import RequestCoalescer
from schoolsync.services.registry import ResourceConfig, ResourceRegistry, item_tag
from schoolsync.services.transport import ApiRequest


def _clean_value(value: Any) -> str | None:
    """Normalize one parameter value; None means absent."""
    if value is None:
        return None
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [v for v in (_clean_value(x) for x in value) if v is not None]
        if isinstance(value, (set, frozenset)):
            items.sort()
        return ",".join(items) if items else None
    text = str(value).strip()
    return text or None


def clean_params(params: Mapping[str, Any] | None) -> dict[str, str]:
    """Drop empty/undefined values and return params sorted by name."""
    if not params:
        return {}
    cleaned = {}
    for name in sorted(params):
        value = _clean_value(params[name])
        if value is not None:
            cleaned[name] = value
    return cleaned


def canonical_key(
    resource_type: str,
    params: Mapping[str, Any] | None = None,
    item_id: Any = None,
    subpath: str | None = None,
) -> str:
    """
    Build the canonical cache key for a read.

    ``canonical_key("student", {"size": 20, "lastName": "Rao", "status": ""})``
    and ``canonical_key("student", {"lastName": " Rao", "size": "20"})`` both
    give ``student?lastName=Rao&size=20``.
    """
    key = resource_type
    if item_id is not None:
        key = item_tag(resource_type, item_id)
    if subpath:
        key = f"{key}/{subpath.strip('/')}"
    cleaned = clean_params(params)
    if cleaned:
        key += "?" + "&".join(f"{k}={v}" for k, v in cleaned.items())
    return key


@dataclass
class CacheEntry:
    """A single cache entry with freshness metadata."""

    key: str
    value: Any
    fetched_at: datetime
    stale_after: timedelta
    tags: frozenset[str] = field(default_factory=frozenset)

    def is_fresh(self, now: datetime) -> bool:
        return now - self.fetched_at < self.stale_after


class QueryCache:
    """
    Read-through cache in front of the auth-aware transport.

    Usage:
        cache = QueryCache(auth, registry)

        page = await cache.read("student", {"lastName": "Rao", "page": 0})
        record = await cache.read("student", item_id=42)

        await cache.invalidate("student:42")
    """

    def __init__(
        self,
        sender: AuthRefreshCoordinator,
        registry: ResourceRegistry,
        max_size: int = 500,
        clock: Callable[[], datetime] = datetime.now,
        debug: bool = False,
    ):
        self._sender = sender
        self._registry = registry
        self._max_size = max_size
        self._clock = clock
        self._debug = debug

        self._entries: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self._coalescer = RequestCoalescer(debug=debug)
        self._stats = CacheStats()

        # Invalidation epochs: a fetch that started before its tag was
        # invalidated must not store its (possibly outdated) result.
        self._epoch = 0
        self._tag_epochs: dict[str, int] = {}
        self._cleared_epoch = 0
        self._in_flight_tags: dict[str, tuple[object, frozenset[str]]] = {}

    @property
    def coalescer(self) -> RequestCoalescer:
        return self._coalescer

    async def read(
        self,
        resource_type: str,
        params: Mapping[str, Any] | None = None,
        *,
        item_id: Any = None,
        subpath: str | None = None,
        force_refresh: bool = False,
    ) -> Any:
        """
        Return the value for a read, from cache when fresh.

        Args:
            resource_type: Registered resource type
            params: Query parameters (blank values are dropped)
            item_id: Record id for single-item reads
            subpath: Extra path below the resource (``statistics``, ``category/GENERAL``)
            force_refresh: Skip the fresh-entry check (still coalesced)

        Raises:
            SyncError subclass if the fetch fails; nothing is cached then
        """
        config = self._registry.get(resource_type)
        key = canonical_key(resource_type, params, item_id=item_id, subpath=subpath)

        if not force_refresh:
            async with self._lock:
                entry = self._entries.get(key)
                if entry is not None and entry.is_fresh(self._clock()):
                    self._touch(key)
                    self._stats.hits += 1
                    self._log(f"HIT: {key}")
                    return entry.value
                if entry is not None:
                    self._stats.stale += 1
                    self._log(f"STALE: {key}")
                else:
                    self._stats.misses += 1
                    self._log(f"MISS: {key}")

        return await self._coalescer.coalesce(
            key,
            lambda: self._fetch(config, key, clean_params(params), item_id, subpath),
        )

    async def _fetch(
        self,
        config: ResourceConfig,
        key: str,
        params: dict[str, str],
        item_id: Any,
        subpath: str | None,
    ) -> Any:
        started_epoch = self._epoch
        marker = object()
        self._in_flight_tags[key] = (marker, self._request_tags(config, item_id))
        try:
            response = await self._sender.send(
                ApiRequest("GET", config.url(item_id, subpath), params=params or None)
            )
        finally:
            current = self._in_flight_tags.get(key)
            if current is not None and current[0] is marker:
                del self._in_flight_tags[key]

        value = response.data
        tags = self._tags_for(config, item_id, value)
        item_level = any(t != config.resource_type for t in tags)

        async with self._lock:
            if self._invalidated_since(tags, started_epoch):
                self._log(f"DISCARD: {key} was invalidated while in flight")
                return value
            self._insert(
                CacheEntry(
                    key=key,
                    value=value,
                    fetched_at=self._clock(),
                    stale_after=config.staleness(item_level),
                    tags=tags,
                )
            )
        return value

    def _request_tags(self, config: ResourceConfig, item_id: Any) -> frozenset[str]:
        if item_id is not None and not config.singleton:
            return frozenset({item_tag(config.resource_type, item_id)})
        return frozenset({config.resource_type})

    def _tags_for(
        self,
        config: ResourceConfig,
        item_id: Any,
        value: Any,
    ) -> frozenset[str]:
        """Listings get the type tag, single records get their item tag."""
        if config.singleton:
            return frozenset({config.resource_type})
        if item_id is not None:
            return frozenset({item_tag(config.resource_type, item_id)})
        # Lookups by an alternate key (e.g. /student-id/STU-...) return one record
        if isinstance(value, dict) and "content" not in value:
            record_id = value.get(config.id_field)
            if record_id is not None:
                return frozenset({item_tag(config.resource_type, record_id)})
        return frozenset({config.resource_type})

    def _invalidated_since(self, tags: frozenset[str], epoch: int) -> bool:
        if self._cleared_epoch > epoch:
            return True
        return any(self._tag_epochs.get(tag, 0) > epoch for tag in tags)

    def _insert(self, entry: CacheEntry) -> None:
        if entry.key in self._entries:
            del self._entries[entry.key]
        elif len(self._entries) >= self._max_size:
            self._evict_least_recent()
        self._entries[entry.key] = entry
        self._log(
            f"SET: {entry.key} tags={sorted(entry.tags)} "
            f"(stale after {entry.stale_after.total_seconds()}s)"
        )

    async def prime(self, resource_type: str, item_id: Any, value: Any) -> None:
        """Store a record returned by a mutation as the fresh item entry."""
        config = self._registry.get(resource_type)
        key = canonical_key(resource_type, item_id=item_id)
        async with self._lock:
            self._insert(
                CacheEntry(
                    key=key,
                    value=value,
                    fetched_at=self._clock(),
                    stale_after=config.staleness(item_level=True),
                    tags=frozenset({item_tag(resource_type, item_id)}),
                )
            )

    async def invalidate(self, tag: str) -> int:
        """Invalidate every entry carrying ``tag``. Returns entries removed."""
        return await self.invalidate_tags([tag])

    async def invalidate_tags(self, tags: list[str]) -> int:
        """
        Invalidate every entry carrying any of ``tags`` in one atomic step.

        In-flight reads for those tags are detached so the next read starts
        a new request, and their results are not stored.
        """
        wanted = set(tags)
        async with self._lock:
            self._epoch += 1
            for tag in wanted:
                self._tag_epochs[tag] = self._epoch

            doomed = [k for k, e in self._entries.items() if e.tags & wanted]
            for key in doomed:
                del self._entries[key]

            in_flight = [
                k for k, (_, t) in self._in_flight_tags.items() if t & wanted
            ]

        if in_flight:
            await self._coalescer.forget(in_flight)

        self._stats.invalidations += len(doomed)
        if doomed:
            logger.debug(
                f"[QueryCache] INVALIDATE {sorted(wanted)}: {len(doomed)} entries"
            )
        return len(doomed)

    async def invalidate_type(self, resource_type: str) -> int:
        """Invalidate the listing tag and every item tag of a resource type."""
        prefix = f"{resource_type}:"
        async with self._lock:
            tags = {resource_type}
            for entry in self._entries.values():
                tags.update(t for t in entry.tags if t.startswith(prefix))
            for _, in_flight in self._in_flight_tags.values():
                tags.update(t for t in in_flight if t.startswith(prefix))
        return await self.invalidate_tags(sorted(tags))

    async def clear(self) -> None:
        """Clear all cache entries."""
        async with self._lock:
            self._epoch += 1
            self._cleared_epoch = self._epoch
            count = len(self._entries)
            self._entries.clear()
            in_flight = list(self._in_flight_tags)
        if in_flight:
            await self._coalescer.forget(in_flight)
        self._log(f"CLEAR: {count} entries removed")

    def get_entry(self, key: str) -> CacheEntry | None:
        """Return the stored entry for a key, fresh or not."""
        return self._entries.get(key)

    def keys_with_tag(self, tag: str) -> list[str]:
        return [k for k, e in self._entries.items() if tag in e.tags]

    def _touch(self, key: str) -> None:
        """Mark an entry as most recently used (dict order is recency order)."""
        self._entries[key] = self._entries.pop(key)

    def _evict_least_recent(self) -> None:
        """Evict the least recently used entry (LRU)."""
        if not self._entries:
            return

        lru_key = next(iter(self._entries))
        del self._entries[lru_key]
        self._stats.evictions += 1
        self._log(f"EVICT: {lru_key}")

    def get_stats(self) -> "CacheStats":
        """Get cache statistics."""
        self._stats.size = len(self._entries)
        self._stats.max_size = self._max_size
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[QueryCache] {message}")


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    stale: int = 0
    invalidations: int = 0
    evictions: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.stale + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "stale": self.stale,
            "invalidations": self.invalidations,
            "evictions": self.evictions,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
