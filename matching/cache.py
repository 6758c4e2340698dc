"""
Result Cache

Memoizes ranked lists and explanations in a key-value backend (Redis in
production, a dict in tests and single-process deployments).

Keys
----
    {ns}:recs:campaign:{campaign_id}:{digest}       influencers for a campaign
    {ns}:recs:influencer:{influencer_id}:{digest}   campaigns for an influencer
    {ns}:expl:{campaign_id}:{influencer_id}:{digest}

``digest`` hashes (subject, K, weights version, time bucket), so changing the
weights or moving to the next bucket never serves an old list.

Invalidation
------------
Generation counters live in the backend next to the entries:

    {ns}:gen:campaign:{id}      {ns}:gen:pool:campaign
    {ns}:gen:influencer:{id}    {ns}:gen:pool:influencer

Every entry records the counters it depends on at the time its computation
started. Changing an influencer bumps its own counter and the influencer pool
counter, so every campaign ranking (whose pool it might now join or leave)
is stale. An entry whose recorded counters differ from the current ones is a
miss and gets deleted.

Backend failures never fail a request: the cache logs, counts, and behaves as
if it were empty.
"""

import time
import json
import hashlib
import fnmatch
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .entities import ProfileKind, RankedItem, RankedResult
from .errors import CacheUnavailable
from .metrics import CACHE_ERRORS, CACHE_HITS, CACHE_INVALIDATIONS, CACHE_MISSES

logger = logging.getLogger(__name__)


# ========== Backends ==========

@runtime_checkable
class CacheBackend(Protocol):
    """Minimal key-value surface the result cache needs"""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    async def delete(self, *keys: str) -> None:
        ...

    async def scan(self, pattern: str) -> List[str]:
        ...

    async def delete_pattern(self, pattern: str) -> int:
        ...

    async def incr(self, key: str) -> int:
        ...

    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        ...


class MemoryCacheBackend:
    """Dict backed store with per-key expiry, for tests and single-process runs"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._clock = clock

    def _live(self, key: str) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        return [self._live(k) for k in keys]

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._data[key] = (value, self._clock() + ttl_seconds)

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._data.pop(key, None)

    async def scan(self, pattern: str) -> List[str]:
        return [k for k in list(self._data) if fnmatch.fnmatchcase(k, pattern) and self._live(k) is not None]

    async def delete_pattern(self, pattern: str) -> int:
        keys = await self.scan(pattern)
        await self.delete(*keys)
        return len(keys)

    async def incr(self, key: str) -> int:
        current = int(self._live(key) or 0) + 1
        # counters never expire
        self._data[key] = (str(current), None)
        return current

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()


class RedisCacheBackend:
    """redis.asyncio backed store; every Redis error surfaces as CacheUnavailable"""

    def __init__(self, url: str, socket_timeout: float = 1.0):
        self.url = url
        self.socket_timeout = socket_timeout
        self._redis: Optional[aioredis.Redis] = None

    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(
                self.url,
                decode_responses=True,
                socket_connect_timeout=self.socket_timeout,
                socket_timeout=self.socket_timeout,
                health_check_interval=30,
            )
        return self._redis

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client().get(key)
        except (RedisError, OSError) as e:
            raise CacheUnavailable(f"Redis GET failed: {e}") from e

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        try:
            return await self._client().mget(list(keys))
        except (RedisError, OSError) as e:
            raise CacheUnavailable(f"Redis MGET failed: {e}") from e

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._client().set(key, value, ex=ttl_seconds)
        except (RedisError, OSError) as e:
            raise CacheUnavailable(f"Redis SET failed: {e}") from e

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self._client().delete(*keys)
        except (RedisError, OSError) as e:
            raise CacheUnavailable(f"Redis DEL failed: {e}") from e

    async def scan(self, pattern: str) -> List[str]:
        try:
            return [key async for key in self._client().scan_iter(match=pattern, count=500)]
        except (RedisError, OSError) as e:
            raise CacheUnavailable(f"Redis SCAN failed: {e}") from e

    async def delete_pattern(self, pattern: str) -> int:
        keys = await self.scan(pattern)
        for i in range(0, len(keys), 500):
            await self.delete(*keys[i:i + 500])
        return len(keys)

    async def incr(self, key: str) -> int:
        try:
            return int(await self._client().incr(key))
        except (RedisError, OSError) as e:
            raise CacheUnavailable(f"Redis INCR failed: {e}") from e

    async def ping(self) -> bool:
        try:
            return bool(await self._client().ping())
        except (RedisError, OSError) as e:
            raise CacheUnavailable(f"Redis PING failed: {e}") from e

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


# ========== Entries ==========

@dataclass
class CacheEntry:
    """One stored result plus the generation counters it was computed from"""
    key: str
    payload: Dict
    generations: Dict[str, int]
    weights_version: str
    ttl_seconds: int
    kind: str = 'ranked'  # ranked | explanation
    created_at: float = field(default_factory=time.time)

    def to_json(self) -> str:
        return json.dumps({
            'key': self.key,
            'payload': self.payload,
            'generations': self.generations,
            'weights_version': self.weights_version,
            'ttl_seconds': self.ttl_seconds,
            'kind': self.kind,
            'created_at': self.created_at,
        })

    @classmethod
    def from_json(cls, raw: str) -> 'CacheEntry':
        data = json.loads(raw)
        return cls(
            key=data['key'],
            payload=data['payload'],
            generations={k: int(v) for k, v in data['generations'].items()},
            weights_version=data['weights_version'],
            ttl_seconds=int(data['ttl_seconds']),
            kind=data.get('kind', 'ranked'),
            created_at=float(data['created_at']),
        )


@dataclass(frozen=True)
class Lookup:
    """
    Result of a cache read.

    ``generations`` is the counter snapshot taken before the read; pass it
    back to ``put`` so a result computed while an invalidation raced past is
    stored already stale. ``None`` means the backend is down and nothing
    should be written.
    """
    payload: Optional[Dict]
    generations: Optional[Dict[str, int]]

    @property
    def hit(self) -> bool:
        return self.payload is not None


# ========== Result cache ==========

class ResultCache:
    """Generation-validated result cache on top of a CacheBackend"""

    def __init__(
        self,
        backend: CacheBackend,
        namespace: str = "nichelink:match",
        ttl_seconds: int = 3600,
        time_bucket_seconds: int = 3600,
        weights_version: str = "",
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds
        self.time_bucket_seconds = time_bucket_seconds
        self.weights_version = weights_version
        self._clock = clock

    # --- lifecycle ---

    async def start(self) -> bool:
        available = await self.ping()
        if available:
            logger.info(f"Result cache ready ({type(self.backend).__name__}, namespace {self.namespace})")
        else:
            logger.warning("Result cache backend unreachable, serving uncached until it recovers")
        return available

    async def close(self) -> None:
        try:
            await self.backend.close()
        except CacheUnavailable as e:
            logger.warning(f"Error closing cache backend: {e}")

    async def ping(self) -> bool:
        try:
            return await self.backend.ping()
        except CacheUnavailable as e:
            CACHE_ERRORS.labels(operation='ping').inc()
            logger.warning(f"Cache health check failed: {e}")
            return False

    # --- time buckets ---

    def current_bucket(self) -> int:
        return int(self._clock() // self.time_bucket_seconds)

    def bucket_start(self, bucket: int) -> datetime:
        """Reference time every score in ``bucket`` is computed against"""
        return datetime.fromtimestamp(bucket * self.time_bucket_seconds, tz=timezone.utc)

    # --- keys ---

    def _digest(self, *parts) -> str:
        raw = "|".join(str(p) for p in (*parts, self.weights_version))
        return hashlib.sha256(raw.encode()).hexdigest()[:16]

    def ranked_key(self, kind: ProfileKind, subject_id: str, k: int, bucket: int) -> str:
        return f"{self.namespace}:recs:{kind.value}:{subject_id}:{self._digest(subject_id, k, bucket)}"

    def explanation_key(self, campaign_id: str, influencer_id: str, bucket: int) -> str:
        digest = self._digest(campaign_id, influencer_id, bucket)
        return f"{self.namespace}:expl:{campaign_id}:{influencer_id}:{digest}"

    def generation_key(self, kind: ProfileKind, profile_id: str) -> str:
        return f"{self.namespace}:gen:{kind.value}:{profile_id}"

    def pool_generation_key(self, kind: ProfileKind) -> str:
        return f"{self.namespace}:gen:pool:{kind.value}"

    def ranked_dependencies(self, kind: ProfileKind, subject_id: str) -> List[str]:
        """A ranking depends on its subject and on the pool it drew from"""
        pool = ProfileKind.INFLUENCER if kind == ProfileKind.CAMPAIGN else ProfileKind.CAMPAIGN
        return [self.generation_key(kind, subject_id), self.pool_generation_key(pool)]

    def explanation_dependencies(self, campaign_id: str, influencer_id: str) -> List[str]:
        return [
            self.generation_key(ProfileKind.CAMPAIGN, campaign_id),
            self.generation_key(ProfileKind.INFLUENCER, influencer_id),
            self.pool_generation_key(ProfileKind.INFLUENCER),
        ]

    # --- reads ---

    async def _generations(self, dependencies: Sequence[str]) -> Dict[str, int]:
        values = await self.backend.mget(dependencies)
        return {key: int(value or 0) for key, value in zip(dependencies, values)}

    async def _read(self, key: str, current: Dict[str, int]) -> Optional[CacheEntry]:
        raw = await self.backend.get(key)
        if raw is None:
            return None

        try:
            entry = CacheEntry.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Dropping unreadable cache entry {key}: {e}")
            await self.backend.delete(key)
            return None

        if entry.generations != current or entry.weights_version != self.weights_version:
            logger.debug(f"Cache entry {key} is stale")
            await self.backend.delete(key)
            return None

        return entry

    async def get(self, key: str, dependencies: Sequence[str], entry_type: str = 'ranked') -> Lookup:
        try:
            current = await self._generations(dependencies)
            entry = await self._read(key, current)
        except CacheUnavailable as e:
            CACHE_ERRORS.labels(operation='get').inc()
            logger.warning(f"Cache read failed, computing fresh: {e}")
            return Lookup(payload=None, generations=None)

        if entry is None:
            CACHE_MISSES.labels(entry=entry_type).inc()
            return Lookup(payload=None, generations=current)

        CACHE_HITS.labels(entry=entry_type).inc()
        return Lookup(payload=entry.payload, generations=current)

    async def find_ranked_covering(self, campaign_id: str, influencer_id: str) -> Optional[RankedItem]:
        """
        Look for a still valid ranking of ``campaign_id`` that contains the
        influencer, newest first, and return its ranked item.
        """
        pattern = f"{self.namespace}:recs:{ProfileKind.CAMPAIGN.value}:{campaign_id}:*"
        try:
            keys = await self.backend.scan(pattern)
            if not keys:
                return None
            current = await self._generations(
                self.ranked_dependencies(ProfileKind.CAMPAIGN, campaign_id)
            )
            entries = []
            for key in keys:
                entry = await self._read(key, current)
                if entry is not None:
                    entries.append(entry)
        except CacheUnavailable as e:
            CACHE_ERRORS.labels(operation='scan').inc()
            logger.warning(f"Cache scan failed: {e}")
            return None

        for entry in sorted(entries, key=lambda e: e.created_at, reverse=True):
            item = RankedResult.from_dict(entry.payload).find(influencer_id)
            if item is not None:
                CACHE_HITS.labels(entry='covering').inc()
                return item

        CACHE_MISSES.labels(entry='covering').inc()
        return None

    # --- writes ---

    async def put(
        self,
        key: str,
        payload: Dict,
        generations: Optional[Dict[str, int]],
        entry_type: str = 'ranked',
        created_at: Optional[float] = None,
    ) -> bool:
        """
        Store ``payload`` under ``key``.

        Last writer wins: an existing entry created later than this one is
        kept. Returns whether the entry was written.
        """
        if generations is None:
            return False

        entry = CacheEntry(
            key=key,
            payload=payload,
            generations=generations,
            weights_version=self.weights_version,
            ttl_seconds=self.ttl_seconds,
            kind=entry_type,
            created_at=created_at if created_at is not None else self._clock(),
        )

        try:
            raw = await self.backend.get(key)
            if raw is not None:
                try:
                    existing = CacheEntry.from_json(raw)
                    if existing.created_at > entry.created_at:
                        logger.debug(f"Keeping newer cache entry for {key}")
                        return False
                except (ValueError, KeyError, TypeError):
                    logger.debug(f"Overwriting unreadable cache entry {key}")
            await self.backend.set(key, entry.to_json(), self.ttl_seconds)
        except CacheUnavailable as e:
            CACHE_ERRORS.labels(operation='put').inc()
            logger.warning(f"Cache write failed, result not cached: {e}")
            return False

        return True

    async def invalidate(self, profile_id: str, kind: Optional[ProfileKind] = None) -> bool:
        """
        Make every entry depending on ``profile_id`` stale.

        With no kind the identifier is treated as both a campaign and an
        influencer.
        """
        kinds = [kind] if kind is not None else [ProfileKind.CAMPAIGN, ProfileKind.INFLUENCER]
        ns = self.namespace

        try:
            for k in kinds:
                await self.backend.incr(self.generation_key(k, profile_id))
                await self.backend.incr(self.pool_generation_key(k))

                await self.backend.delete_pattern(f"{ns}:recs:{k.value}:{profile_id}:*")
                if k == ProfileKind.CAMPAIGN:
                    await self.backend.delete_pattern(f"{ns}:expl:{profile_id}:*")
                else:
                    await self.backend.delete_pattern(f"{ns}:expl:*:{profile_id}:*")

                CACHE_INVALIDATIONS.labels(kind=k.value).inc()
        except CacheUnavailable as e:
            CACHE_ERRORS.labels(operation='invalidate').inc()
            logger.error(f"Failed to invalidate cache for {profile_id}: {e}")
            return False

        logger.info(f"Invalidated cached results for {profile_id} ({', '.join(k.value for k in kinds)})")
        return True
