"""
Processed-event cache for inbound webhook deduplication.

Two implementations share the `claim` / `release` / `mark` / `contains`
interface:

- ProcessedEventCache: process-local, bounded, insertion-ordered; the oldest
  id is evicted when capacity is exceeded. Lost on restart.
- RedisEventCache: shared across workers, one key per event with a TTL.
  Falls back to a ProcessedEventCache whenever Redis errors.

The processor claims an id before any side effect. A claimed id is either
marked (dispatch was attempted) or released (so a redelivery can retry).
A second claim on an id that is in flight or already marked fails.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Optional, Set

import redis

from carebird.config import Settings
from carebird.runtime import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "inbound:event:"
CLAIM_PREFIX = "inbound:claim:"
CLAIM_TTL_SEC = 5 * 60


class ProcessedEventCache:
    """Bounded, mutex-guarded set of event ids (oldest evicted first)."""

    def __init__(self, capacity: int = 10000) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._ids: "OrderedDict[str, None]" = OrderedDict()
        self._in_flight: Set[str] = set()
        self._lock = threading.Lock()

    def contains(self, event_id: Optional[str]) -> bool:
        if not event_id:
            return False
        with self._lock:
            return event_id in self._ids

    def claim(self, event_id: Optional[str]) -> bool:
        """True when the caller now owns `event_id`; ids without a value always claim."""
        if not event_id:
            return True
        with self._lock:
            if event_id in self._ids or event_id in self._in_flight:
                return False
            self._in_flight.add(event_id)
            return True

    def release(self, event_id: Optional[str]) -> None:
        if not event_id:
            return
        with self._lock:
            self._in_flight.discard(event_id)

    def mark(self, event_id: Optional[str]) -> None:
        if not event_id:
            return
        with self._lock:
            self._in_flight.discard(event_id)
            if event_id in self._ids:
                return
            self._ids[event_id] = None
            while len(self._ids) > self.capacity:
                evicted, _ = self._ids.popitem(last=False)
                logger.debug("Evicted oldest event id %s", evicted)

    def clear(self) -> None:
        with self._lock:
            self._ids.clear()
            self._in_flight.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)


class RedisEventCache:
    """
    Redis-backed cache.

    Processed ids live under `inbound:event:<id>` for `ttl_sec`; in-flight
    claims are `SET NX` on `inbound:claim:<id>` with a short lease so a
    crashed worker cannot hold an id forever. Every call is mirrored into a
    local ProcessedEventCache, which answers alone while Redis is failing.
    """

    def __init__(
        self,
        client: redis.Redis,
        ttl_sec: int = 24 * 60 * 60,
        fallback: Optional[ProcessedEventCache] = None,
    ) -> None:
        self.r = client
        self.ttl_sec = ttl_sec
        self.local = fallback if fallback is not None else ProcessedEventCache()

    def _warn(self, op: str, event_id: str, exc: Exception) -> None:
        logger.warning("⚠️ Redis %s failed for %s, using local cache: %s", op, event_id, exc)

    def contains(self, event_id: Optional[str]) -> bool:
        if not event_id:
            return False
        try:
            return bool(self.r.exists(f"{KEY_PREFIX}{event_id}"))
        except Exception as exc:
            self._warn("exists", event_id, exc)
            return self.local.contains(event_id)

    def claim(self, event_id: Optional[str]) -> bool:
        if not event_id:
            return True
        try:
            if self.r.exists(f"{KEY_PREFIX}{event_id}"):
                return False
            owned = bool(self.r.set(f"{CLAIM_PREFIX}{event_id}", "1", nx=True, ex=CLAIM_TTL_SEC))
        except Exception as exc:
            self._warn("claim", event_id, exc)
            return self.local.claim(event_id)
        if owned:
            self.local.claim(event_id)
        return owned

    def release(self, event_id: Optional[str]) -> None:
        if not event_id:
            return
        self.local.release(event_id)
        try:
            self.r.delete(f"{CLAIM_PREFIX}{event_id}")
        except Exception as exc:
            self._warn("release", event_id, exc)

    def mark(self, event_id: Optional[str]) -> None:
        if not event_id:
            return
        self.local.mark(event_id)
        try:
            self.r.set(f"{KEY_PREFIX}{event_id}", "1", ex=self.ttl_sec)
            self.r.delete(f"{CLAIM_PREFIX}{event_id}")
        except Exception as exc:
            self._warn("mark", event_id, exc)


def build_event_cache(cfg: Settings):
    """Redis when REDIS_URL is set, otherwise the process-local cache."""
    if cfg.REDIS_URL:
        url = cfg.REDIS_URL
        if cfg.REDIS_TLS and url.startswith("redis://"):
            url = "rediss://" + url[len("redis://"):]
        client = redis.Redis.from_url(url, decode_responses=True, socket_timeout=cfg.HTTP_TIMEOUT_SEC)
        logger.info("🔁 Processed-event cache: redis (ttl=%ss)", cfg.EVENT_CACHE_TTL_SEC)
        return RedisEventCache(
            client,
            ttl_sec=cfg.EVENT_CACHE_TTL_SEC,
            fallback=ProcessedEventCache(cfg.EVENT_CACHE_SIZE),
        )
    logger.info("🔁 Processed-event cache: in-process (capacity=%s)", cfg.EVENT_CACHE_SIZE)
    return ProcessedEventCache(cfg.EVENT_CACHE_SIZE)
