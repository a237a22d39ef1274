"""
Response Cache.

Hash-keyed, size-bounded, TTL-expiring LRU cache of provider responses, plus
the request-level metrics the status surfaces report (hit rate, rolling mean
response time, success rate).

Caching is best-effort: a failure to hash, look up or store a request is
logged and never fails the turn. The cache lives for the process
only.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Sequence

from loguru import logger

from .config import CacheSettings
from .errors import CancellationToken, RequestCancelled
from .schemas import ChatMessage, ModelResponse, SendOptions


RequestFn = Callable[[], Awaitable[ModelResponse]]


@dataclass
class CacheEntry:
    response: ModelResponse
    timestamp: float
    request_hash: str
    access_count: int = 1
    last_accessed: float = 0.0


@dataclass
class WarmRequest:
    """One request to replay when pre-warming the cache."""
    messages: Sequence[ChatMessage]
    model_id: str
    request_fn: RequestFn
    options: Optional[SendOptions] = None


@dataclass
class CacheMetrics:
    total_requests: int = 0
    cache_hits: int = 0
    successful_requests: int = 0
    response_times_ms: Deque[float] = field(default_factory=deque)

    @property
    def hit_rate(self) -> float:
        return self.cache_hits / self.total_requests if self.total_requests else 0.0

    @property
    def success_rate(self) -> float:
        return self.successful_requests / self.total_requests if self.total_requests else 0.0

    @property
    def mean_response_time_ms(self) -> float:
        if not self.response_times_ms:
            return 0.0
        return sum(self.response_times_ms) / len(self.response_times_ms)


def request_hash(
    messages: Sequence[ChatMessage],
    model_id: str,
    options: Optional[SendOptions] = None,
    content_prefix_chars: int = 500,
) -> str:
    """SHA-256 over the parts of a request that decide its answer."""
    opts = options or SendOptions()
    payload = {
        "messages": [{"role": m.role, "content": m.content[:content_prefix_chars]} for m in messages],
        "model_id": model_id,
        "options": {"max_tokens": opts.max_tokens, "temperature": opts.temperature},
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ResponseCache:
    """
    Usage:
        cache = ResponseCache()
        key = cache.key_for(messages, model_id, options)
        response = await cache.fetch(key, lambda: router.send_message(...))
    """

    def __init__(
        self,
        settings: Optional[CacheSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or CacheSettings()
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self._metrics = CacheMetrics(response_times_ms=deque(maxlen=self.settings.timing_window))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def entry(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def key_for(
        self,
        messages: Sequence[ChatMessage],
        model_id: str,
        options: Optional[SendOptions] = None,
    ) -> Optional[str]:
        try:
            return request_hash(messages, model_id, options, self.settings.content_prefix_chars)
        except (TypeError, ValueError) as e:
            logger.warning(f"Could not hash request for {model_id}, bypassing cache: {e}")
            return None

    # =========================================================================
    # PRIMITIVES
    # =========================================================================

    async def get(self, key: str) -> Optional[ModelResponse]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None

            now = self._clock()
            if now - entry.timestamp > self.settings.ttl_seconds:
                del self._entries[key]
                logger.debug(f"Cache entry expired: {key[:12]}")
                return None

            entry.access_count += 1
            entry.last_accessed = now
            return entry.response.model_copy(deep=True, update={"cached": True})

    async def put(self, key: str, response: ModelResponse) -> None:
        async with self._lock:
            if key not in self._entries and len(self._entries) >= self.settings.max_size:
                self._evict_least_recent()

            now = self._clock()
            self._entries[key] = CacheEntry(
                response=response.model_copy(deep=True, update={"cached": False}),
                timestamp=now,
                request_hash=key,
                access_count=1,
                last_accessed=now,
            )

    def _evict_least_recent(self) -> None:
        victim = min(self._entries.items(), key=lambda kv: kv[1].last_accessed, default=None)
        if victim is None:
            return
        del self._entries[victim[0]]
        logger.debug(f"Evicted least recently used cache entry: {victim[0][:12]}")

    # =========================================================================
    # REQUEST FLOW
    # =========================================================================

    async def fetch(
        self,
        key: Optional[str],
        request_fn: RequestFn,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ModelResponse:
        """Serve ``key`` from cache, or run ``request_fn`` and store its result.

        A ``None`` key bypasses the cache. Results obtained after the token was
        cancelled are never written.
        """
        self._metrics.total_requests += 1

        if key is not None:
            try:
                cached = await self.get(key)
            except Exception as e:
                logger.warning(f"Cache lookup failed, treating as miss: {e}")
                cached = None
            if cached is not None:
                self._metrics.cache_hits += 1
                logger.info(f"Cache hit for {cached.model} ({key[:12]})")
                return cached
            logger.debug(f"Cache miss ({key[:12]})")

        start = self._clock()
        response = await request_fn()
        elapsed_ms = max(0.0, (self._clock() - start) * 1000.0)
        self._metrics.response_times_ms.append(elapsed_ms)
        self._metrics.successful_requests += 1

        if cancel_token is not None and cancel_token.cancelled:
            raise RequestCancelled("response_cache")

        if key is not None:
            try:
                await self.put(key, response)
            except Exception as e:
                logger.warning(f"Cache write failed, returning live response: {e}")
        return response

    async def pre_warm(self, requests: Iterable[WarmRequest]) -> int:
        """Replay ``requests`` through the cache. Returns how many succeeded."""

        async def _one(req: WarmRequest) -> bool:
            key = self.key_for(req.messages, req.model_id, req.options)
            try:
                await self.fetch(key, req.request_fn)
            except Exception as e:
                logger.warning(f"Pre-warm failed for {req.model_id}: {e}")
                return False
            return True

        results = await asyncio.gather(*(_one(r) for r in requests))
        return sum(1 for ok in results if ok)

    # =========================================================================
    # STATS
    # =========================================================================

    def get_metrics(self) -> Dict[str, float]:
        return {
            "response_time_ms": round(self._metrics.mean_response_time_ms, 2),
            "cache_hit_rate": self._metrics.hit_rate,
            "success_rate": self._metrics.success_rate,
            "total_requests": self._metrics.total_requests,
        }

    def get_cache_stats(self) -> Dict[str, Any]:
        entries: List[Dict[str, Any]] = [
            {
                "hash": key,
                "timestamp": e.timestamp,
                "access_count": e.access_count,
                "last_accessed": e.last_accessed,
            }
            for key, e in self._entries.items()
        ]
        return {
            "size": len(self._entries),
            "max_size": self.settings.max_size,
            "hit_rate": f"{self._metrics.hit_rate * 100:.1f}%",
            "entries": entries,
        }

    def reset(self) -> None:
        self._entries.clear()
        self._metrics = CacheMetrics(response_times_ms=deque(maxlen=self.settings.timing_window))
