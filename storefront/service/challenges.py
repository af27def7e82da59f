from __future__ import annotations

import asyncio
import copy
import time
from collections import OrderedDict
from typing import Any, Optional, Tuple

from storefront.logging import get_logger

logger = get_logger(__name__)


class ChallengeStore:
    """Short-lived keyed values consumed at most once.

    Backed by Redis when a cache is configured. Without one, entries live in
    a bounded in-process map: expired entries are evicted on access and the
    oldest entry is dropped when the map is full.
    """

    def __init__(self, cache: Any = None, *, max_local_entries: int = 10000) -> None:
        self.cache = cache
        self.max_local_entries = max_local_entries
        self._local: "OrderedDict[Tuple[str, str], Tuple[float, dict]]" = OrderedDict()
        self._lock = asyncio.Lock()

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, (expires, _) in self._local.items() if expires <= now]
        for key in expired:
            self._local.pop(key, None)

    async def put(self, namespace: str, key: str, payload: dict, ttl_seconds: int) -> None:
        if self.cache:
            await self.cache.put_ephemeral(namespace, key, payload, ttl_seconds)
            return
        now = time.monotonic()
        async with self._lock:
            self._evict_expired(now)
            while len(self._local) >= self.max_local_entries:
                self._local.popitem(last=False)
            self._local[(namespace, key)] = (now + max(1, ttl_seconds), copy.deepcopy(payload))

    async def get(self, namespace: str, key: str) -> Optional[dict]:
        if self.cache:
            return await self.cache.get_ephemeral(namespace, key)
        now = time.monotonic()
        async with self._lock:
            self._evict_expired(now)
            entry = self._local.get((namespace, key))
            return copy.deepcopy(entry[1]) if entry else None

    async def pop(self, namespace: str, key: str) -> Optional[dict]:
        if self.cache:
            return await self.cache.pop_ephemeral(namespace, key)
        now = time.monotonic()
        async with self._lock:
            self._evict_expired(now)
            entry = self._local.pop((namespace, key), None)
            return entry[1] if entry else None

    def __len__(self) -> int:
        return len(self._local)
