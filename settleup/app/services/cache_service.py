"""
services/cache_service.py — Result cache for settlement optimisation.

The cache is a pure performance optimisation: a miss must produce exactly the
result a hit would have returned, and a broken store degrades to "always
recompute", never to an error or to incorrect output.

Store contract (injected, technology-agnostic):
    get(key) -> str | None
    set(key, value: str, ttl_seconds: int) -> None
    delete_pattern(pattern: str) -> int         # fnmatch-style glob

Key layout:
    settleup:opt:<strategy>:<sha256>
    settleup:opt:group:<group_id>:<strategy>:<sha256>

The digest covers (strategy, reference currency, canonically sorted normalised
debts, friendship data for friendPreference only), so reordering input edges
never changes the key.
"""

from __future__ import annotations

import fnmatch
import hashlib
import json
import logging
import threading
import time
from collections.abc import Callable, Mapping
from decimal import Decimal

from settleup.app.models.debt import DebtGraph, OptimizationStrategy, Settlement, participant_sort_key

logger = logging.getLogger(__name__)

KEY_PREFIX = "settleup:opt"
DEFAULT_TTL_SECONDS = 3600


class CacheStore:
    """Interface every cache backend implements."""

    def get(self, key: str) -> str | None:
        raise NotImplementedError

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        raise NotImplementedError

    def delete_pattern(self, pattern: str) -> int:
        raise NotImplementedError


class NullCacheStore(CacheStore):
    """Always misses. Used when caching is disabled."""

    def get(self, key: str) -> str | None:
        return None

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        return None

    def delete_pattern(self, pattern: str) -> int:
        return 0


class InMemoryCacheStore(CacheStore):
    """
    Process-local store with per-entry expiry.

    A single lock guards the dict, so concurrent sets on the same key resolve
    as last-write-wins. Expired entries are evicted lazily on read and on
    delete_pattern().
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl_seconds)

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            now = self._clock()
            doomed = [
                key for key, (_, expires_at) in self._entries.items()
                if expires_at <= now or fnmatch.fnmatchcase(key, pattern)
            ]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ── Key construction ───────────────────────────────────────────────────────

def _canonical_friendships(friendships: Mapping | None) -> list:
    if not friendships:
        return []
    rows = []
    for pair, strength in friendships.items():
        first, second = sorted(pair, key=participant_sort_key)
        rows.append([first, second, str(strength)])
    rows.sort(key=lambda row: (participant_sort_key(row[0]), participant_sort_key(row[1])))
    return rows


def graph_fingerprint(
        strategy: OptimizationStrategy,
        graph: DebtGraph,
        reference_currency: str,
        friendships: Mapping | None = None,
) -> str:
    """SHA-256 over the canonical JSON form of the cache inputs."""
    payload = {
        "strategy": strategy.value,
        "reference_currency": reference_currency,
        "participants": [
            pid for pid in graph.sorted_participants()
        ],
        "debts": [
            [debt.debtor, debt.creditor, str(debt.amount), debt.currency]
            for debt in graph.debts  # already canonically sorted by the builder
        ],
        "friendships": (
            _canonical_friendships(friendships)
            if strategy is OptimizationStrategy.FRIEND_PREFERENCE
            else None
        ),
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def build_cache_key(
        strategy: OptimizationStrategy,
        graph: DebtGraph,
        reference_currency: str,
        friendships: Mapping | None = None,
        group_id: int | None = None,
) -> str:
    digest = graph_fingerprint(strategy, graph, reference_currency, friendships)
    if group_id is None:
        return f"{KEY_PREFIX}:{strategy.value}:{digest}"
    return f"{KEY_PREFIX}:group:{group_id}:{strategy.value}:{digest}"


# ── Serialisation ──────────────────────────────────────────────────────────

def _dump_settlements(settlements: list[Settlement]) -> str:
    return json.dumps([s.to_dict() for s in settlements], separators=(",", ":"))


def _load_settlements(raw: str) -> list[Settlement]:
    return [
        Settlement(
            payer=item["from"],
            payee=item["to"],
            amount=Decimal(item["amount"]),
            currency=item["currency"],
        )
        for item in json.loads(raw)
    ]


# ── Cache facade ───────────────────────────────────────────────────────────

class OptimizationCache:
    """
    Wraps a CacheStore with settlement (de)serialisation and error isolation.

    Every store failure is logged and swallowed: callers see a miss on read
    and a no-op on write.
    """

    def __init__(self, store: CacheStore | None = None, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        self.store = store if store is not None else InMemoryCacheStore()
        self.ttl_seconds = ttl_seconds

    def get(self, key: str) -> list[Settlement] | None:
        try:
            raw = self.store.get(key)
        except Exception:
            logger.warning("Cache get failed for %s; recomputing", key, exc_info=True)
            return None
        if raw is None:
            logger.debug("Cache miss: %s", key)
            return None
        try:
            settlements = _load_settlements(raw)
        except (ValueError, KeyError, TypeError, ArithmeticError):
            logger.warning("Discarding unreadable cache entry %s", key, exc_info=True)
            return None
        logger.debug("Cache hit: %s", key)
        return settlements

    def set(self, key: str, settlements: list[Settlement]) -> None:
        try:
            self.store.set(key, _dump_settlements(settlements), self.ttl_seconds)
        except Exception:
            logger.warning("Cache set failed for %s", key, exc_info=True)

    def get_or_compute(self, key: str, compute: Callable[[], list[Settlement]]) -> list[Settlement]:
        cached = self.get(key)
        if cached is not None:
            return cached
        settlements = compute()
        self.set(key, settlements)
        return settlements

    def invalidate_group(self, group_id: int) -> int:
        """Drops every cached optimisation for one group. Returns the count removed."""
        pattern = f"{KEY_PREFIX}:group:{group_id}:*"
        try:
            removed = self.store.delete_pattern(pattern)
        except Exception:
            logger.warning("Cache invalidation failed for %s", pattern, exc_info=True)
            return 0
        logger.debug("Invalidated %d cache entr(ies) for group %s", removed, group_id)
        return removed
