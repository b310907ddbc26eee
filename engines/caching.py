"""Bounded memoization for per-decision scores."""

from threading import Lock
from typing import Dict, Hashable, List, Optional, Sequence, Tuple

from schemas import Decision

ScoreKey = Tuple[Hashable, ...]


class DecisionScoreCache:
    """Thread-safe LRU cache keyed by ``(decision fingerprint, selection)``."""

    def __init__(self, max_size: int = 4096):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._cache: Dict[ScoreKey, float] = {}
        self._access_order: List[ScoreKey] = []
        self._max_size = max_size
        self._lock = Lock()
        self.hits = 0
        self.misses = 0

    def add(self, decision: Decision, selected: Sequence[str], score: float) -> None:
        """Store ``score`` with LRU eviction."""
        key = self.make_key(decision, selected)
        with self._lock:
            if key in self._cache:
                self._access_order.remove(key)
            elif len(self._cache) >= self._max_size:
                # Evict least recently used
                lru_key = self._access_order.pop(0)
                self._cache.pop(lru_key, None)
            self._cache[key] = score
            self._access_order.append(key)

    def get(self, decision: Decision, selected: Sequence[str]) -> Optional[float]:
        """Return the cached score, refreshing its recency."""
        key = self.make_key(decision, selected)
        with self._lock:
            score = self._cache.get(key)
            if score is None:
                self.misses += 1
                return None
            self.hits += 1
            self._access_order.remove(key)
            self._access_order.append(key)
            return score

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._access_order.clear()
            self.hits = 0
            self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    @staticmethod
    def make_key(decision: Decision, selected: Sequence[str]) -> ScoreKey:
        """Fingerprint everything scoring reads, so equal ids with different weights never collide."""
        return (
            decision.id,
            decision.type.value,
            tuple(sorted(decision.weights.items())),
            decision.expert_option_ids,
            tuple(selected),
        )
