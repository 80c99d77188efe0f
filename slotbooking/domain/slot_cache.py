"""
Process-local memoization of generated slots.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, List, Sequence, Set, Tuple

from .models import TimeOfDay

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlotCacheKey:
    """
    Identity of one slot computation.

    ``signature`` is the serialized booked set for (business_id, day).
    ``cutoff`` is the same-day earliest start, None on any other day, so
    entries for the current day age out as the clock moves.
    """
    day: date
    business_id: str
    duration_minutes: int
    buffer_minutes: int
    signature: str
    cutoff: str | None = None

    @property
    def prefix(self) -> Tuple[str, date]:
        return self.business_id, self.day


class SlotCache:
    """
    LRU cache of generated slot lists with invalidation by (business_id, day).
    """

    def __init__(self, max_entries: int = 512):
        if max_entries <= 0:
            raise ValueError(f"max_entries must be positive, got {max_entries}")
        self.max_entries = max_entries
        self.hits = 0
        self.misses = 0
        self._entries: "OrderedDict[SlotCacheKey, Tuple[TimeOfDay, ...]]" = OrderedDict()
        self._index: Dict[Tuple[str, date], Set[SlotCacheKey]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: SlotCacheKey) -> bool:
        return key in self._entries

    def get_or_compute(
        self,
        key: SlotCacheKey,
        compute_fn: Callable[[], Sequence[TimeOfDay]],
    ) -> List[TimeOfDay]:
        """Return the cached slots for ``key``, computing and storing them on a miss."""
        cached = self._entries.get(key)
        if cached is not None:
            self.hits += 1
            self._entries.move_to_end(key)
            logger.debug("Slot cache hit for %s on %s", key.business_id, key.day)
            return list(cached)

        self.misses += 1
        slots = tuple(compute_fn())
        self._entries[key] = slots
        self._index.setdefault(key.prefix, set()).add(key)

        while len(self._entries) > self.max_entries:
            self._evict_oldest()

        return list(slots)

    def invalidate(self, business_id: str, day: date) -> int:
        """
        Drop every entry computed for (business_id, day).

        Returns:
            Number of entries removed
        """
        keys = self._index.pop((business_id, day), set())
        for key in keys:
            self._entries.pop(key, None)
        if keys:
            logger.debug("Invalidated %d slot cache entries for %s on %s", len(keys), business_id, day)
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()
        self._index.clear()

    def _evict_oldest(self) -> None:
        key, _ = self._entries.popitem(last=False)
        siblings = self._index.get(key.prefix)
        if siblings is not None:
            siblings.discard(key)
            if not siblings:
                del self._index[key.prefix]
