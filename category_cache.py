"""Time-bounded in-memory lookup of a user's category tree.

Category metadata changes rarely and is read for every split that gets
resolved, so it is loaded once and served from memory until the TTL expires
or ``refresh()``/``invalidate()`` is called. Time comes from an injected
``Clock`` so expiry can be driven deterministically.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from rapidfuzz.distance import Levenshtein
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from models import Category

logger = logging.getLogger(__name__)


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.utcnow()


class CategoryAmbiguous(ValueError):
    pass


@dataclass(frozen=True)
class CategoryEntry:
    id: int
    name: str
    parent_id: Optional[int] = None


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    refreshes: int
    size: int
    loaded_at: Optional[datetime]


class CategoryCache:
    def __init__(
        self,
        loader: Callable[[], Iterable[CategoryEntry]],
        *,
        ttl_seconds: Optional[float] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        ttl = get_settings().category_cache_ttl_secs if ttl_seconds is None else ttl_seconds
        self._loader = loader
        self._ttl = timedelta(seconds=ttl)
        self._clock = clock or SystemClock()
        self._entries: dict[int, CategoryEntry] = {}
        self._loaded_at: Optional[datetime] = None
        self._hits = 0
        self._misses = 0
        self._refreshes = 0

    @classmethod
    def for_session(
        cls,
        session: Session,
        user_id: int,
        *,
        ttl_seconds: Optional[float] = None,
        clock: Optional[Clock] = None,
    ) -> "CategoryCache":
        def load() -> list[CategoryEntry]:
            rows = session.execute(
                select(Category.id, Category.name, Category.parent_id).where(
                    Category.user_id == user_id, Category.archived_at.is_(None)
                )
            ).all()
            return [CategoryEntry(r.id, r.name, r.parent_id) for r in rows]

        return cls(load, ttl_seconds=ttl_seconds, clock=clock)

    def _is_stale(self) -> bool:
        if self._loaded_at is None:
            return True
        return self._clock.now() - self._loaded_at >= self._ttl

    def refresh(self) -> None:
        entries = {entry.id: entry for entry in self._loader()}
        self._entries = entries
        self._loaded_at = self._clock.now()
        self._refreshes += 1
        logger.debug(f"category_cache_refresh: size={len(entries)}")

    def invalidate(self) -> None:
        self._loaded_at = None

    def _ensure_fresh(self) -> None:
        if self._is_stale():
            self.refresh()

    def get(self, category_id: Optional[int]) -> Optional[CategoryEntry]:
        if category_id is None:
            return None
        self._ensure_fresh()
        entry = self._entries.get(category_id)
        if entry is None:
            self._misses += 1
        else:
            self._hits += 1
        return entry

    def lineage(self, category_id: Optional[int]) -> list[int]:
        """The category followed by its ancestors, nearest first."""
        lineage: list[int] = []
        current = category_id
        while current is not None and current not in lineage:
            lineage.append(current)
            entry = self.get(current)
            current = entry.parent_id if entry else None
        return lineage

    def find_by_name(self, name: str) -> Optional[CategoryEntry]:
        """Case-insensitive match, falling back to a unique match within one edit."""
        wanted = (name or "").strip().lower()
        if not wanted:
            return None
        self._ensure_fresh()
        for entry in self._entries.values():
            if entry.name.strip().lower() == wanted:
                self._hits += 1
                return entry

        best_distance: Optional[int] = None
        best: list[CategoryEntry] = []
        for entry in self._entries.values():
            dist = int(Levenshtein.distance(wanted, entry.name.strip().lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [entry]
            elif dist == best_distance:
                best.append(entry)

        if best_distance is None or best_distance > 1:
            self._misses += 1
            return None
        if len(best) > 1:
            options = ", ".join(sorted(e.name for e in best))
            raise CategoryAmbiguous(
                f"Category '{name.strip()}' is ambiguous; matches: {options}"
            )
        self._hits += 1
        return best[0]

    def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            refreshes=self._refreshes,
            size=len(self._entries),
            loaded_at=self._loaded_at,
        )
