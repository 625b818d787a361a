"""
In-process read cache with TTL expiry and pattern-based invalidation.

One instance is built per application and handed to the services that
read or mutate cached entities. Keys are namespaced by entity, e.g.
``day:<org_id>:<user_id>:<date>`` or ``qr:<org_id>:active``. Services never
commit, so a mutating operation queues its entity prefix with
:meth:`TTLCache.invalidate_on_commit`; the prefix is dropped from the cache
only once the owning session commits, so a read racing the commit cannot
put the old state back.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from qrtrack.core.clock import Clock, utc_now

logger = logging.getLogger(__name__)

_PENDING = "qrtrack.cache.pending"


class TTLCache:
    def __init__(
        self,
        *,
        clock: Clock = utc_now,
        default_ttl: float = 60.0,
        max_entries: int = 10_000,
    ) -> None:
        self._clock = clock
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def _now(self) -> float:
        return self._clock().timestamp()

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        expires_at, value = entry
        if expires_at <= self._now():
            del self._entries[key]
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires_at = self._now() + (self._default_ttl if ttl is None else ttl)
        self._entries[key] = (expires_at, value)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate(self, prefix: str) -> int:
        """Drop every key starting with *prefix*; returns how many were removed."""
        matching = [k for k in self._entries if k.startswith(prefix)]
        for key in matching:
            del self._entries[key]
        if matching:
            logger.debug("Invalidated %d cache entries for %s", len(matching), prefix)
        return len(matching)

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict[str, int]:
        return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses}

    def invalidate_on_commit(self, db: AsyncSession | Session, prefix: str) -> None:
        """Queue *prefix* for invalidation when *db* commits; a rollback discards it."""
        session = db.sync_session if isinstance(db, AsyncSession) else db
        session.info.setdefault(_PENDING, []).append((self, prefix))


@event.listens_for(Session, "after_commit")
def _flush_pending_invalidations(session: Session) -> None:
    for cache, prefix in session.info.pop(_PENDING, ()):
        cache.invalidate(prefix)


@event.listens_for(Session, "after_rollback")
def _drop_pending_invalidations(session: Session) -> None:
    session.info.pop(_PENDING, None)
