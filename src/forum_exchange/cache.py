"""Read-through cache for per-guild exchange settings."""
from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional, Tuple

from .database import Database

_log = logging.getLogger(__name__)


class SettingsCache:
    """Cache forum channel lookups for a bounded time.

    Writes go through :meth:`set_forum_channel` so the cached entry is
    invalidated together with the store update.
    """

    def __init__(
        self,
        db: Database,
        *,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.db = db
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[int, Tuple[float, Optional[int]]] = {}
        self.hits = 0
        self.misses = 0

    async def get_forum_channel(self, guild_id: int) -> Optional[int]:
        entry = self._entries.get(guild_id)
        now = self._clock()
        if entry is not None and entry[0] > now:
            self.hits += 1
            return entry[1]

        self.misses += 1
        channel_id = await self.db.get_forum_channel(guild_id)
        self._entries[guild_id] = (now + self.ttl_seconds, channel_id)
        return channel_id

    async def set_forum_channel(self, guild_id: int, channel_id: Optional[int]) -> None:
        await self.db.set_forum_channel(guild_id, channel_id)
        self.invalidate(guild_id)

    def invalidate(self, guild_id: int | None = None) -> None:
        if guild_id is None:
            self._entries.clear()
        else:
            self._entries.pop(guild_id, None)
        _log.debug("Invalidated settings cache for %s", guild_id if guild_id is not None else "all guilds")

    def __len__(self) -> int:
        return len(self._entries)
