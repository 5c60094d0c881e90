"""SQLite persistence layer for exchange posts, confirmed exchanges and claims."""
from __future__ import annotations

import asyncio
import os
import sqlite3
import time
from typing import Callable, List, Optional, Tuple

import aiosqlite

from .models import (
    ClaimConflictError,
    ConfirmedExchange,
    ExchangeKind,
    ExchangePost,
    PendingClaim,
    PostStatus,
)

SECONDS_PER_DAY = 24 * 60 * 60

_POST_COLUMNS = (
    "thread_id, channel_id, guild_id, author_id, title, category, kind, status, "
    "bump_count, last_activity, created_at, is_active"
)
_EXCHANGE_COLUMNS = (
    "id, original_poster_id, original_poster_name, partner_id, partner_name, "
    "item_description, kind, category, thread_id, guild_id, confirmed_at"
)
_CLAIM_COLUMNS = (
    "id, thread_id, author_id, channel_id, partner_id, partner_name, created_at, "
    "expires_at, processed"
)


def _post_from_row(row: Tuple) -> ExchangePost:
    (
        thread_id,
        channel_id,
        guild_id,
        author_id,
        title,
        category,
        kind,
        status,
        bump_count,
        last_activity,
        created_at,
        is_active,
    ) = row
    return ExchangePost(
        thread_id=thread_id,
        channel_id=channel_id,
        guild_id=guild_id,
        author_id=author_id,
        title=title,
        category=category,
        kind=ExchangeKind(kind),
        status=PostStatus(status),
        bump_count=bump_count,
        last_activity=last_activity,
        created_at=created_at,
        active=bool(is_active),
    )


def _exchange_from_row(row: Tuple) -> ConfirmedExchange:
    return ConfirmedExchange(
        id=row[0],
        original_poster_id=row[1],
        original_poster_name=row[2],
        partner_id=row[3],
        partner_name=row[4],
        item_description=row[5],
        kind=ExchangeKind(row[6]),
        category=row[7],
        thread_id=row[8],
        guild_id=row[9],
        confirmed_at=row[10],
    )


def _claim_from_row(row: Tuple) -> PendingClaim:
    return PendingClaim(
        id=row[0],
        thread_id=row[1],
        author_id=row[2],
        channel_id=row[3],
        partner_id=row[4],
        partner_name=row[5],
        created_at=row[6],
        expires_at=row[7],
        processed=bool(row[8]),
    )


class Database:
    """Data access helper built on top of SQLite.

    Every mutation is a single conditional statement (or one transaction) so
    concurrent callers observe each other's writes instead of overwriting
    them. ``clock`` returns epoch seconds and can be swapped in tests.
    """

    def __init__(self, path: str, *, clock: Callable[[], float] = time.time) -> None:
        self.path = str(path)
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self.clock = clock
        self._lock = asyncio.Lock()

    async def setup(self) -> None:
        async with self._connect() as db:
            await db.executescript(
                """
                CREATE TABLE IF NOT EXISTS forum_posts (
                    thread_id INTEGER PRIMARY KEY,
                    channel_id INTEGER NOT NULL,
                    guild_id INTEGER NOT NULL,
                    author_id INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    category TEXT NOT NULL,
                    kind TEXT NOT NULL DEFAULT 'give',
                    status TEXT NOT NULL DEFAULT 'available',
                    bump_count INTEGER NOT NULL DEFAULT 0 CHECK (bump_count >= 0),
                    last_activity REAL NOT NULL,
                    created_at REAL NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1
                );

                CREATE INDEX IF NOT EXISTS forum_posts_activity
                    ON forum_posts(is_active, last_activity);

                CREATE TABLE IF NOT EXISTS confirmed_exchanges (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    original_poster_id INTEGER NOT NULL,
                    original_poster_name TEXT NOT NULL,
                    partner_id INTEGER,
                    partner_name TEXT NOT NULL,
                    item_description TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    category TEXT NOT NULL,
                    thread_id INTEGER NOT NULL UNIQUE,
                    guild_id INTEGER NOT NULL,
                    confirmed_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS pending_claims (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    thread_id INTEGER,
                    author_id INTEGER NOT NULL,
                    channel_id INTEGER NOT NULL,
                    partner_id INTEGER NOT NULL,
                    partner_name TEXT NOT NULL DEFAULT '',
                    created_at REAL NOT NULL,
                    expires_at REAL NOT NULL,
                    processed INTEGER NOT NULL DEFAULT 0
                );

                CREATE UNIQUE INDEX IF NOT EXISTS pending_claims_open
                    ON pending_claims(author_id, channel_id) WHERE processed = 0;

                CREATE TABLE IF NOT EXISTS guild_settings (
                    guild_id INTEGER PRIMARY KEY,
                    forum_channel_id INTEGER
                );
                """
            )
            await db.commit()

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self.path)

    # -- exchange posts -------------------------------------------------

    async def create_post(
        self,
        *,
        thread_id: int,
        channel_id: int,
        guild_id: int,
        author_id: int,
        title: str,
        category: str,
        kind: ExchangeKind = ExchangeKind.GIVE,
    ) -> ExchangePost:
        now = self.clock()
        async with self._lock:
            async with self._connect() as db:
                await db.execute(
                    f"INSERT INTO forum_posts({_POST_COLUMNS})\n"
                    "VALUES (?, ?, ?, ?, ?, ?, ?, 'available', 0, ?, ?, 1)",
                    (
                        thread_id,
                        channel_id,
                        guild_id,
                        author_id,
                        title.strip(),
                        category.strip(),
                        ExchangeKind(kind).value,
                        now,
                        now,
                    ),
                )
                await db.commit()
        post = await self.get_post(thread_id)
        assert post is not None
        return post

    async def get_post(self, thread_id: int) -> Optional[ExchangePost]:
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT {_POST_COLUMNS} FROM forum_posts WHERE thread_id = ?", (thread_id,)
            )
            row = await cursor.fetchone()
        return _post_from_row(row) if row else None

    async def update_activity(
        self, thread_id: int, *, inactive_before: float | None = None
    ) -> Optional[ExchangePost]:
        """Refresh last-activity on an active post; inactive posts are left untouched."""

        query = "UPDATE forum_posts SET last_activity = ? WHERE thread_id = ? AND is_active = 1"
        params: Tuple = (self.clock(), thread_id)
        if inactive_before is not None:
            query += " AND last_activity < ?"
            params += (inactive_before,)

        async with self._lock:
            async with self._connect() as db:
                cursor = await db.execute(query, params)
                await db.commit()
                if cursor.rowcount == 0:
                    return None
        return await self.get_post(thread_id)

    async def increment_bump(
        self, thread_id: int, *, inactive_before: float | None = None
    ) -> Optional[ExchangePost]:
        """Atomically bump an active post.

        When ``inactive_before`` is given the bump only applies if the post is
        still stale, so two sweeps racing on the same thread bump it once.
        """

        query = (
            "UPDATE forum_posts SET bump_count = bump_count + 1, last_activity = ?\n"
            "WHERE thread_id = ? AND is_active = 1"
        )
        params: Tuple = (self.clock(), thread_id)
        if inactive_before is not None:
            query += " AND last_activity < ?"
            params += (inactive_before,)

        async with self._lock:
            async with self._connect() as db:
                cursor = await db.execute(query, params)
                await db.commit()
                if cursor.rowcount == 0:
                    return None
        return await self.get_post(thread_id)

    async def set_status(self, thread_id: int, status: PostStatus) -> bool:
        """Move an active post between the non-terminal states.

        Returns ``False`` when the post is missing, inactive, or already in
        ``status``.
        """

        status = PostStatus(status)
        if status is PostStatus.COMPLETED:
            raise ValueError("use complete_post to reach the completed state")
        async with self._lock:
            async with self._connect() as db:
                cursor = await db.execute(
                    "UPDATE forum_posts SET status = ?, last_activity = ?\n"
                    "WHERE thread_id = ? AND is_active = 1 AND status != ?",
                    (status.value, self.clock(), thread_id, status.value),
                )
                await db.commit()
                return cursor.rowcount > 0

    async def complete_post(
        self,
        thread_id: int,
        *,
        record_exchange: bool = True,
        partner_id: int | None = None,
        partner_name: str = "",
        poster_name: str = "",
        kind: ExchangeKind | None = None,
    ) -> Tuple[bool, Optional[ConfirmedExchange]]:
        """Deactivate a post and record its exchange in one transaction.

        Returns ``(False, None)`` if the post was already inactive so callers
        can report the terminal state without creating a second record. A
        close without a known partner still records the exchange, with an
        empty partner id.
        """

        now = self.clock()
        exchange_id: int | None = None
        async with self._lock:
            async with self._connect() as db:
                cursor = await db.execute(
                    "UPDATE forum_posts SET status = 'completed', is_active = 0\n"
                    "WHERE thread_id = ? AND is_active = 1",
                    (thread_id,),
                )
                if cursor.rowcount == 0:
                    await db.rollback()
                    return False, None

                if record_exchange:
                    if partner_id is not None:
                        partner_label = partner_name or f"User {partner_id}"
                    else:
                        partner_label = partner_name or "Not specified"
                    cursor = await db.execute(
                        f"SELECT {_POST_COLUMNS} FROM forum_posts WHERE thread_id = ?",
                        (thread_id,),
                    )
                    post = _post_from_row(await cursor.fetchone())
                    exchange_kind = ExchangeKind(kind) if kind else post.kind
                    cursor = await db.execute(
                        "INSERT INTO confirmed_exchanges(original_poster_id, original_poster_name,\n"
                        "partner_id, partner_name, item_description, kind, category, thread_id,\n"
                        "guild_id, confirmed_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            post.author_id,
                            poster_name or f"User {post.author_id}",
                            partner_id,
                            partner_label,
                            post.title,
                            exchange_kind.value,
                            post.category,
                            thread_id,
                            post.guild_id,
                            now,
                        ),
                    )
                    exchange_id = cursor.lastrowid
                await db.commit()

        if exchange_id is None:
            return True, None
        return True, await self.get_confirmed_exchange(exchange_id)

    async def deactivate_post(self, thread_id: int) -> bool:
        """Retire a post whose thread vanished; no exchange is recorded."""

        completed, _ = await self.complete_post(thread_id, record_exchange=False)
        return completed

    async def update_post_title(self, thread_id: int, title: str) -> bool:
        async with self._lock:
            async with self._connect() as db:
                cursor = await db.execute(
                    "UPDATE forum_posts SET title = ? WHERE thread_id = ? AND is_active = 1",
                    (title.strip(), thread_id),
                )
                await db.commit()
                return cursor.rowcount > 0

    async def get_inactive_posts(self, days_inactive: float) -> List[ExchangePost]:
        """Active posts whose last activity precedes ``now - days_inactive``."""

        cutoff = self.clock() - days_inactive * SECONDS_PER_DAY
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT {_POST_COLUMNS} FROM forum_posts\n"
                "WHERE is_active = 1 AND last_activity < ? ORDER BY last_activity",
                (cutoff,),
            )
            rows = await cursor.fetchall()
        return [_post_from_row(row) for row in rows]

    async def get_posts_by_user(self, author_id: int, *, active_only: bool = False) -> List[ExchangePost]:
        query = f"SELECT {_POST_COLUMNS} FROM forum_posts WHERE author_id = ?"
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY last_activity DESC"
        async with self._connect() as db:
            cursor = await db.execute(query, (author_id,))
            rows = await cursor.fetchall()
        return [_post_from_row(row) for row in rows]

    async def get_all_active_posts(self) -> List[ExchangePost]:
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT {_POST_COLUMNS} FROM forum_posts WHERE is_active = 1\n"
                "ORDER BY last_activity DESC"
            )
            rows = await cursor.fetchall()
        return [_post_from_row(row) for row in rows]

    # -- confirmed exchanges --------------------------------------------

    async def get_confirmed_exchange(self, exchange_id: int) -> Optional[ConfirmedExchange]:
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT {_EXCHANGE_COLUMNS} FROM confirmed_exchanges WHERE id = ?",
                (exchange_id,),
            )
            row = await cursor.fetchone()
        return _exchange_from_row(row) if row else None

    async def get_exchange_for_thread(self, thread_id: int) -> Optional[ConfirmedExchange]:
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT {_EXCHANGE_COLUMNS} FROM confirmed_exchanges WHERE thread_id = ?",
                (thread_id,),
            )
            row = await cursor.fetchone()
        return _exchange_from_row(row) if row else None

    async def _select_exchanges(self, where: str, params: Tuple, limit: int | None) -> List[ConfirmedExchange]:
        query = f"SELECT {_EXCHANGE_COLUMNS} FROM confirmed_exchanges"
        if where:
            query += f" WHERE {where}"
        query += " ORDER BY confirmed_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params += (limit,)
        async with self._connect() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        return [_exchange_from_row(row) for row in rows]

    async def list_confirmed_exchanges(self, limit: int = 50) -> List[ConfirmedExchange]:
        return await self._select_exchanges("", (), limit)

    async def confirmed_exchanges_for_user(self, user_id: int, limit: int | None = None) -> List[ConfirmedExchange]:
        return await self._select_exchanges(
            "original_poster_id = ? OR partner_id = ?", (user_id, user_id), limit
        )

    async def confirmed_exchanges_by_category(self, category: str) -> List[ConfirmedExchange]:
        return await self._select_exchanges("category = ?", (category,), None)

    async def confirmed_exchanges_between(self, start: float, end: float) -> List[ConfirmedExchange]:
        return await self._select_exchanges(
            "confirmed_at >= ? AND confirmed_at <= ?", (start, end), None
        )

    # -- pending claims -------------------------------------------------

    async def create_pending_claim(
        self,
        *,
        thread_id: Optional[int],
        author_id: int,
        channel_id: int,
        partner_id: int,
        partner_name: str,
        ttl_seconds: float,
    ) -> PendingClaim:
        """Insert a claim, relying on the open-claim unique index to reject duplicates.

        Stale claims for the same pair are swept in the same transaction so an
        expired claim never blocks a new one.
        """

        now = self.clock()
        async with self._lock:
            async with self._connect() as db:
                await db.execute(
                    "DELETE FROM pending_claims WHERE author_id = ? AND channel_id = ?\n"
                    "AND (processed = 1 OR expires_at <= ?)",
                    (author_id, channel_id, now),
                )
                try:
                    cursor = await db.execute(
                        "INSERT INTO pending_claims(thread_id, author_id, channel_id, partner_id,\n"
                        "partner_name, created_at, expires_at, processed) VALUES (?, ?, ?, ?, ?, ?, ?, 0)",
                        (
                            thread_id,
                            author_id,
                            channel_id,
                            partner_id,
                            partner_name,
                            now,
                            now + ttl_seconds,
                        ),
                    )
                except sqlite3.IntegrityError as exc:
                    await db.rollback()
                    raise ClaimConflictError(author_id, channel_id) from exc
                await db.commit()
                claim_id = cursor.lastrowid

        return PendingClaim(
            id=claim_id,
            thread_id=thread_id,
            author_id=author_id,
            channel_id=channel_id,
            partner_id=partner_id,
            partner_name=partner_name,
            created_at=now,
            expires_at=now + ttl_seconds,
            processed=False,
        )

    async def get_pending_claim(self, author_id: int, channel_id: int) -> Optional[PendingClaim]:
        """Return the open claim for the pair, ignoring processed or expired rows."""

        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT {_CLAIM_COLUMNS} FROM pending_claims\n"
                "WHERE author_id = ? AND channel_id = ? AND processed = 0 AND expires_at > ?\n"
                "ORDER BY id DESC LIMIT 1",
                (author_id, channel_id, self.clock()),
            )
            row = await cursor.fetchone()
        return _claim_from_row(row) if row else None

    async def mark_claim_processed(self, claim_id: int) -> bool:
        async with self._lock:
            async with self._connect() as db:
                cursor = await db.execute(
                    "UPDATE pending_claims SET processed = 1 WHERE id = ? AND processed = 0",
                    (claim_id,),
                )
                await db.commit()
                return cursor.rowcount > 0

    async def sweep_claims(self) -> int:
        """Delete processed or expired claims; returns how many were removed."""

        async with self._lock:
            async with self._connect() as db:
                cursor = await db.execute(
                    "DELETE FROM pending_claims WHERE processed = 1 OR expires_at <= ?",
                    (self.clock(),),
                )
                await db.commit()
                return cursor.rowcount

    # -- guild settings -------------------------------------------------

    async def set_forum_channel(self, guild_id: int, channel_id: Optional[int]) -> None:
        """Persist the exchange forum channel for a guild."""

        async with self._lock:
            async with self._connect() as db:
                await db.execute(
                    "INSERT INTO guild_settings(guild_id, forum_channel_id) VALUES (?, ?)\n"
                    "ON CONFLICT(guild_id) DO UPDATE SET forum_channel_id = excluded.forum_channel_id",
                    (guild_id, channel_id),
                )
                await db.commit()

    async def get_forum_channel(self, guild_id: int) -> Optional[int]:
        """Return the configured exchange forum channel, if present."""

        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT forum_channel_id FROM guild_settings WHERE guild_id = ?", (guild_id,)
            )
            row = await cursor.fetchone()
            return row[0] if row else None
