"""Adapters between the exchange core and the Discord API.

The coordinator only talks to :class:`ForumGateway` and
:class:`NotificationChannel`; the Discord-backed implementations translate
``discord.HTTPException`` into :class:`~forum_exchange.models.GatewayError`.
"""
from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional, Protocol, Sequence, Tuple

import discord

from .models import GatewayError

_log = logging.getLogger(__name__)

MAX_FORUM_TAGS = 20
MAX_APPLIED_TAGS = 5


@dataclass(frozen=True)
class TagInfo:
    id: int
    name: str


@dataclass(frozen=True)
class MessageSnapshot:
    id: int
    embed: Optional[discord.Embed]
    system: bool = False


class ForumGateway(Protocol):
    async def fetch_recent_messages(self, thread_id: int, limit: int = 10) -> List[MessageSnapshot]: ...

    async def edit_message(
        self, thread_id: int, message_id: int, *, embed: discord.Embed, clear_components: bool = False
    ) -> None: ...

    async def get_tags(self, thread_id: int) -> Tuple[List[TagInfo], List[int]]: ...

    async def set_applied_tags(self, thread_id: int, tag_ids: Sequence[int]) -> None: ...

    async def lock_thread(self, thread_id: int) -> None: ...

    async def archive_thread(self, thread_id: int) -> None: ...

    async def unarchive_thread(self, thread_id: int) -> None: ...

    async def send_message(
        self,
        thread_id: int,
        *,
        content: str | None = None,
        embed: discord.Embed | None = None,
    ) -> None: ...

    async def is_thread_archived(self, thread_id: int) -> bool: ...

    async def create_thread(
        self,
        forum_id: int,
        *,
        name: str,
        embed: discord.Embed,
        view: discord.ui.View | None,
        tag_ids: Sequence[int],
    ) -> Tuple[int, int]: ...

    async def forum_tags(self, forum_id: int) -> List[TagInfo]: ...

    async def ensure_forum_tags(self, forum_id: int, wanted: Sequence[Tuple[str, str]]) -> List[TagInfo]: ...


class NotificationChannel(Protocol):
    async def send_direct(
        self, user_id: int, *, content: str | None = None, embed: discord.Embed | None = None
    ) -> bool: ...


@contextlib.contextmanager
def _translate(action: str, target: int) -> Iterator[None]:
    try:
        yield
    except discord.NotFound as exc:
        raise GatewayError(f"{action}: {target} not found", not_found=True) from exc
    except discord.Forbidden as exc:
        raise GatewayError(f"{action}: missing permission on {target}", forbidden=True) from exc
    except discord.HTTPException as exc:
        raise GatewayError(f"{action} failed for {target}: {exc}") from exc


class DiscordForumGateway:
    """:class:`ForumGateway` backed by a connected ``discord.Client``."""

    def __init__(self, client: discord.Client) -> None:
        self.client = client

    async def _channel(self, channel_id: int):
        channel = self.client.get_channel(channel_id)
        if channel is None:
            with _translate("fetch channel", channel_id):
                channel = await self.client.fetch_channel(channel_id)
        return channel

    async def _thread(self, thread_id: int) -> discord.Thread:
        channel = await self._channel(thread_id)
        if not isinstance(channel, discord.Thread):
            raise GatewayError(f"channel {thread_id} is not a thread", not_found=True)
        return channel

    async def _forum(self, forum_id: int) -> discord.ForumChannel:
        channel = await self._channel(forum_id)
        if not isinstance(channel, discord.ForumChannel):
            raise GatewayError(f"channel {forum_id} is not a forum", not_found=True)
        return channel

    async def fetch_recent_messages(self, thread_id: int, limit: int = 10) -> List[MessageSnapshot]:
        thread = await self._thread(thread_id)
        snapshots: List[MessageSnapshot] = []
        with _translate("read history", thread_id):
            async for message in thread.history(limit=limit, oldest_first=True):
                snapshots.append(
                    MessageSnapshot(
                        id=message.id,
                        embed=message.embeds[0] if message.embeds else None,
                        system=message.is_system(),
                    )
                )
        return snapshots

    async def edit_message(
        self, thread_id: int, message_id: int, *, embed: discord.Embed, clear_components: bool = False
    ) -> None:
        thread = await self._thread(thread_id)
        message = thread.get_partial_message(message_id)
        with _translate("edit message", message_id):
            if clear_components:
                await message.edit(embed=embed, view=None)
            else:
                await message.edit(embed=embed)

    async def get_tags(self, thread_id: int) -> Tuple[List[TagInfo], List[int]]:
        thread = await self._thread(thread_id)
        parent = thread.parent
        if not isinstance(parent, discord.ForumChannel):
            return [], []
        catalog = [TagInfo(tag.id, tag.name) for tag in parent.available_tags]
        return catalog, [tag.id for tag in thread.applied_tags]

    async def set_applied_tags(self, thread_id: int, tag_ids: Sequence[int]) -> None:
        thread = await self._thread(thread_id)
        parent = thread.parent
        if not isinstance(parent, discord.ForumChannel):
            raise GatewayError(f"thread {thread_id} does not belong to a forum")
        by_id = {tag.id: tag for tag in parent.available_tags}
        tags = [by_id[tag_id] for tag_id in tag_ids if tag_id in by_id][:MAX_APPLIED_TAGS]
        with _translate("apply tags", thread_id):
            await thread.edit(applied_tags=tags)

    async def lock_thread(self, thread_id: int) -> None:
        thread = await self._thread(thread_id)
        with _translate("lock thread", thread_id):
            await thread.edit(locked=True)

    async def archive_thread(self, thread_id: int) -> None:
        thread = await self._thread(thread_id)
        with _translate("archive thread", thread_id):
            await thread.edit(archived=True)

    async def unarchive_thread(self, thread_id: int) -> None:
        thread = await self._thread(thread_id)
        if not thread.archived:
            return
        with _translate("unarchive thread", thread_id):
            await thread.edit(archived=False)

    async def send_message(
        self,
        thread_id: int,
        *,
        content: str | None = None,
        embed: discord.Embed | None = None,
    ) -> None:
        thread = await self._thread(thread_id)
        kwargs = {"content": content}
        if embed is not None:
            kwargs["embed"] = embed
        with _translate("send message", thread_id):
            await thread.send(**kwargs)

    async def is_thread_archived(self, thread_id: int) -> bool:
        thread = await self._thread(thread_id)
        return bool(thread.archived)

    async def create_thread(
        self,
        forum_id: int,
        *,
        name: str,
        embed: discord.Embed,
        view: discord.ui.View | None,
        tag_ids: Sequence[int],
    ) -> Tuple[int, int]:
        forum = await self._forum(forum_id)
        by_id = {tag.id: tag for tag in forum.available_tags}
        tags = [by_id[tag_id] for tag_id in tag_ids if tag_id in by_id][:MAX_APPLIED_TAGS]
        kwargs = {"name": name[:100], "embed": embed, "applied_tags": tags}
        if view is not None:
            kwargs["view"] = view
        with _translate("create thread", forum_id):
            created = await forum.create_thread(**kwargs)

        try:
            await created.message.pin()
        except discord.HTTPException:
            _log.warning("Failed to pin starter message in thread %s", created.thread.id)
        return created.thread.id, created.thread.guild.id

    async def forum_tags(self, forum_id: int) -> List[TagInfo]:
        forum = await self._forum(forum_id)
        return [TagInfo(tag.id, tag.name) for tag in forum.available_tags]

    async def ensure_forum_tags(self, forum_id: int, wanted: Sequence[Tuple[str, str]]) -> List[TagInfo]:
        """Create any missing ``(name, emoji)`` tags, keeping the existing ones."""

        forum = await self._forum(forum_id)
        current = list(forum.available_tags)
        existing = {tag.name.lower() for tag in current}
        missing = []
        for name, emoji in wanted:
            if name.lower() in existing:
                continue
            if len(current) + len(missing) >= MAX_FORUM_TAGS:
                _log.warning("Forum %s is full; skipping tag %s", forum_id, name)
                continue
            missing.append(discord.ForumTag(name=name, emoji=emoji))
            existing.add(name.lower())

        if missing:
            # All tags go in one edit; the channel cache lags behind per-tag creates.
            with _translate("create tags", forum_id):
                edited = await forum.edit(available_tags=current + missing)
            if edited is not None:
                current = list(edited.available_tags)
        return [TagInfo(tag.id, tag.name) for tag in current]


class DiscordNotifier:
    """Direct-message delivery; a closed inbox is reported, never raised."""

    def __init__(self, client: discord.Client) -> None:
        self.client = client

    async def send_direct(
        self, user_id: int, *, content: str | None = None, embed: discord.Embed | None = None
    ) -> bool:
        try:
            user = self.client.get_user(user_id) or await self.client.fetch_user(user_id)
            kwargs = {"content": content}
            if embed is not None:
                kwargs["embed"] = embed
            await user.send(**kwargs)
        except discord.HTTPException:
            _log.warning("Failed to send direct message to %s", user_id)
            return False
        return True
