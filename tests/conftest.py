from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, List, Optional, Sequence, Tuple

import discord
import pytest
import pytest_asyncio

from forum_exchange.database import Database
from forum_exchange.gateway import MessageSnapshot, TagInfo
from forum_exchange.lifecycle import TAG_CATALOG
from forum_exchange.models import GatewayError

DAY = 24 * 60 * 60


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class FakeThread:
    messages: List[MessageSnapshot] = field(default_factory=list)
    applied: List[int] = field(default_factory=list)
    sent: List[dict] = field(default_factory=list)
    archived: bool = False
    locked: bool = False
    components_cleared: bool = False


class FakeGateway:
    """In-memory forum; ``failures`` maps a method name to the error it raises."""

    def __init__(self, forum_id: int = 500, guild_id: int = 900):
        self.forum_id = forum_id
        self.guild_id = guild_id
        self.catalog = [TagInfo(index + 1, name) for index, (name, _) in enumerate(TAG_CATALOG)]
        self.threads: Dict[int, FakeThread] = {}
        self.failures: Dict[str, GatewayError] = {}
        self.calls: List[str] = []
        self._ids = itertools.count(10_000)

    def _check(self, name: str) -> None:
        self.calls.append(name)
        if name in self.failures:
            raise self.failures[name]

    def _thread(self, thread_id: int) -> FakeThread:
        try:
            return self.threads[thread_id]
        except KeyError:
            raise GatewayError(f"thread {thread_id} not found", not_found=True) from None

    def _writable(self, thread_id: int) -> FakeThread:
        thread = self._thread(thread_id)
        if thread.archived:
            raise GatewayError(f"thread {thread_id} is archived")
        return thread

    def tag_id(self, name: str) -> int:
        return next(tag.id for tag in self.catalog if tag.name == name)

    def add_thread(self, thread_id: int, embed: Optional[discord.Embed], applied: Sequence[int] = ()) -> FakeThread:
        thread = FakeThread(messages=[MessageSnapshot(thread_id, embed)], applied=list(applied))
        self.threads[thread_id] = thread
        return thread

    async def fetch_recent_messages(self, thread_id: int, limit: int = 10) -> List[MessageSnapshot]:
        self._check("fetch_recent_messages")
        return list(self._thread(thread_id).messages[:limit])

    async def edit_message(self, thread_id, message_id, *, embed, clear_components=False) -> None:
        self._check("edit_message")
        thread = self._writable(thread_id)
        thread.messages = [
            MessageSnapshot(m.id, embed, m.system) if m.id == message_id else m for m in thread.messages
        ]
        thread.components_cleared = thread.components_cleared or clear_components

    async def get_tags(self, thread_id: int) -> Tuple[List[TagInfo], List[int]]:
        self._check("get_tags")
        return list(self.catalog), list(self._thread(thread_id).applied)

    async def set_applied_tags(self, thread_id: int, tag_ids) -> None:
        self._check("set_applied_tags")
        self._writable(thread_id).applied = list(tag_ids)

    async def lock_thread(self, thread_id: int) -> None:
        self._check("lock_thread")
        self._thread(thread_id).locked = True

    async def archive_thread(self, thread_id: int) -> None:
        self._check("archive_thread")
        self._thread(thread_id).archived = True

    async def unarchive_thread(self, thread_id: int) -> None:
        self._check("unarchive_thread")
        self._thread(thread_id).archived = False

    async def send_message(self, thread_id, *, content=None, embed=None) -> None:
        self._check("send_message")
        self._thread(thread_id).sent.append({"content": content, "embed": embed})

    async def is_thread_archived(self, thread_id: int) -> bool:
        self._check("is_thread_archived")
        return self._thread(thread_id).archived

    async def create_thread(self, forum_id, *, name, embed, view, tag_ids) -> Tuple[int, int]:
        self._check("create_thread")
        thread_id = next(self._ids)
        thread = self.add_thread(thread_id, embed, tag_ids)
        thread.name = name
        thread.view = view
        return thread_id, self.guild_id

    async def forum_tags(self, forum_id: int) -> List[TagInfo]:
        self._check("forum_tags")
        return list(self.catalog)

    async def ensure_forum_tags(self, forum_id, wanted) -> List[TagInfo]:
        self._check("ensure_forum_tags")
        return list(self.catalog)


class FakeNotifier:
    def __init__(self, deliver: bool = True):
        self.deliver = deliver
        self.sent: List[Tuple[int, Optional[str], Optional[discord.Embed]]] = []

    async def send_direct(self, user_id: int, *, content=None, embed=None) -> bool:
        self.sent.append((user_id, content, embed))
        return self.deliver


class FakeMessage:
    def __init__(self):
        self.delete_delay = None

    async def delete(self, *, delay=None) -> None:
        self.delete_delay = delay


class FakeResponse:
    def __init__(self):
        self.done = False
        self.messages: List[dict] = []
        self.modal = None
        self.deferred = False

    def is_done(self) -> bool:
        return self.done

    async def send_message(self, **kwargs) -> None:
        self.done = True
        self.messages.append(kwargs)

    async def send_modal(self, modal) -> None:
        self.done = True
        self.modal = modal

    async def defer(self, **kwargs) -> None:
        self.done = True
        self.deferred = True


class FakeFollowup:
    def __init__(self):
        self.messages: List[dict] = []
        self.last: Optional[FakeMessage] = None

    async def send(self, **kwargs) -> FakeMessage:
        self.messages.append(kwargs)
        self.last = FakeMessage()
        return self.last


def make_user(user_id: int, *, manage_threads: bool = False) -> SimpleNamespace:
    return SimpleNamespace(
        id=user_id,
        mention=f"<@{user_id}>",
        display_name=f"user{user_id}",
        guild_permissions=SimpleNamespace(manage_threads=manage_threads),
    )


def make_interaction(
    user_id: int,
    channel_id: int,
    *,
    custom_id: Optional[str] = None,
    kind: discord.InteractionType = discord.InteractionType.component,
    data: Optional[dict] = None,
    manage_threads: bool = False,
) -> SimpleNamespace:
    payload = dict(data or {})
    if custom_id is not None:
        payload["custom_id"] = custom_id
    return SimpleNamespace(
        id=1,
        type=kind,
        user=make_user(user_id, manage_threads=manage_threads),
        channel_id=channel_id,
        guild=SimpleNamespace(name="Test Guild"),
        data=payload,
        response=FakeResponse(),
        followup=FakeFollowup(),
    )


def replies(interaction) -> List[discord.Embed]:
    sent = interaction.response.messages + interaction.followup.messages
    return [entry["embed"] for entry in sent]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def db(tmp_path: Path, clock: FakeClock) -> Database:
    database = Database(tmp_path / "exchange.db", clock=clock)
    await database.setup()
    return database


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()
