"""Records and result types shared by the exchange components."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional


class PostStatus(str, enum.Enum):
    AVAILABLE = "available"
    PENDING = "pending"
    COMPLETED = "completed"

    @property
    def label(self) -> str:
        return self.value.capitalize()


class ExchangeKind(str, enum.Enum):
    TRADE = "trade"
    GIVE = "give"
    REQUEST = "request"

    @classmethod
    def from_title(cls, title: str) -> "ExchangeKind":
        """Guess the kind of exchange from free-form post text."""

        lowered = title.lower()
        if any(word in lowered for word in ("trade", "swap", "exchange")):
            return cls.TRADE
        if any(word in lowered for word in ("iso", "looking for", "need")):
            return cls.REQUEST
        return cls.GIVE


class Outcome(str, enum.Enum):
    OK = "ok"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    ALREADY_TERMINAL = "already_terminal"
    PERMISSION_DENIED = "permission_denied"
    EXPIRED = "expired"
    GATEWAY_ERROR = "gateway_error"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class ExchangePost:
    thread_id: int
    channel_id: int
    guild_id: int
    author_id: int
    title: str
    category: str
    kind: ExchangeKind
    status: PostStatus
    bump_count: int
    last_activity: float
    created_at: float
    active: bool

    @property
    def is_terminal(self) -> bool:
        return self.status is PostStatus.COMPLETED

    @property
    def jump_url(self) -> str:
        return f"https://discord.com/channels/{self.guild_id}/{self.thread_id}"


@dataclass(frozen=True)
class ConfirmedExchange:
    id: int
    original_poster_id: int
    original_poster_name: str
    partner_id: Optional[int]
    partner_name: str
    item_description: str
    kind: ExchangeKind
    category: str
    thread_id: int
    guild_id: int
    confirmed_at: float


@dataclass(frozen=True)
class PendingClaim:
    id: int
    thread_id: Optional[int]
    author_id: int
    channel_id: int
    partner_id: int
    partner_name: str
    created_at: float
    expires_at: float
    processed: bool

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class ExchangeResult:
    """Outcome of a lifecycle operation, surfaced to whoever invoked it."""

    outcome: Outcome
    message: str = ""
    post: Optional[ExchangePost] = None
    exchange: Optional[ConfirmedExchange] = None
    claim: Optional[PendingClaim] = None
    warning: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK

    @classmethod
    def success(cls, message: str = "", **kwargs) -> "ExchangeResult":
        return cls(Outcome.OK, message, **kwargs)

    @classmethod
    def failure(cls, outcome: Outcome, message: str, **kwargs) -> "ExchangeResult":
        return cls(outcome, message, **kwargs)


class GatewayError(Exception):
    """A platform-side call failed (deleted thread, missing permission, rate limit)."""

    def __init__(self, message: str, *, not_found: bool = False, forbidden: bool = False) -> None:
        super().__init__(message)
        self.not_found = not_found
        self.forbidden = forbidden


class ClaimConflictError(Exception):
    """An unprocessed, unexpired claim already exists for the author/channel pair."""

    def __init__(self, author_id: int, channel_id: int) -> None:
        super().__init__(f"claim already pending for author {author_id} in channel {channel_id}")
        self.author_id = author_id
        self.channel_id = channel_id
