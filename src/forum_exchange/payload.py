"""Typed component payloads carried in Discord custom ids.

A payload is encoded as ``exchange:1:<action>:<poster_id>[:<claimer_id>]``.
Every segment has a fixed meaning and ids must be plain decimal snowflakes,
so decoding never depends on guessing where one field ends.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

NAMESPACE = "exchange"
VERSION = "1"
CUSTOM_ID_LIMIT = 100


class PayloadError(ValueError):
    """Raised when a custom id is not a well-formed exchange payload."""


class Action(str, enum.Enum):
    CONTACT = "contact"
    AVAILABILITY = "available"
    CLOSE = "close"
    CONTACT_FORM = "contactform"
    CLAIM_SELECT = "claimselect"

    @property
    def needs_claimer(self) -> bool:
        return self in (Action.CONTACT_FORM, Action.CLAIM_SELECT)


@dataclass(frozen=True)
class ActionPayload:
    action: Action
    poster_id: int
    claimer_id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.poster_id <= 0:
            raise PayloadError("poster id must be a positive snowflake")
        if self.action.needs_claimer and self.claimer_id is None:
            raise PayloadError(f"{self.action.value} payloads require a claimer id")
        if not self.action.needs_claimer and self.claimer_id is not None:
            raise PayloadError(f"{self.action.value} payloads do not carry a claimer id")
        if self.claimer_id is not None and self.claimer_id <= 0:
            raise PayloadError("claimer id must be a positive snowflake")

    def encode(self) -> str:
        parts = [NAMESPACE, VERSION, self.action.value, str(self.poster_id)]
        if self.claimer_id is not None:
            parts.append(str(self.claimer_id))
        custom_id = ":".join(parts)
        if len(custom_id) > CUSTOM_ID_LIMIT:
            raise PayloadError("encoded payload exceeds the custom id limit")
        return custom_id


def is_exchange_custom_id(custom_id: str | None) -> bool:
    return bool(custom_id) and custom_id.startswith(f"{NAMESPACE}:")


def _parse_snowflake(value: str) -> int:
    if not value.isdigit() or not value.isascii():
        raise PayloadError(f"invalid id segment {value!r}")
    return int(value)


def decode(custom_id: str) -> ActionPayload:
    if not custom_id or len(custom_id) > CUSTOM_ID_LIMIT:
        raise PayloadError("custom id is empty or too long")

    parts = custom_id.split(":")
    if len(parts) < 4 or parts[0] != NAMESPACE:
        raise PayloadError(f"not an exchange payload: {custom_id!r}")
    if parts[1] != VERSION:
        raise PayloadError(f"unsupported payload version {parts[1]!r}")

    try:
        action = Action(parts[2])
    except ValueError as exc:
        raise PayloadError(f"unknown action {parts[2]!r}") from exc

    expected = 5 if action.needs_claimer else 4
    if len(parts) != expected:
        raise PayloadError(f"{action.value} payload expects {expected} segments, got {len(parts)}")

    poster_id = _parse_snowflake(parts[3])
    claimer_id = _parse_snowflake(parts[4]) if action.needs_claimer else None
    return ActionPayload(action, poster_id, claimer_id)
