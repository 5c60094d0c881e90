"""Discord components attached to exchange posts and replies.

Components carry an encoded :class:`~forum_exchange.payload.ActionPayload`
as their custom id; clicks are handled centrally by the interaction router,
so these views only describe layout.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping

import discord

from .embeds import category_label
from .models import ExchangePost
from .payload import Action, ActionPayload

CONTACT_INFO_FIELD = "contact_info"
CONTACT_MESSAGE_FIELD = "contact_message"
MAX_SELECT_OPTIONS = 25


class BasePersistentView(discord.ui.View):
    def __init__(self, *args, **kwargs):
        kwargs.setdefault("timeout", None)
        super().__init__(*args, **kwargs)


def build_post_view(poster_id: int) -> BasePersistentView:
    view = BasePersistentView()
    view.add_item(
        discord.ui.Button(
            label="Contact Poster",
            emoji="📩",
            style=discord.ButtonStyle.primary,
            custom_id=ActionPayload(Action.CONTACT, poster_id).encode(),
        )
    )
    view.add_item(
        discord.ui.Button(
            label="Still Available?",
            emoji="❓",
            style=discord.ButtonStyle.secondary,
            custom_id=ActionPayload(Action.AVAILABILITY, poster_id).encode(),
        )
    )
    view.add_item(
        discord.ui.Button(
            label="Close Post",
            emoji="🔒",
            style=discord.ButtonStyle.danger,
            custom_id=ActionPayload(Action.CLOSE, poster_id).encode(),
        )
    )
    return view


class ContactModal(discord.ui.Modal):
    def __init__(self, poster_id: int, claimer_id: int):
        super().__init__(
            title="Contact Poster",
            custom_id=ActionPayload(Action.CONTACT_FORM, poster_id, claimer_id).encode(),
        )
        self.contact_info = discord.ui.TextInput(
            label="Your contact info",
            placeholder="Discord handle, phone, or email",
            custom_id=CONTACT_INFO_FIELD,
            max_length=200,
        )
        self.contact_message = discord.ui.TextInput(
            label="Message",
            placeholder="Let the poster know what you're interested in",
            custom_id=CONTACT_MESSAGE_FIELD,
            style=discord.TextStyle.paragraph,
            max_length=1000,
        )
        self.add_item(self.contact_info)
        self.add_item(self.contact_message)


def read_modal_fields(data: Mapping[str, Any]) -> Dict[str, str]:
    """Collect ``custom_id -> value`` from a raw modal submission payload."""

    values: Dict[str, str] = {}

    def walk(components: Iterable[Mapping[str, Any]]) -> None:
        for component in components:
            if "custom_id" in component and "value" in component:
                values[component["custom_id"]] = component["value"] or ""
            walk(component.get("components") or [])
            nested = component.get("component")
            if isinstance(nested, Mapping):
                walk([nested])

    walk(data.get("components") or [])
    return values


class ClaimPostSelectView(discord.ui.View):
    """Second claim step: the author picks which of their posts was exchanged."""

    def __init__(self, author_id: int, partner_id: int, posts: Iterable[ExchangePost], *, timeout: float):
        super().__init__(timeout=timeout)
        options = [
            discord.SelectOption(
                label=post.title[:100],
                value=str(post.thread_id),
                description=f"{category_label(post.category)} • {post.status.label}"[:100],
            )
            for post in list(posts)[:MAX_SELECT_OPTIONS]
        ]
        self.add_item(
            discord.ui.Select(
                placeholder="Which post did you exchange?",
                options=options,
                custom_id=ActionPayload(Action.CLAIM_SELECT, author_id, partner_id).encode(),
            )
        )
