"""Embed builder utilities for consistent formatting."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Optional

import discord

from .models import ConfirmedExchange, ExchangeKind, ExchangePost, PostStatus

FOOTER_TEXT = "Community Exchange • Use the buttons below to interact with this post!"
DEFAULT_EMBED_COLOR = 0x2B2D31

STATUS_COLORS = {
    PostStatus.AVAILABLE: 0x00FF00,
    PostStatus.PENDING: 0xFFA500,
    PostStatus.COMPLETED: 0x808080,
}
STATUS_EMOJI = {
    PostStatus.AVAILABLE: "🟢",
    PostStatus.PENDING: "🟡",
    PostStatus.COMPLETED: "✅",
}
KIND_EMOJI = {
    ExchangeKind.GIVE: "🎁",
    ExchangeKind.REQUEST: "🙏",
    ExchangeKind.TRADE: "🔄",
}
KIND_COLORS = {
    ExchangeKind.GIVE: 0x00FF00,
    ExchangeKind.REQUEST: 0xFF9900,
    ExchangeKind.TRADE: 0x0099FF,
}
CATEGORY_NAMES = {
    "electronics": "Electronics",
    "clothing": "Clothing",
    "accessories": "Accessories",
    "home_furniture": "Home & Furniture",
    "footwear": "Footwear",
    "misc": "Miscellaneous",
}
CATEGORY_EMOJI = {
    "electronics": "📱",
    "clothing": "👕",
    "accessories": "💍",
    "home_furniture": "🏠",
    "footwear": "👟",
    "misc": "📦",
}


def info_embed(title: str, description: str | None = None, *, color: int = DEFAULT_EMBED_COLOR) -> discord.Embed:
    embed = discord.Embed(title=title, description=description or "", color=color)
    embed.set_footer(text="Community Exchange")
    return embed


def category_label(category: str) -> str:
    return CATEGORY_NAMES.get(category.lower(), category.replace("_", " ").title())


def status_field_name(status: PostStatus) -> str:
    return f"{STATUS_EMOJI[status]} Status"


def is_status_field(name: str | None) -> bool:
    return bool(name) and "status" in name.lower()


def status_field_index(embed: discord.Embed) -> Optional[int]:
    for index, field in enumerate(embed.fields):
        if is_status_field(field.name):
            return index
    return None


def apply_status(embed: discord.Embed, status: PostStatus) -> bool:
    """Rewrite the status field and accent colour in place.

    Returns ``False`` if the embed carries no status field.
    """

    index = status_field_index(embed)
    if index is None:
        return False
    embed.set_field_at(index, name=status_field_name(status), value=status.label, inline=True)
    embed.colour = STATUS_COLORS[status]
    return True


def build_post_embed(
    *,
    title: str,
    description: str,
    category: str,
    kind: ExchangeKind,
    author_mention: str,
    location_label: str | None = None,
    location_url: str | None = None,
    image_url: str | None = None,
) -> discord.Embed:
    embed = discord.Embed(
        title=f"{KIND_EMOJI[kind]} {title}",
        description=description,
        color=KIND_COLORS[kind],
        timestamp=datetime.now(timezone.utc),
    )
    embed.add_field(name="📦 Category", value=category_label(category), inline=True)
    embed.add_field(name="🔄 Type", value=kind.value.capitalize(), inline=True)
    embed.add_field(
        name=status_field_name(PostStatus.AVAILABLE),
        value=PostStatus.AVAILABLE.label,
        inline=True,
    )
    if location_label or location_url:
        label = location_label or "View on Maps"
        value = f"[{label}]({location_url})" if location_url else label
        embed.add_field(name="📍 Location", value=value, inline=True)
    embed.add_field(name="👤 Posted by", value=author_mention, inline=True)
    if image_url:
        embed.set_image(url=image_url)
    embed.set_footer(text=FOOTER_TEXT)
    return embed


def contact_request_embed(
    post: ExchangePost, contacter_mention: str, contact_info: str, message: str
) -> discord.Embed:
    embed = discord.Embed(
        title="📩 Contact Request",
        description="Someone wants to contact you about your exchange post!",
        color=0x0099FF,
        timestamp=datetime.now(timezone.utc),
    )
    embed.add_field(name="📝 Post Title", value=post.title, inline=False)
    embed.add_field(name="👤 Contact from", value=contacter_mention, inline=True)
    embed.add_field(name="📱 Contact Info", value=contact_info, inline=False)
    embed.add_field(name="💬 Message", value=message, inline=False)
    embed.add_field(name="🔗 View Post", value=f"[Click here]({post.jump_url})", inline=False)
    return embed


def availability_embed(post: ExchangePost, asker_mention: str, guild_name: str | None) -> discord.Embed:
    embed = discord.Embed(
        title="📋 Availability Inquiry",
        description="Someone is asking if your exchange post is still available!",
        color=0xFFA500,
        timestamp=datetime.now(timezone.utc),
    )
    embed.add_field(name="📝 Post Title", value=post.title, inline=False)
    embed.add_field(name="👤 Asked by", value=asker_mention, inline=True)
    embed.add_field(name="📍 In Server", value=guild_name or "Unknown", inline=True)
    embed.add_field(name="🔗 View Post", value=f"[Click here]({post.jump_url})", inline=False)
    return embed


def completion_embed(post: ExchangePost, partner_id: int | None) -> discord.Embed:
    embed = discord.Embed(
        title="🎉 Exchange Completed!",
        description="This exchange has been completed successfully!",
        color=0x00FF00,
        timestamp=datetime.now(timezone.utc),
    )
    embed.add_field(name="👤 Original Poster", value=f"<@{post.author_id}>", inline=True)
    if partner_id is not None:
        embed.add_field(name="🤝 Traded With", value=f"<@{partner_id}>", inline=True)
    embed.add_field(name="📦 Item", value=post.title, inline=False)
    embed.set_footer(text="Thank you for using the exchange!")
    return embed


def stale_post_embed(post: ExchangePost, days_inactive: int) -> discord.Embed:
    embed = discord.Embed(
        title="⏰ Is your post still available?",
        description=(
            f"Your exchange post **{post.title}** has been quiet for over {days_inactive} day(s) "
            f"and was already bumped {post.bump_count} time(s).\n"
            "Close it from the thread if the item is gone, or reply there to keep it fresh."
        ),
        color=0xFFA500,
    )
    embed.add_field(name="🔗 View Post", value=f"[Click here]({post.jump_url})", inline=False)
    return embed


def bump_notice(post: ExchangePost) -> str:
    return (
        f"🔼 **Bump!** This post is still open. "
        f"Interested in **{post.title}**? Use the buttons on the first message."
    )


def format_exchange_history(entries: Iterable[ConfirmedExchange]) -> str:
    lines = []
    for entry in entries:
        partner = f"<@{entry.partner_id}>" if entry.partner_id else entry.partner_name
        when = f"<t:{int(entry.confirmed_at)}:d>"
        lines.append(
            f"{KIND_EMOJI[entry.kind]} **{entry.item_description}** — "
            f"<@{entry.original_poster_id}> ↔ {partner} ({when})"
        )
    return "\n".join(lines) or "No confirmed exchanges yet."
