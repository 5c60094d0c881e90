"""Post status state machine and display/tag synchronisation."""
from __future__ import annotations

import copy
import logging
from typing import List, Optional, Sequence, Tuple
from urllib.parse import quote_plus

import discord
from rapidfuzz import fuzz, process

from .database import Database
from .embeds import (
    CATEGORY_EMOJI,
    CATEGORY_NAMES,
    KIND_EMOJI,
    STATUS_EMOJI,
    apply_status,
    bump_notice,
    build_post_embed,
    category_label,
    completion_embed,
    status_field_index,
)
from .gateway import MAX_APPLIED_TAGS, ForumGateway, MessageSnapshot, TagInfo
from .geocode import NeighborhoodResolver, maps_url
from .models import (
    ExchangeKind,
    ExchangePost,
    ExchangeResult,
    GatewayError,
    Outcome,
    PostStatus,
)
from .views import build_post_view

_log = logging.getLogger(__name__)

TAG_MATCH_CUTOFF = 60
MAX_TITLE_LENGTH = 100

#: Tags installed on an exchange forum: categories, exchange kinds, then statuses.
TAG_CATALOG: List[Tuple[str, str]] = (
    [(CATEGORY_NAMES[key], CATEGORY_EMOJI[key]) for key in CATEGORY_NAMES]
    + [(kind.value.capitalize(), KIND_EMOJI[kind]) for kind in ExchangeKind]
    + [(status.label, STATUS_EMOJI[status]) for status in PostStatus]
)


def is_status_tag(name: str) -> bool:
    lowered = name.lower()
    return any(status.value in lowered for status in PostStatus)


def match_tag(catalog: Sequence[TagInfo], name: str) -> Optional[TagInfo]:
    """Find the catalog tag closest to ``name``, preferring a containment match."""

    lowered = name.lower()
    for tag in catalog:
        if lowered in tag.name.lower():
            return tag
    if not catalog:
        return None
    match = process.extractOne(lowered, [tag.name.lower() for tag in catalog], scorer=fuzz.WRatio)
    if not match or match[1] < TAG_MATCH_CUTOFF:
        return None
    return catalog[match[2]]


def status_tag(catalog: Sequence[TagInfo], status: PostStatus) -> Optional[TagInfo]:
    for tag in catalog:
        if status.value in tag.name.lower():
            return tag
    return None


def resolve_category(value: str) -> Optional[str]:
    """Map free text ("home", "Home & Furniture", "misc") to a category key."""

    cleaned = value.strip().lower()
    if not cleaned:
        return None
    if cleaned in CATEGORY_NAMES:
        return cleaned
    labels = {key: label.lower() for key, label in CATEGORY_NAMES.items()}
    match = process.extractOne(cleaned, labels, scorer=fuzz.WRatio)
    if not match or match[1] < TAG_MATCH_CUTOFF:
        return None
    return match[2]


def find_status_message(messages: Sequence[MessageSnapshot]) -> Optional[MessageSnapshot]:
    for message in messages:
        if message.system or message.embed is None:
            continue
        if status_field_index(message.embed) is not None:
            return message
    return None


class LifecycleCoordinator:
    """Drives every status change through the store first, then the forum.

    The stored record is authoritative. Display and tag updates are applied
    afterwards on a best-effort basis; their failures are logged and never
    undo the stored transition. :meth:`reconcile` re-renders the forum side
    from the record when the two have drifted.
    """

    def __init__(
        self,
        db: Database,
        gateway: ForumGateway,
        *,
        geocoder: NeighborhoodResolver | None = None,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.geocoder = geocoder

    # -- creation -------------------------------------------------------

    async def create_post(
        self,
        *,
        forum_id: int,
        author_id: int,
        title: str,
        description: str,
        category: str,
        kind: ExchangeKind | str | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
        location: str | None = None,
        image_url: str | None = None,
    ) -> ExchangeResult:
        title = title.strip()
        if not title:
            return ExchangeResult.failure(Outcome.VALIDATION, "A post needs a title.")
        if len(title) > MAX_TITLE_LENGTH:
            return ExchangeResult.failure(
                Outcome.VALIDATION, f"Titles are limited to {MAX_TITLE_LENGTH} characters."
            )
        category_key = resolve_category(category)
        if category_key is None:
            return ExchangeResult.failure(Outcome.VALIDATION, f"Unknown category **{category}**.")
        try:
            exchange_kind = ExchangeKind(kind) if kind else ExchangeKind.from_title(title)
        except ValueError:
            return ExchangeResult.failure(Outcome.VALIDATION, f"Unknown exchange type **{kind}**.")

        location_label = location.strip() if location else None
        location_url = None
        if latitude is not None and longitude is not None:
            if self.geocoder is not None:
                location_label = await self.geocoder.reverse(latitude, longitude)
            location_label = location_label or "View on Maps"
            location_url = maps_url(location_label, latitude, longitude)
        elif location_label:
            location_url = f"https://www.google.com/maps/search/{quote_plus(location_label)}"

        embed = build_post_embed(
            title=title,
            description=description.strip() or "No description provided.",
            category=category_key,
            kind=exchange_kind,
            author_mention=f"<@{author_id}>",
            location_label=location_label,
            location_url=location_url,
            image_url=image_url,
        )

        try:
            catalog = await self.gateway.forum_tags(forum_id)
        except GatewayError as exc:
            _log.warning("Could not read tags of forum %s: %s", forum_id, exc)
            return ExchangeResult.failure(Outcome.GATEWAY_ERROR, "The exchange forum is unavailable.")

        tag_ids: List[int] = []
        for name in (category_label(category_key), exchange_kind.value):
            tag = match_tag(catalog, name)
            if tag is not None and tag.id not in tag_ids:
                tag_ids.append(tag.id)
        available = status_tag(catalog, PostStatus.AVAILABLE)
        if available is not None:
            tag_ids.append(available.id)

        try:
            thread_id, guild_id = await self.gateway.create_thread(
                forum_id,
                name=f"{KIND_EMOJI[exchange_kind]} {title}",
                embed=embed,
                view=build_post_view(author_id),
                tag_ids=tag_ids[:MAX_APPLIED_TAGS],
            )
        except GatewayError as exc:
            _log.warning("Could not create exchange thread in forum %s: %s", forum_id, exc)
            return ExchangeResult.failure(Outcome.GATEWAY_ERROR, "Could not create the forum post.")

        post = await self.db.create_post(
            thread_id=thread_id,
            channel_id=forum_id,
            guild_id=guild_id,
            author_id=author_id,
            title=title,
            category=category_key,
            kind=exchange_kind,
        )
        _log.info("Created exchange post %s for %s in forum %s", thread_id, author_id, forum_id)
        return ExchangeResult.success(f"Your post is live: {post.jump_url}", post=post)

    # -- transitions ----------------------------------------------------

    @staticmethod
    def _check_actor(post: ExchangePost, actor_id: int | None, is_moderator: bool) -> Optional[ExchangeResult]:
        if actor_id is None or is_moderator or actor_id == post.author_id:
            return None
        return ExchangeResult.failure(
            Outcome.PERMISSION_DENIED, "Only the original poster or a moderator can do that.", post=post
        )

    async def transition_to_available(
        self, thread_id: int, *, actor_id: int | None = None, is_moderator: bool = False
    ) -> ExchangeResult:
        return await self._transition(thread_id, PostStatus.AVAILABLE, actor_id, is_moderator)

    async def transition_to_pending(
        self, thread_id: int, *, actor_id: int | None = None, is_moderator: bool = False
    ) -> ExchangeResult:
        return await self._transition(thread_id, PostStatus.PENDING, actor_id, is_moderator)

    async def _transition(
        self, thread_id: int, status: PostStatus, actor_id: int | None, is_moderator: bool
    ) -> ExchangeResult:
        post = await self.db.get_post(thread_id)
        if post is None:
            return ExchangeResult.failure(Outcome.NOT_FOUND, "This thread is not a tracked exchange post.")
        denied = self._check_actor(post, actor_id, is_moderator)
        if denied is not None:
            return denied
        if not post.active:
            return ExchangeResult.failure(Outcome.ALREADY_TERMINAL, "This post is already completed.", post=post)
        if post.status is status:
            return ExchangeResult.failure(
                Outcome.ALREADY_TERMINAL, f"This post is already {status.label.lower()}.", post=post
            )

        if not await self.db.set_status(thread_id, status):
            # Another interaction won the conditional update.
            current = await self.db.get_post(thread_id)
            return ExchangeResult.failure(
                Outcome.ALREADY_TERMINAL, "This post was updated by someone else.", post=current
            )

        post = await self.db.get_post(thread_id)
        assert post is not None
        _log.info("Post %s moved to %s by %s", thread_id, status.value, actor_id)
        failed = await self._sync(post)
        return ExchangeResult.success(
            f"Post marked as **{status.label}**.", post=post, warning=self._sync_warning(failed)
        )

    async def transition_to_completed(
        self,
        thread_id: int,
        *,
        actor_id: int | None = None,
        is_moderator: bool = False,
        partner_id: int | None = None,
        partner_name: str = "",
        poster_name: str = "",
        kind: ExchangeKind | None = None,
        strip_controls: bool = True,
    ) -> ExchangeResult:
        post = await self.db.get_post(thread_id)
        if post is None:
            return ExchangeResult.failure(Outcome.NOT_FOUND, "This thread is not a tracked exchange post.")
        denied = self._check_actor(post, actor_id, is_moderator)
        if denied is not None:
            return denied
        if not post.active:
            return ExchangeResult.failure(Outcome.ALREADY_TERMINAL, "This post is already completed.", post=post)
        if partner_id is not None and partner_id == post.author_id:
            return ExchangeResult.failure(
                Outcome.VALIDATION, "You can't complete an exchange with yourself.", post=post
            )

        completed, exchange = await self.db.complete_post(
            thread_id,
            partner_id=partner_id,
            partner_name=partner_name,
            poster_name=poster_name,
            kind=kind,
        )
        if not completed:
            current = await self.db.get_post(thread_id)
            return ExchangeResult.failure(
                Outcome.ALREADY_TERMINAL, "This post is already completed.", post=current
            )

        post = await self.db.get_post(thread_id)
        assert post is not None
        _log.info("Post %s completed by %s (partner %s)", thread_id, actor_id, partner_id)
        failed = await self._sync(post, strip_controls=strip_controls, announce_partner=partner_id, announce=True)
        return ExchangeResult.success(
            "Exchange recorded and the post has been closed.",
            post=post,
            exchange=exchange,
            warning=self._sync_warning(failed),
        )

    async def record_bump(self, thread_id: int, *, inactive_before: float | None = None) -> ExchangeResult:
        """Increment the bump counter, then post the revival notice.

        The conditional increment is the guard: a concurrent sweep that
        already bumped the thread makes this call report ``CONFLICT``.
        """

        post = await self.db.increment_bump(thread_id, inactive_before=inactive_before)
        if post is None:
            current = await self.db.get_post(thread_id)
            if current is None:
                return ExchangeResult.failure(Outcome.NOT_FOUND, "This thread is not a tracked exchange post.")
            if not current.active:
                return ExchangeResult.failure(Outcome.ALREADY_TERMINAL, "Completed posts are not bumped.", post=current)
            return ExchangeResult.failure(Outcome.CONFLICT, "This post was refreshed already.", post=current)

        warning = None
        try:
            await self.gateway.send_message(thread_id, content=bump_notice(post))
        except GatewayError as exc:
            _log.warning("Failed to post bump notice in %s: %s", thread_id, exc)
            warning = "The bump was recorded but the notice could not be posted."
        _log.info("Bumped post %s (bump #%s)", thread_id, post.bump_count)
        return ExchangeResult.success("Post bumped.", post=post, warning=warning)

    async def touch(self, thread_id: int) -> Optional[ExchangePost]:
        """Refresh last-activity for thread traffic; completed posts stay frozen."""

        return await self.db.update_activity(thread_id)

    async def reconcile(self, thread_id: int) -> ExchangeResult:
        """Re-render the status message and status tag from the stored record.

        Completed posts live in archived threads, which reject edits, so the
        thread is reopened first; the sync locks and archives it again.
        """

        post = await self.db.get_post(thread_id)
        if post is None:
            return ExchangeResult.failure(Outcome.NOT_FOUND, "This thread is not a tracked exchange post.")
        if post.is_terminal:
            try:
                await self.gateway.unarchive_thread(thread_id)
            except GatewayError as exc:
                _log.warning("Failed to reopen %s for reconciliation: %s", thread_id, exc)
                return ExchangeResult.failure(
                    Outcome.GATEWAY_ERROR, "Could not reopen the archived thread.", post=post
                )
        failed = await self._sync(post, strip_controls=post.is_terminal)
        if failed:
            return ExchangeResult.failure(
                Outcome.GATEWAY_ERROR,
                f"Could not update: {', '.join(failed)}.",
                post=post,
            )
        return ExchangeResult.success(f"Display matches the stored status (**{post.status.label}**).", post=post)

    async def deactivate_missing(self, thread_id: int) -> bool:
        """Retire a post whose thread was deleted or archived outside the bot."""

        deactivated = await self.db.deactivate_post(thread_id)
        if deactivated:
            _log.info("Deactivated post %s; its thread is gone or archived", thread_id)
        return deactivated

    # -- best-effort forum sync -----------------------------------------

    @staticmethod
    def _sync_warning(failed: Sequence[str]) -> Optional[str]:
        if not failed:
            return None
        return f"The post was updated, but the forum display lags behind ({', '.join(failed)})."

    async def _sync(
        self,
        post: ExchangePost,
        *,
        strip_controls: bool = False,
        announce: bool = False,
        announce_partner: int | None = None,
    ) -> List[str]:
        """Push ``post.status`` to the forum; returns the names of failed steps."""

        failed: List[str] = []
        try:
            await self._update_status_message(post, strip_controls=strip_controls)
        except GatewayError as exc:
            _log.warning("Failed to update status message of %s: %s", post.thread_id, exc)
            failed.append("status message")

        try:
            await self._update_status_tag(post)
        except GatewayError as exc:
            _log.warning("Failed to update status tag of %s: %s", post.thread_id, exc)
            failed.append("tags")

        if not post.is_terminal:
            return failed

        if announce:
            try:
                await self.gateway.send_message(post.thread_id, embed=completion_embed(post, announce_partner))
            except GatewayError as exc:
                _log.warning("Failed to post completion notice in %s: %s", post.thread_id, exc)
                failed.append("completion notice")

        try:
            await self.gateway.lock_thread(post.thread_id)
        except GatewayError as exc:
            if exc.forbidden:
                _log.warning("Missing permission to lock %s; archiving without lock", post.thread_id)
            else:
                _log.warning("Failed to lock %s: %s", post.thread_id, exc)
                failed.append("lock")

        try:
            await self.gateway.archive_thread(post.thread_id)
        except GatewayError as exc:
            _log.warning("Failed to archive %s: %s", post.thread_id, exc)
            failed.append("archive")
        return failed

    async def _update_status_message(self, post: ExchangePost, *, strip_controls: bool) -> None:
        messages = await self.gateway.fetch_recent_messages(post.thread_id)
        target = find_status_message(messages)
        if target is None:
            raise GatewayError(f"no status message found in {post.thread_id}", not_found=True)
        # Embed.copy() shares the field list with the fetched message.
        embed = discord.Embed.from_dict(copy.deepcopy(target.embed.to_dict()))
        apply_status(embed, post.status)
        await self.gateway.edit_message(
            post.thread_id, target.id, embed=embed, clear_components=strip_controls
        )

    async def _update_status_tag(self, post: ExchangePost) -> None:
        catalog, applied = await self.gateway.get_tags(post.thread_id)
        status_ids = {tag.id for tag in catalog if is_status_tag(tag.name)}
        others = [tag_id for tag_id in applied if tag_id not in status_ids]
        target = status_tag(catalog, post.status)
        if target is None:
            _log.warning("Forum of %s has no %s tag", post.thread_id, post.status.label)
            wanted = others[:MAX_APPLIED_TAGS]
        else:
            wanted = others[: MAX_APPLIED_TAGS - 1] + [target.id]
        if wanted == applied:
            return
        await self.gateway.set_applied_tags(post.thread_id, wanted)
