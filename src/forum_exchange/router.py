"""Dispatch of component and modal interactions to exchange handlers."""
from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Optional, Tuple

import discord

from .claims import PendingClaimWorkflow
from .database import Database
from .embeds import availability_embed, contact_request_embed, info_embed
from .gateway import NotificationChannel
from .lifecycle import LifecycleCoordinator
from .models import ExchangeResult, Outcome, PostStatus
from .payload import Action, ActionPayload, PayloadError, decode, is_exchange_custom_id
from .views import CONTACT_INFO_FIELD, CONTACT_MESSAGE_FIELD, ContactModal, read_modal_fields

_log = logging.getLogger(__name__)

EPHEMERAL_DELETE_AFTER = 120
DM_DISABLED_WARNING = "Could not notify the poster: their direct messages are disabled."

OUTCOME_TITLES = {
    Outcome.OK: "✅ Done",
    Outcome.VALIDATION: "⚠️ Can't do that",
    Outcome.NOT_FOUND: "🔍 Not found",
    Outcome.ALREADY_TERMINAL: "ℹ️ Nothing to change",
    Outcome.PERMISSION_DENIED: "🚫 Not allowed",
    Outcome.EXPIRED: "⌛ Expired",
    Outcome.GATEWAY_ERROR: "⚠️ Discord error",
    Outcome.CONFLICT: "⏳ Already in progress",
}

Handler = Callable[[discord.Interaction, ActionPayload], Awaitable[Optional[ExchangeResult]]]


def result_embed(result: ExchangeResult) -> discord.Embed:
    description = result.message
    if result.warning:
        description = f"{description}\n\n⚠️ {result.warning}".strip()
    return info_embed(OUTCOME_TITLES[result.outcome], description)


def _can_manage_threads(user: discord.abc.User) -> bool:
    permissions = getattr(user, "guild_permissions", None)
    return bool(getattr(permissions, "manage_threads", False))


class InteractionRouter:
    """Routes exchange interactions by ``(interaction type, action)``.

    Handlers hold no locks. Each one re-reads the post (or claim) right
    before acting and relies on the store's conditional updates, so a
    second concurrent click sees the first one's result and stops.
    """

    def __init__(
        self,
        db: Database,
        coordinator: LifecycleCoordinator,
        claims: PendingClaimWorkflow,
        notifier: NotificationChannel,
        *,
        delete_after: float = EPHEMERAL_DELETE_AFTER,
    ) -> None:
        self.db = db
        self.coordinator = coordinator
        self.claims = claims
        self.notifier = notifier
        self.delete_after = delete_after
        self._handlers: Dict[Tuple[discord.InteractionType, Action], Handler] = {
            (discord.InteractionType.component, Action.CONTACT): self.handle_contact,
            (discord.InteractionType.component, Action.AVAILABILITY): self.handle_availability,
            (discord.InteractionType.component, Action.CLOSE): self.handle_close,
            (discord.InteractionType.component, Action.CLAIM_SELECT): self.handle_claim_select,
            (discord.InteractionType.modal_submit, Action.CONTACT_FORM): self.handle_contact_form,
        }

    async def dispatch(self, interaction: discord.Interaction) -> Optional[ExchangeResult]:
        """Handle an interaction if it carries an exchange payload.

        Returns ``None`` when the interaction is not ours or when the handler
        already answered it (for example by opening a modal).
        """

        data = interaction.data or {}
        custom_id = data.get("custom_id")
        if not is_exchange_custom_id(custom_id):
            return None

        try:
            payload = decode(custom_id)
        except PayloadError as exc:
            _log.warning("Rejected malformed payload %r: %s", custom_id, exc)
            result = ExchangeResult.failure(Outcome.VALIDATION, "This control is no longer valid.")
            await self.reply(interaction, result)
            return result

        handler = self._handlers.get((interaction.type, payload.action))
        if handler is None:
            result = ExchangeResult.failure(Outcome.VALIDATION, "This control is not supported here.")
            await self.reply(interaction, result)
            return result

        result = await handler(interaction, payload)
        if result is not None:
            await self.reply(interaction, result)
        return result

    async def reply(self, interaction: discord.Interaction, result: ExchangeResult) -> None:
        embed = result_embed(result)
        try:
            if interaction.response.is_done():
                message = await interaction.followup.send(embed=embed, ephemeral=True, wait=True)
                await message.delete(delay=self.delete_after)
            else:
                await interaction.response.send_message(
                    embed=embed, ephemeral=True, delete_after=self.delete_after
                )
        except discord.HTTPException:
            _log.warning("Failed to answer interaction %s", interaction.id)

    # -- handlers -------------------------------------------------------

    async def handle_contact(
        self, interaction: discord.Interaction, payload: ActionPayload
    ) -> Optional[ExchangeResult]:
        if interaction.user.id == payload.poster_id:
            return ExchangeResult.failure(Outcome.VALIDATION, "You can't contact yourself about your own post.")
        post = await self.db.get_post(interaction.channel_id)
        if post is None:
            return ExchangeResult.failure(Outcome.NOT_FOUND, "This post is no longer tracked.")
        if not post.active:
            return ExchangeResult.failure(Outcome.ALREADY_TERMINAL, "This exchange is already completed.", post=post)
        await interaction.response.send_modal(ContactModal(payload.poster_id, interaction.user.id))
        return None

    async def handle_contact_form(
        self, interaction: discord.Interaction, payload: ActionPayload
    ) -> ExchangeResult:
        if payload.claimer_id != interaction.user.id:
            return ExchangeResult.failure(Outcome.VALIDATION, "This form was opened by someone else.")
        if interaction.user.id == payload.poster_id:
            return ExchangeResult.failure(Outcome.VALIDATION, "You can't contact yourself about your own post.")

        fields = read_modal_fields(interaction.data or {})
        contact_info = fields.get(CONTACT_INFO_FIELD, "").strip()
        message = fields.get(CONTACT_MESSAGE_FIELD, "").strip()
        if not contact_info or not message:
            return ExchangeResult.failure(Outcome.VALIDATION, "Please fill in both your contact info and a message.")

        post = await self.db.get_post(interaction.channel_id)
        if post is None:
            return ExchangeResult.failure(Outcome.NOT_FOUND, "This post is no longer tracked.")

        await interaction.response.defer(ephemeral=True, thinking=True)
        delivered = await self.notifier.send_direct(
            post.author_id,
            embed=contact_request_embed(post, interaction.user.mention, contact_info, message),
        )
        if not delivered:
            return ExchangeResult.success(
                "Your request was received.", post=post, warning=DM_DISABLED_WARNING
            )
        return ExchangeResult.success("Your message was sent to the poster.", post=post)

    async def handle_availability(
        self, interaction: discord.Interaction, payload: ActionPayload
    ) -> ExchangeResult:
        if interaction.user.id == payload.poster_id:
            return ExchangeResult.failure(Outcome.VALIDATION, "This is your own post.")
        post = await self.db.get_post(interaction.channel_id)
        if post is None:
            return ExchangeResult.failure(Outcome.NOT_FOUND, "This post is no longer tracked.")
        if not post.active:
            return ExchangeResult.failure(Outcome.ALREADY_TERMINAL, "This exchange is already completed.", post=post)

        guild_name = interaction.guild.name if interaction.guild else None
        await interaction.response.defer(ephemeral=True, thinking=True)
        delivered = await self.notifier.send_direct(
            post.author_id, embed=availability_embed(post, interaction.user.mention, guild_name)
        )
        if not delivered:
            return ExchangeResult.success("Availability check noted.", post=post, warning=DM_DISABLED_WARNING)
        return ExchangeResult.success("I've asked the poster whether this is still available.", post=post)

    async def handle_close(self, interaction: discord.Interaction, payload: ActionPayload) -> ExchangeResult:
        post = await self.db.get_post(interaction.channel_id)
        if post is None:
            return ExchangeResult.failure(Outcome.NOT_FOUND, "This post is no longer tracked.")
        if interaction.user.id != post.author_id:
            return ExchangeResult.failure(
                Outcome.PERMISSION_DENIED, "Only the original poster can close this post.", post=post
            )
        if not post.active:
            return ExchangeResult.failure(Outcome.ALREADY_TERMINAL, "This post is already completed.", post=post)

        await interaction.response.defer(ephemeral=True, thinking=True)
        return await self.coordinator.transition_to_completed(
            post.thread_id,
            actor_id=interaction.user.id,
            poster_name=interaction.user.display_name,
            strip_controls=True,
        )

    async def handle_claim_select(
        self, interaction: discord.Interaction, payload: ActionPayload
    ) -> ExchangeResult:
        if interaction.user.id != payload.poster_id:
            return ExchangeResult.failure(Outcome.PERMISSION_DENIED, "This menu belongs to someone else.")
        values = (interaction.data or {}).get("values") or []
        try:
            thread_id = int(values[0])
        except (IndexError, ValueError):
            return ExchangeResult.failure(Outcome.VALIDATION, "Pick one of your posts from the menu.")

        await interaction.response.defer(ephemeral=True, thinking=True)
        return await self.claims.resolve_claim(
            author_id=interaction.user.id,
            channel_id=interaction.channel_id,
            thread_id=thread_id,
            poster_name=interaction.user.display_name,
            partner_id=payload.claimer_id,
        )

    # -- moderator overrides --------------------------------------------

    async def force_status(self, interaction: discord.Interaction, status: PostStatus) -> ExchangeResult:
        if not _can_manage_threads(interaction.user):
            result = ExchangeResult.failure(
                Outcome.PERMISSION_DENIED, "You need the Manage Threads permission to do that."
            )
            await self.reply(interaction, result)
            return result

        await interaction.response.defer(ephemeral=True, thinking=True)
        if status is PostStatus.AVAILABLE:
            result = await self.coordinator.transition_to_available(
                interaction.channel_id, actor_id=interaction.user.id, is_moderator=True
            )
        elif status is PostStatus.PENDING:
            result = await self.coordinator.transition_to_pending(
                interaction.channel_id, actor_id=interaction.user.id, is_moderator=True
            )
        else:
            result = ExchangeResult.failure(
                Outcome.VALIDATION, "Use the Close Post button or a claim to complete an exchange."
            )
        await self.reply(interaction, result)
        return result
