"""Discord bot entrypoint and command registration."""
from __future__ import annotations

import logging
from typing import List, Optional

import discord
from discord import app_commands
from discord.ext import commands
from rapidfuzz import fuzz, process

from .cache import SettingsCache
from .claims import PendingClaimWorkflow
from .config import Settings, load_settings
from .database import Database
from .embeds import CATEGORY_NAMES, format_exchange_history, info_embed
from .gateway import DiscordForumGateway, DiscordNotifier
from .geocode import NeighborhoodResolver
from .lifecycle import TAG_CATALOG, LifecycleCoordinator
from .models import ExchangeResult, GatewayError, Outcome, PostStatus
from .router import EPHEMERAL_DELETE_AFTER, InteractionRouter
from .scheduler import AutoBumpScheduler
from .views import ClaimPostSelectView

_log = logging.getLogger(__name__)
HISTORY_LIMIT = 10


class ExchangeBot(commands.Bot):
    """Discord bot that runs the community exchange forum."""

    def __init__(self, settings: Settings, db: Database) -> None:
        intents = discord.Intents.default()
        super().__init__(command_prefix=commands.when_mentioned, intents=intents)
        self.settings = settings
        self.db = db
        self.settings_cache = SettingsCache(db, ttl_seconds=settings.settings_cache_ttl_seconds)
        self.gateway = DiscordForumGateway(self)
        self.notifier = DiscordNotifier(self)
        self.geocoder = NeighborhoodResolver()
        self.coordinator = LifecycleCoordinator(db, self.gateway, geocoder=self.geocoder)
        self.claims = PendingClaimWorkflow(db, self.coordinator, expiry_minutes=settings.claim_expiry_minutes)
        self.router = InteractionRouter(db, self.coordinator, self.claims, self.notifier)
        self.scheduler = AutoBumpScheduler(
            db,
            self.coordinator,
            self.gateway,
            notifier=self.notifier,
            claims=self.claims,
            days_inactive=settings.bump_days_inactive,
            max_bumps=settings.max_auto_bumps,
            interval_minutes=settings.bump_interval_minutes,
            claim_sweep_minutes=settings.claim_sweep_minutes,
            wait_until_ready=self.wait_until_ready,
        )

    async def setup_hook(self) -> None:
        await self.db.setup()
        self.tree.add_command(ExchangeGroup(self))
        await self.tree.sync()
        _log.info("Slash commands synced")
        self.scheduler.start()

    async def close(self) -> None:
        self.scheduler.stop()
        await self.geocoder.close()
        await super().close()

    async def on_interaction(self, interaction: discord.Interaction) -> None:
        if interaction.type in (discord.InteractionType.component, discord.InteractionType.modal_submit):
            await self.router.dispatch(interaction)

    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot or not isinstance(message.channel, discord.Thread):
            return
        await self.coordinator.touch(message.channel.id)


async def _category_autocomplete(
    interaction: discord.Interaction, current: str
) -> List[app_commands.Choice[str]]:
    if not current.strip():
        return [app_commands.Choice(name=label, value=key) for key, label in CATEGORY_NAMES.items()]
    matches = process.extract(current, CATEGORY_NAMES, scorer=fuzz.WRatio, limit=len(CATEGORY_NAMES))
    return [app_commands.Choice(name=label, value=key) for label, score, key in matches if score >= 50]


class ExchangeGroup(app_commands.Group):
    def __init__(self, bot: ExchangeBot):
        super().__init__(name="exchange", description="Community exchange forum", guild_only=True)
        self.bot = bot

    async def _reply(self, interaction: discord.Interaction, result: ExchangeResult) -> None:
        await self.bot.router.reply(interaction, result)

    @app_commands.command(name="setup", description="Use a forum channel for exchange posts")
    @app_commands.checks.has_permissions(manage_guild=True)
    @app_commands.describe(forum="Forum channel where exchange posts are created")
    async def setup_forum(self, interaction: discord.Interaction, forum: discord.ForumChannel):
        await interaction.response.defer(ephemeral=True, thinking=True)
        await self.bot.settings_cache.set_forum_channel(interaction.guild_id, forum.id)
        try:
            tags = await self.bot.gateway.ensure_forum_tags(forum.id, TAG_CATALOG)
        except GatewayError as exc:
            _log.warning("Could not install exchange tags on %s: %s", forum.id, exc)
            await self._reply(
                interaction,
                ExchangeResult.success(
                    f"Exchange posts will be created in {forum.mention}.",
                    warning="The forum tags could not be created. Check my Manage Channels permission.",
                ),
            )
            return
        await self._reply(
            interaction,
            ExchangeResult.success(
                f"Exchange posts will be created in {forum.mention} ({len(tags)} tags available)."
            ),
        )

    @app_commands.command(name="post", description="Create an exchange post")
    @app_commands.describe(
        title="What are you offering or looking for?",
        description="Condition, size, pickup details...",
        category="Item category",
        kind="Give away, request, or trade (guessed from the title when omitted)",
        location="Neighbourhood or Google Maps link",
        latitude="Pickup latitude; the neighbourhood is looked up from the coordinates",
        longitude="Pickup longitude",
        image="Optional photo of the item",
    )
    @app_commands.autocomplete(category=_category_autocomplete)
    @app_commands.choices(
        kind=[
            app_commands.Choice(name="Give", value="give"),
            app_commands.Choice(name="Request", value="request"),
            app_commands.Choice(name="Trade", value="trade"),
        ]
    )
    async def post(
        self,
        interaction: discord.Interaction,
        title: str,
        description: str,
        category: str,
        kind: Optional[app_commands.Choice[str]] = None,
        location: Optional[str] = None,
        latitude: Optional[app_commands.Range[float, -90.0, 90.0]] = None,
        longitude: Optional[app_commands.Range[float, -180.0, 180.0]] = None,
        image: Optional[discord.Attachment] = None,
    ):
        forum_id = await self.bot.settings_cache.get_forum_channel(interaction.guild_id)
        if forum_id is None:
            await self._reply(
                interaction,
                ExchangeResult.failure(
                    Outcome.NOT_FOUND, "No exchange forum is configured. Ask an admin to run `/exchange setup`."
                ),
            )
            return
        if image is not None and not (image.content_type or "").startswith("image/"):
            await self._reply(interaction, ExchangeResult.failure(Outcome.VALIDATION, "Please attach an image file."))
            return
        if (latitude is None) != (longitude is None):
            await self._reply(
                interaction,
                ExchangeResult.failure(Outcome.VALIDATION, "Give both latitude and longitude, or neither."),
            )
            return

        await interaction.response.defer(ephemeral=True, thinking=True)
        result = await self.bot.coordinator.create_post(
            forum_id=forum_id,
            author_id=interaction.user.id,
            title=title,
            description=description,
            category=category,
            kind=kind.value if kind else None,
            location=location,
            latitude=latitude,
            longitude=longitude,
            image_url=image.url if image else None,
        )
        await self._reply(interaction, result)

    @app_commands.command(name="claim", description="Record who you completed an exchange with")
    @app_commands.describe(partner="The member you exchanged with")
    async def claim(self, interaction: discord.Interaction, partner: discord.Member):
        posts = await self.bot.db.get_posts_by_user(interaction.user.id, active_only=True)
        if not posts:
            await self._reply(
                interaction, ExchangeResult.failure(Outcome.NOT_FOUND, "You have no open exchange posts.")
            )
            return

        here = interaction.channel_id if any(p.thread_id == interaction.channel_id for p in posts) else None
        result = await self.bot.claims.create_claim(
            author_id=interaction.user.id,
            channel_id=interaction.channel_id,
            partner_id=partner.id,
            partner_name=partner.display_name,
            thread_id=here,
        )
        if not result.ok:
            await self._reply(interaction, result)
            return

        minutes = self.bot.settings.claim_expiry_minutes
        await interaction.response.send_message(
            embed=info_embed(
                "🤝 Claim started",
                f"Pick the post you exchanged with {partner.mention}. This menu expires in {minutes} minute(s).",
            ),
            view=ClaimPostSelectView(
                interaction.user.id, partner.id, posts, timeout=self.bot.claims.expiry_seconds
            ),
            ephemeral=True,
            delete_after=self.bot.claims.expiry_seconds,
        )

    @app_commands.command(name="force-available", description="Moderator: mark this post available")
    async def force_available(self, interaction: discord.Interaction):
        await self.bot.router.force_status(interaction, PostStatus.AVAILABLE)

    @app_commands.command(name="force-pending", description="Moderator: mark this post pending")
    async def force_pending(self, interaction: discord.Interaction):
        await self.bot.router.force_status(interaction, PostStatus.PENDING)

    @app_commands.command(name="reconcile", description="Moderator: redraw this post's status and tags")
    @app_commands.checks.has_permissions(manage_threads=True)
    async def reconcile(self, interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True, thinking=True)
        result = await self.bot.coordinator.reconcile(interaction.channel_id)
        await self._reply(interaction, result)

    @app_commands.command(name="history", description="Show recent confirmed exchanges")
    @app_commands.describe(user="Only show exchanges involving this member")
    async def history(self, interaction: discord.Interaction, user: Optional[discord.Member] = None):
        if user is not None:
            entries = await self.bot.db.confirmed_exchanges_for_user(user.id, limit=HISTORY_LIMIT)
            title = f"📜 Exchanges with {user.display_name}"
        else:
            entries = await self.bot.db.list_confirmed_exchanges(limit=HISTORY_LIMIT)
            title = "📜 Recent exchanges"
        await interaction.response.send_message(
            embed=info_embed(title, format_exchange_history(entries)),
            ephemeral=True,
            delete_after=EPHEMERAL_DELETE_AFTER,
        )

    @app_commands.command(name="bump-status", description="Show auto-bump statistics")
    @app_commands.checks.has_permissions(manage_guild=True)
    @app_commands.describe(force="Run a sweep right now")
    async def bump_status(self, interaction: discord.Interaction, force: bool = False):
        scheduler = self.bot.scheduler
        await interaction.response.defer(ephemeral=True, thinking=True)
        lines = []
        if force:
            report = await scheduler.run_sweep()
            lines.append(
                f"Sweep finished: {report.checked} stale, {len(report.bumped)} bumped, "
                f"{len(report.escalated)} escalated, {len(report.deactivated)} retired."
            )
        stats = scheduler.stats
        last = f"<t:{int(stats.last_check)}:R>" if stats.last_check else "never"
        lines.extend(
            [
                f"**Running:** {'yes' if scheduler.running else 'no'}",
                f"**Interval:** every {scheduler.interval_minutes} minute(s)",
                f"**Threshold:** {scheduler.days_inactive} day(s) without activity",
                f"**Last check:** {last}",
                f"**Checks:** {stats.total_checks} | **Bumps:** {stats.total_bumps} | "
                f"**Escalations:** {stats.total_escalations} | **Retired:** {stats.total_deactivated}",
            ]
        )
        message = await interaction.followup.send(
            embed=info_embed("🔼 Auto-bump", "\n".join(lines)), ephemeral=True, wait=True
        )
        await message.delete(delay=EPHEMERAL_DELETE_AFTER)


def run_bot() -> None:
    logging.basicConfig(level=logging.INFO)
    settings = load_settings()
    bot = ExchangeBot(settings, Database(settings.database_path))
    bot.run(settings.discord_token)


if __name__ == "__main__":
    run_bot()
