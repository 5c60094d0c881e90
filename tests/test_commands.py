from types import SimpleNamespace

import pytest

from conftest import FakeNotifier, make_interaction, make_user
from forum_exchange.bot import ExchangeGroup
from forum_exchange.cache import SettingsCache
from forum_exchange.claims import PendingClaimWorkflow
from forum_exchange.lifecycle import LifecycleCoordinator
from forum_exchange.router import EPHEMERAL_DELETE_AFTER, InteractionRouter

pytestmark = pytest.mark.asyncio

GUILD = 900
FORUM = 500


class StubGeocoder:
    def __init__(self):
        self.lookups = []

    async def reverse(self, lat, lon):
        self.lookups.append((lat, lon))
        return "Riverside, Springfield"


@pytest.fixture
def geocoder():
    return StubGeocoder()


@pytest.fixture
def group(db, gateway, geocoder):
    coordinator = LifecycleCoordinator(db, gateway, geocoder=geocoder)
    claims = PendingClaimWorkflow(db, coordinator, expiry_minutes=5)
    bot = SimpleNamespace(
        db=db,
        coordinator=coordinator,
        claims=claims,
        router=InteractionRouter(db, coordinator, claims, FakeNotifier()),
        settings=SimpleNamespace(claim_expiry_minutes=5),
        settings_cache=SettingsCache(db),
    )
    return ExchangeGroup(bot)


def command_interaction(user_id, channel_id=FORUM):
    interaction = make_interaction(user_id, channel_id)
    interaction.guild_id = GUILD
    return interaction


async def test_post_with_coordinates_looks_up_neighbourhood(group, db, gateway, geocoder):
    await db.set_forum_channel(GUILD, FORUM)
    interaction = command_interaction(10)

    await ExchangeGroup.post.callback(
        group, interaction, "Desk lamp", "Works fine", "home", latitude=40.5, longitude=-74.25
    )

    assert geocoder.lookups == [(40.5, -74.25)]
    (thread,) = gateway.threads.values()
    values = [field.value for field in thread.messages[0].embed.fields]
    assert any("Riverside, Springfield" in value for value in values)
    assert interaction.followup.last.delete_delay == EPHEMERAL_DELETE_AFTER


async def test_post_with_half_a_coordinate_is_rejected(group, db, gateway, geocoder):
    await db.set_forum_channel(GUILD, FORUM)
    interaction = command_interaction(10)

    await ExchangeGroup.post.callback(group, interaction, "Desk lamp", "Works fine", "home", latitude=40.5)

    assert gateway.threads == {}
    assert geocoder.lookups == []
    assert interaction.response.messages[0]["delete_after"] == EPHEMERAL_DELETE_AFTER


async def test_history_reply_is_removed_after_a_while(group):
    interaction = command_interaction(10)
    await ExchangeGroup.history.callback(group, interaction)

    reply = interaction.response.messages[0]
    assert reply["ephemeral"] is True
    assert reply["delete_after"] == EPHEMERAL_DELETE_AFTER


async def test_claim_menu_is_removed_when_the_claim_expires(group, db):
    await db.set_forum_channel(GUILD, FORUM)
    await ExchangeGroup.post.callback(group, command_interaction(10), "Desk lamp", "Works fine", "home")
    interaction = command_interaction(10, channel_id=77)

    await ExchangeGroup.claim.callback(group, interaction, make_user(20))

    reply = interaction.response.messages[0]
    assert reply["ephemeral"] is True
    assert reply["delete_after"] == group.bot.claims.expiry_seconds
    assert (await db.get_pending_claim(10, 77)) is not None


async def test_claim_without_open_posts(group):
    interaction = command_interaction(10)
    await ExchangeGroup.claim.callback(group, interaction, make_user(20))

    reply = interaction.response.messages[0]
    assert reply["delete_after"] == EPHEMERAL_DELETE_AFTER
    assert "open exchange posts" in reply["embed"].description
