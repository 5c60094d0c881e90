import discord
import pytest

from conftest import FakeNotifier, make_interaction, replies
from forum_exchange.claims import PendingClaimWorkflow
from forum_exchange.lifecycle import LifecycleCoordinator
from forum_exchange.models import Outcome, PostStatus
from forum_exchange.payload import Action, ActionPayload
from forum_exchange.router import EPHEMERAL_DELETE_AFTER, InteractionRouter
from forum_exchange.views import CONTACT_INFO_FIELD, CONTACT_MESSAGE_FIELD, ContactModal

pytestmark = pytest.mark.asyncio

POSTER = 10
VISITOR = 20


@pytest.fixture
def coordinator(db, gateway):
    return LifecycleCoordinator(db, gateway)


@pytest.fixture
def router(db, coordinator, notifier):
    claims = PendingClaimWorkflow(db, coordinator, expiry_minutes=5)
    return InteractionRouter(db, coordinator, claims, notifier)


async def publish(coordinator):
    result = await coordinator.create_post(
        forum_id=500, author_id=POSTER, title="Winter coat", description="Size M", category="clothing"
    )
    return result.post


def button(action, user_id, thread_id, poster_id=POSTER):
    return make_interaction(user_id, thread_id, custom_id=ActionPayload(action, poster_id).encode())


def contact_form(user_id, thread_id, info="@visitor", message="Is it warm?"):
    return make_interaction(
        user_id,
        thread_id,
        kind=discord.InteractionType.modal_submit,
        custom_id=ActionPayload(Action.CONTACT_FORM, POSTER, user_id).encode(),
        data={
            "components": [
                {"type": 1, "components": [{"type": 4, "custom_id": CONTACT_INFO_FIELD, "value": info}]},
                {"type": 1, "components": [{"type": 4, "custom_id": CONTACT_MESSAGE_FIELD, "value": message}]},
            ]
        },
    )


async def test_self_contact_is_rejected_before_notifying(router, coordinator, notifier):
    post = await publish(coordinator)
    interaction = button(Action.CONTACT, POSTER, post.thread_id)

    result = await router.dispatch(interaction)
    assert result.outcome is Outcome.VALIDATION
    assert notifier.sent == []
    assert interaction.response.modal is None
    assert interaction.response.messages[0]["ephemeral"] is True
    assert interaction.response.messages[0]["delete_after"] == EPHEMERAL_DELETE_AFTER


async def test_contact_opens_modal(router, coordinator):
    post = await publish(coordinator)
    interaction = button(Action.CONTACT, VISITOR, post.thread_id)

    assert await router.dispatch(interaction) is None
    assert isinstance(interaction.response.modal, ContactModal)


async def test_contact_submission_notifies_poster(router, coordinator, notifier):
    post = await publish(coordinator)
    interaction = contact_form(VISITOR, post.thread_id)

    result = await router.dispatch(interaction)
    assert result.ok
    assert result.warning is None
    user_id, _, embed = notifier.sent[0]
    assert user_id == POSTER
    values = [field.value for field in embed.fields]
    assert "@visitor" in values
    assert "Is it warm?" in values


async def test_contact_submission_with_closed_dms_is_soft_warning(db, coordinator, gateway):
    post = await publish(coordinator)
    router = InteractionRouter(
        db, coordinator, PendingClaimWorkflow(db, coordinator), FakeNotifier(deliver=False)
    )
    result = await router.dispatch(contact_form(VISITOR, post.thread_id))
    assert result.ok
    assert result.warning


async def test_contact_submission_requires_both_fields(router, coordinator, notifier):
    post = await publish(coordinator)
    result = await router.dispatch(contact_form(VISITOR, post.thread_id, message="  "))
    assert result.outcome is Outcome.VALIDATION
    assert notifier.sent == []


async def test_availability_check(router, coordinator, notifier):
    post = await publish(coordinator)

    own = await router.dispatch(button(Action.AVAILABILITY, POSTER, post.thread_id))
    assert own.outcome is Outcome.VALIDATION
    assert notifier.sent == []

    result = await router.dispatch(button(Action.AVAILABILITY, VISITOR, post.thread_id))
    assert result.ok
    user_id, _, embed = notifier.sent[0]
    assert user_id == POSTER
    assert any(post.jump_url in field.value for field in embed.fields)


async def test_close_by_poster_completes_post(router, coordinator, db, gateway):
    post = await publish(coordinator)
    interaction = button(Action.CLOSE, POSTER, post.thread_id)

    result = await router.dispatch(interaction)
    assert result.ok
    assert interaction.response.deferred
    assert interaction.followup.last.delete_delay == EPHEMERAL_DELETE_AFTER
    assert (await db.get_post(post.thread_id)).status is PostStatus.COMPLETED
    assert gateway.threads[post.thread_id].components_cleared


async def test_close_by_other_user_is_denied(router, coordinator, db):
    post = await publish(coordinator)
    result = await router.dispatch(button(Action.CLOSE, VISITOR, post.thread_id))
    assert result.outcome is Outcome.PERMISSION_DENIED
    assert (await db.get_post(post.thread_id)).active


async def test_close_on_completed_post_is_terminal(router, coordinator, db):
    post = await publish(coordinator)
    await router.dispatch(button(Action.CLOSE, POSTER, post.thread_id))

    result = await router.dispatch(button(Action.CLOSE, POSTER, post.thread_id))
    assert result.outcome is Outcome.ALREADY_TERMINAL
    assert len(await db.list_confirmed_exchanges()) == 1


async def test_malformed_payload_is_validation(router):
    interaction = make_interaction(VISITOR, 1, custom_id="exchange:1:close:abc")
    result = await router.dispatch(interaction)
    assert result.outcome is Outcome.VALIDATION
    assert replies(interaction)


async def test_foreign_custom_ids_are_ignored(router):
    interaction = make_interaction(VISITOR, 1, custom_id="trade:threadclose:5")
    assert await router.dispatch(interaction) is None
    assert replies(interaction) == []


async def test_action_on_wrong_interaction_type(router):
    interaction = make_interaction(
        VISITOR,
        1,
        kind=discord.InteractionType.modal_submit,
        custom_id=ActionPayload(Action.CLOSE, POSTER).encode(),
    )
    result = await router.dispatch(interaction)
    assert result.outcome is Outcome.VALIDATION


async def test_claim_select_resolves_claim(router, coordinator, db):
    post = await publish(coordinator)
    await router.claims.create_claim(author_id=POSTER, channel_id=77, partner_id=VISITOR, partner_name="Vis")
    interaction = make_interaction(
        POSTER,
        77,
        custom_id=ActionPayload(Action.CLAIM_SELECT, POSTER, VISITOR).encode(),
        data={"values": [str(post.thread_id)]},
    )

    result = await router.dispatch(interaction)
    assert result.ok
    assert result.exchange.partner_id == VISITOR
    assert (await db.get_post(post.thread_id)).status is PostStatus.COMPLETED


async def test_claim_select_by_other_user_is_denied(router, coordinator):
    post = await publish(coordinator)
    interaction = make_interaction(
        VISITOR,
        77,
        custom_id=ActionPayload(Action.CLAIM_SELECT, POSTER, VISITOR).encode(),
        data={"values": [str(post.thread_id)]},
    )
    result = await router.dispatch(interaction)
    assert result.outcome is Outcome.PERMISSION_DENIED


async def test_force_status_requires_manage_threads(router, coordinator, db):
    post = await publish(coordinator)

    member = make_interaction(VISITOR, post.thread_id)
    denied = await router.force_status(member, PostStatus.PENDING)
    assert denied.outcome is Outcome.PERMISSION_DENIED

    moderator = make_interaction(99, post.thread_id, manage_threads=True)
    result = await router.force_status(moderator, PostStatus.PENDING)
    assert result.ok
    assert (await db.get_post(post.thread_id)).status is PostStatus.PENDING


async def test_force_status_on_untracked_thread(router):
    moderator = make_interaction(99, 4242, manage_threads=True)
    result = await router.force_status(moderator, PostStatus.AVAILABLE)
    assert result.outcome is Outcome.NOT_FOUND


class AckRecordingNotifier(FakeNotifier):
    def __init__(self, interaction):
        super().__init__()
        self.interaction = interaction
        self.acknowledged = []

    async def send_direct(self, user_id, *, content=None, embed=None) -> bool:
        self.acknowledged.append(self.interaction.response.is_done())
        return await super().send_direct(user_id, content=content, embed=embed)


@pytest.mark.parametrize("action", ["contact_form", "availability"])
async def test_interaction_is_acknowledged_before_direct_message(db, coordinator, action):
    post = await publish(coordinator)
    if action == "contact_form":
        interaction = contact_form(VISITOR, post.thread_id)
    else:
        interaction = button(Action.AVAILABILITY, VISITOR, post.thread_id)
    notifier = AckRecordingNotifier(interaction)
    router = InteractionRouter(db, coordinator, PendingClaimWorkflow(db, coordinator), notifier)

    result = await router.dispatch(interaction)
    assert result.ok
    assert notifier.acknowledged == [True]
    assert interaction.response.deferred
    assert interaction.followup.last.delete_delay == EPHEMERAL_DELETE_AFTER
