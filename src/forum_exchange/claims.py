"""Two-step claim flow: pick a partner, then pick the post that was exchanged."""
from __future__ import annotations

import logging

from .database import Database
from .lifecycle import LifecycleCoordinator
from .models import ClaimConflictError, ExchangeResult, Outcome

_log = logging.getLogger(__name__)


class PendingClaimWorkflow:
    """Time-bounded claims scoped to an (author, channel) pair.

    Uniqueness of the open claim per pair is enforced by the store, so two
    near-simultaneous ``create_claim`` calls cannot both succeed.
    """

    def __init__(self, db: Database, coordinator: LifecycleCoordinator, *, expiry_minutes: int = 5) -> None:
        self.db = db
        self.coordinator = coordinator
        self.expiry_seconds = expiry_minutes * 60

    async def create_claim(
        self,
        *,
        author_id: int,
        channel_id: int,
        partner_id: int,
        partner_name: str = "",
        thread_id: int | None = None,
    ) -> ExchangeResult:
        if partner_id == author_id:
            return ExchangeResult.failure(Outcome.VALIDATION, "You can't claim an exchange with yourself.")
        try:
            claim = await self.db.create_pending_claim(
                thread_id=thread_id,
                author_id=author_id,
                channel_id=channel_id,
                partner_id=partner_id,
                partner_name=partner_name,
                ttl_seconds=self.expiry_seconds,
            )
        except ClaimConflictError:
            return ExchangeResult.failure(
                Outcome.CONFLICT,
                "You already have a claim in progress here. Finish it or wait for it to expire.",
            )
        _log.info("Claim %s opened by %s with partner %s", claim.id, author_id, partner_id)
        return ExchangeResult.success("Now pick the post you exchanged.", claim=claim)

    async def resolve_claim(
        self,
        *,
        author_id: int,
        channel_id: int,
        thread_id: int | None = None,
        poster_name: str = "",
        partner_id: int | None = None,
    ) -> ExchangeResult:
        """Complete the claimed post with the partner chosen in step one.

        ``thread_id`` overrides the post recorded on the claim and
        ``partner_id``, when given, must match the claim's partner. Checks
        that do not consume the claim run first so a wrong pick can be
        retried.
        """

        claim = await self.db.get_pending_claim(author_id, channel_id)
        if claim is None:
            return ExchangeResult.failure(Outcome.EXPIRED, "This claim has expired. Start again with `/exchange claim`.")
        if partner_id is not None and partner_id != claim.partner_id:
            return ExchangeResult.failure(
                Outcome.EXPIRED, "This menu belongs to an older claim. Start again with `/exchange claim`."
            )

        target = thread_id if thread_id is not None else claim.thread_id
        if target is None:
            return ExchangeResult.failure(Outcome.VALIDATION, "Pick which post was exchanged.", claim=claim)
        post = await self.db.get_post(target)
        if post is None:
            return ExchangeResult.failure(Outcome.NOT_FOUND, "That post no longer exists.", claim=claim)
        if post.author_id != author_id:
            return ExchangeResult.failure(
                Outcome.PERMISSION_DENIED, "You can only claim your own posts.", post=post, claim=claim
            )
        if not post.active:
            return ExchangeResult.failure(
                Outcome.ALREADY_TERMINAL, "That post is already completed.", post=post, claim=claim
            )

        if not await self.db.mark_claim_processed(claim.id):
            return ExchangeResult.failure(Outcome.EXPIRED, "This claim was already used.", claim=claim)

        result = await self.coordinator.transition_to_completed(
            target,
            actor_id=author_id,
            partner_id=claim.partner_id,
            partner_name=claim.partner_name,
            poster_name=poster_name,
        )
        result.claim = claim
        return result

    async def sweep(self) -> int:
        removed = await self.db.sweep_claims()
        if removed:
            _log.info("Swept %s stale claim(s)", removed)
        return removed
