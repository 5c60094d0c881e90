"""Background sweeps: reviving stale posts and clearing old claims."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Set

from discord.ext import tasks

from .claims import PendingClaimWorkflow
from .database import SECONDS_PER_DAY, Database
from .embeds import stale_post_embed
from .gateway import ForumGateway, NotificationChannel
from .lifecycle import LifecycleCoordinator
from .models import ExchangePost, GatewayError

_log = logging.getLogger(__name__)


@dataclass
class BumpStats:
    last_check: Optional[float] = None
    total_checks: int = 0
    total_bumps: int = 0
    total_escalations: int = 0
    total_deactivated: int = 0


@dataclass
class SweepReport:
    checked: int = 0
    bumped: List[int] = field(default_factory=list)
    escalated: List[int] = field(default_factory=list)
    deactivated: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)


class AutoBumpScheduler:
    """Periodically bumps posts that have been quiet for ``days_inactive`` days.

    Posts already bumped ``max_bumps`` times are escalated to their author
    instead. Overlapping sweeps are safe: each bump is a conditional update
    against the staleness cutoff taken when the sweep started.
    """

    def __init__(
        self,
        db: Database,
        coordinator: LifecycleCoordinator,
        gateway: ForumGateway,
        *,
        notifier: NotificationChannel | None = None,
        claims: PendingClaimWorkflow | None = None,
        days_inactive: int = 6,
        max_bumps: int = 3,
        interval_minutes: int = 60,
        claim_sweep_minutes: int = 10,
        wait_until_ready: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.db = db
        self.coordinator = coordinator
        self.gateway = gateway
        self.notifier = notifier
        self.claims = claims
        self.days_inactive = days_inactive
        self.max_bumps = max_bumps
        self.interval_minutes = interval_minutes
        self.stats = BumpStats()
        self._wait_until_ready = wait_until_ready

        self._bump_loop = tasks.loop(minutes=interval_minutes)(self._bump_tick)
        self._bump_loop.before_loop(self._before_loop)
        self._claim_loop = tasks.loop(minutes=claim_sweep_minutes)(self._claim_tick)
        self._claim_loop.before_loop(self._before_loop)

    @property
    def running(self) -> bool:
        return self._bump_loop.is_running()

    def start(self) -> None:
        if not self._bump_loop.is_running():
            self._bump_loop.start()
        if self.claims is not None and not self._claim_loop.is_running():
            self._claim_loop.start()

    def stop(self) -> None:
        self._bump_loop.cancel()
        self._claim_loop.cancel()

    async def _before_loop(self) -> None:
        if self._wait_until_ready is not None:
            await self._wait_until_ready()

    async def _bump_tick(self) -> None:
        try:
            await self.run_sweep()
        except Exception:
            _log.exception("Auto-bump sweep failed")

    async def _claim_tick(self) -> None:
        if self.claims is None:
            return
        try:
            await self.claims.sweep()
        except Exception:
            _log.exception("Claim sweep failed")

    async def run_sweep(self) -> SweepReport:
        now = self.db.clock()
        cutoff = now - self.days_inactive * SECONDS_PER_DAY
        posts = await self.db.get_inactive_posts(self.days_inactive)
        report = SweepReport()
        seen: Set[int] = set()

        for post in posts:
            if post.thread_id in seen:
                report.skipped.append(post.thread_id)
                continue
            seen.add(post.thread_id)
            report.checked += 1
            await self._process(post, cutoff, report)

        self.stats.last_check = now
        self.stats.total_checks += 1
        self.stats.total_bumps += len(report.bumped)
        self.stats.total_escalations += len(report.escalated)
        self.stats.total_deactivated += len(report.deactivated)
        _log.info(
            "Auto-bump sweep: %s stale, %s bumped, %s escalated, %s deactivated",
            report.checked,
            len(report.bumped),
            len(report.escalated),
            len(report.deactivated),
        )
        return report

    async def _process(self, post: ExchangePost, cutoff: float, report: SweepReport) -> None:
        try:
            gone = await self.gateway.is_thread_archived(post.thread_id)
        except GatewayError as exc:
            if not exc.not_found:
                _log.warning("Could not check thread %s: %s", post.thread_id, exc)
                report.skipped.append(post.thread_id)
                return
            gone = True

        if gone:
            if await self.coordinator.deactivate_missing(post.thread_id):
                report.deactivated.append(post.thread_id)
            return

        if post.bump_count >= self.max_bumps:
            await self._escalate(post, cutoff, report)
            return

        result = await self.coordinator.record_bump(post.thread_id, inactive_before=cutoff)
        if result.ok:
            report.bumped.append(post.thread_id)
        else:
            report.skipped.append(post.thread_id)

    async def _escalate(self, post: ExchangePost, cutoff: float, report: SweepReport) -> None:
        # Refreshing activity first keeps a concurrent sweep from asking twice.
        refreshed = await self.db.update_activity(post.thread_id, inactive_before=cutoff)
        if refreshed is None:
            report.skipped.append(post.thread_id)
            return
        report.escalated.append(post.thread_id)
        if self.notifier is None:
            return
        delivered = await self.notifier.send_direct(
            post.author_id, embed=stale_post_embed(post, self.days_inactive)
        )
        if not delivered:
            _log.warning("Could not ask %s whether post %s is still available", post.author_id, post.thread_id)
