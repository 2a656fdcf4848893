"""
Referral summary materializer.

Keeps PartnerReferralSummary as an eventually consistent cache of the
balance calculator. Every refresh recomputes from the ledger; nothing is
carried over from the previous row.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from referrals.balance import BalanceCalculator
from referrals.commission import DEFAULT_COMMISSION_RATE
from referrals.config import Settings
from referrals.database import Database, as_utc, utc_now
from referrals.models import PartnerReferralSummary, ReferralStatus
from referrals.repositories import ReferralRepository, SummaryRepository


async def rebuild_summary(
    session: AsyncSession,
    partner_id: UUID,
    default_rate: Decimal = DEFAULT_COMMISSION_RATE,
) -> PartnerReferralSummary:
    """
    Recompute and upsert one partner's summary.

    The row is only written when a figure changed (or it was marked stale),
    so repeated rebuilds over an unchanged ledger leave it untouched.
    """
    balance = await BalanceCalculator(session, default_rate).compute(partner_id)
    counts = await ReferralRepository(session).count_by_status(partner_id)

    figures = {
        "paid_commission": balance.paid_commission,
        "pending_commission": balance.pending_commission,
        "redeemed_credited": balance.redeemed_credited,
        "pending_redemption": balance.pending_redemption,
        "available_balance": balance.available_balance,
        "available_after_pending": balance.available_after_pending,
        "total_referrals": sum(counts.values()),
        "active_referrals": counts[ReferralStatus.ACTIVE],
        "pending_referrals": counts[ReferralStatus.PENDING],
        "inactive_referrals": counts[ReferralStatus.INACTIVE],
        "total_investment_amount": balance.total_investment_amount,
        "total_commission_earned": balance.total_commission_earned,
    }

    summaries = SummaryRepository(session)
    summary = await summaries.get_by_id(partner_id)
    if summary is None:
        return await summaries.create(
            partner_id=partner_id, is_stale=False, last_updated=utc_now(), **figures
        )

    changed = [name for name, value in figures.items() if getattr(summary, name) != value]
    if changed or summary.is_stale:
        for name, value in figures.items():
            setattr(summary, name, value)
        summary.is_stale = False
        summary.last_updated = utc_now()
        await session.flush()
        logger.debug(
            "Summary for {partner_id} updated: {fields}",
            partner_id=partner_id,
            fields=", ".join(changed) or "stale flag",
        )
    return summary


class SummaryMaterializer:
    """
    Single background worker draining a queue of partner ids.

    Enqueues are fire-and-forget and coalesced while a partner is waiting.
    A failing or slow recompute is logged and skipped; that partner's row
    stays stale until the next enqueue or the next read that finds it stale.
    """

    def __init__(self, database: Database, settings: Settings) -> None:
        self.database = database
        self.default_rate = settings.default_commission_rate
        self._interval = settings.summary_poll_interval_seconds
        self._timeout = settings.summary_recompute_timeout_seconds
        self._max_age = timedelta(seconds=settings.summary_max_age_seconds)
        self._queue: asyncio.Queue[UUID] = asyncio.Queue(maxsize=settings.summary_queue_maxsize)
        self._queued: set[UUID] = set()
        self._task: asyncio.Task[None] | None = None
        self._stop = asyncio.Event()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def enqueue(self, partner_id: UUID | None) -> bool:
        if partner_id is None:
            return False
        if partner_id in self._queued:
            return True
        try:
            self._queue.put_nowait(partner_id)
        except asyncio.QueueFull:
            logger.warning(
                "Summary queue full, dropping refresh for {partner_id}",
                partner_id=partner_id,
            )
            return False
        self._queued.add(partner_id)
        return True

    async def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run_loop(), name="referral-summary-worker")
        logger.info("Referral summary worker started")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Referral summary worker stopped")

    async def _run_loop(self) -> None:
        while not self._stop.is_set():
            await self.process_next()
            await asyncio.sleep(self._interval)

    async def process_next(self) -> bool:
        """Refresh one queued partner. Returns False when the queue is empty."""
        try:
            partner_id = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return False
        self._queued.discard(partner_id)
        try:
            await asyncio.wait_for(self.refresh(partner_id), timeout=self._timeout)
        except TimeoutError:
            logger.error(
                "Summary refresh for {partner_id} timed out after {timeout}s",
                partner_id=partner_id,
                timeout=self._timeout,
            )
        except Exception as e:
            logger.error(
                "Summary refresh for {partner_id} failed: {error}",
                partner_id=partner_id,
                error=repr(e),
            )
        finally:
            self._queue.task_done()
        return True

    async def drain(self) -> int:
        processed = 0
        while await self.process_next():
            processed += 1
        return processed

    async def refresh(self, partner_id: UUID) -> PartnerReferralSummary:
        async with self.database.transaction() as session:
            return await rebuild_summary(session, partner_id, self.default_rate)

    async def get_summary(self, partner_id: UUID) -> PartnerReferralSummary:
        """Cached summary, recomputed on read when missing, stale or too old."""
        async with self.database.session() as session:
            summary = await SummaryRepository(session).get_by_id(partner_id)
        if summary is not None and not self._needs_refresh(summary):
            return summary
        return await self.refresh(partner_id)

    def _needs_refresh(self, summary: PartnerReferralSummary) -> bool:
        if summary.is_stale:
            return True
        return utc_now() - as_utc(summary.last_updated) > self._max_age
