"""
Redemption workflow.

requested -> credited when the payout earning is paid
requested -> failed on admin action
credited  -> failed only when reconciliation finds the payout gone

Every write decision recomputes the balance from the ledger inside the same
transaction that records the redemption. Requests from one referrer are
serialized by an in-process lock and a row lock on the referrer.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from referrals.balance import BalanceCalculator, ReferralBalance
from referrals.commission import ZERO, effective_rate, to_money
from referrals.config import Settings
from referrals.database import Database, as_utc, utc_now
from referrals.exceptions import (
    BelowMinimumError,
    CooldownError,
    DuplicateRedemptionError,
    ExceedsAvailableError,
    InvalidStateTransitionError,
    NotFoundError,
)
from referrals.locks import KeyedLock
from referrals.models import (
    Earning,
    EarningStatus,
    RedemptionStatus,
    ReferralRedemption,
)
from referrals.repositories import (
    EarningRepository,
    PartnerRepository,
    RedemptionRepository,
    ReferralRepository,
    SummaryRepository,
)
from referrals.summary import SummaryMaterializer

PAYOUT_LABEL = "Referral Earning"
PAYOUT_NOTES = "Redeemed via Refer & Earn"


@dataclass(slots=True)
class RedemptionOutcome:
    redemption: ReferralRedemption
    earning: Earning
    requested_amount: Decimal
    credited_amount: Decimal
    available_before: Decimal

    @property
    def was_clamped(self) -> bool:
        return self.credited_amount < self.requested_amount


class RedemptionWorkflow:
    def __init__(
        self,
        database: Database,
        settings: Settings,
        materializer: SummaryMaterializer,
        locks: KeyedLock | None = None,
    ) -> None:
        self.database = database
        self.settings = settings
        self.materializer = materializer
        self.locks = locks or KeyedLock()

    async def request_redemption(
        self,
        referrer_id: UUID,
        referral_id: UUID,
        referred_partner_id: UUID,
        amount: Decimal | None = None,
        earning_id: UUID | None = None,
    ) -> RedemptionOutcome:
        """
        Redeem paid commission against one referral.

        Args:
            referrer_id: Partner asking for the payout
            referral_id: Referral the redemption is booked against
            referred_partner_id: Referred partner of that referral
            amount: Commission to redeem; None redeems everything available
            earning_id: Existing payout earning to claim instead of creating one

        Returns:
            RedemptionOutcome with the amount actually redeemed

        Raises:
            NotFoundError: referrer, referral or payout earning unknown
            CooldownError: previous request is too recent
            BelowMinimumError: nothing (or too little) to redeem
            ExceedsAvailableError: amount too large and clamping disabled
            DuplicateRedemptionError: payout earning already claimed
        """
        async with self.locks.hold(referrer_id):
            async with self.database.transaction() as session:
                outcome = await self._request(
                    session, referrer_id, referral_id, referred_partner_id, amount, earning_id
                )
        self.materializer.enqueue(referrer_id)
        logger.info(
            "Redemption {redemption_id} requested by {referrer_id}: {amount}",
            redemption_id=outcome.redemption.id,
            referrer_id=referrer_id,
            amount=outcome.credited_amount,
        )
        return outcome

    async def _request(
        self,
        session: AsyncSession,
        referrer_id: UUID,
        referral_id: UUID,
        referred_partner_id: UUID,
        amount: Decimal | None,
        earning_id: UUID | None,
    ) -> RedemptionOutcome:
        if await PartnerRepository(session).lock(referrer_id) is None:
            raise NotFoundError(f"Partner {referrer_id} not found")

        referral = await ReferralRepository(session).get_by(
            id=referral_id,
            referrer_partner_id=referrer_id,
            referred_partner_id=referred_partner_id,
        )
        if referral is None:
            raise NotFoundError(
                f"Referral {referral_id} of {referrer_id} -> {referred_partner_id} not found"
            )

        redemptions = RedemptionRepository(session)
        earnings = EarningRepository(session)
        payout = None
        if earning_id is not None:
            # A claimed payout is a conflict whatever the cooldown or balance say
            if await redemptions.get_by_earning(earning_id) is not None:
                raise DuplicateRedemptionError(earning_id)
            payout = await earnings.get_by_id(earning_id)
            if payout is None or payout.partner_id != referrer_id:
                raise NotFoundError(f"Payout earning {earning_id} not found")
            if amount is None:
                amount = payout.commission_earned

        await self._check_cooldown(redemptions, referrer_id)

        balance = await BalanceCalculator(
            session, self.settings.default_commission_rate
        ).compute(referrer_id)
        requested, redeemable = self._redeemable(balance, amount)

        rate = effective_rate(referral.commission_rate, self.settings.default_commission_rate)
        if payout is None:
            payout = await earnings.create(
                partner_id=referrer_id,
                investment_amount=None,
                fund_name=PAYOUT_LABEL,
                description=PAYOUT_LABEL,
                commission_rate=rate,
                commission_earned=redeemable,
                status=EarningStatus.PENDING,
                is_referral_redemption=True,
            )
        else:
            payout.investment_amount = None
            payout.commission_earned = redeemable
            payout.is_referral_redemption = True

        invested = balance.partners.get(referred_partner_id)
        redemption = await redemptions.create(
            referrer_partner_id=referrer_id,
            referral_id=referral.id,
            referred_partner_id=referred_partner_id,
            earning_id=payout.id,
            commission_redeemed=redeemable,
            investment_amount=invested.paid_investment if invested else None,
            commission_rate=rate,
            status=RedemptionStatus.REQUESTED,
            notes=PAYOUT_NOTES,
        )
        if payout.status == EarningStatus.PAID:
            self._mark_credited(redemption, payout)
        await SummaryRepository(session).mark_stale(referrer_id)

        return RedemptionOutcome(
            redemption=redemption,
            earning=payout,
            requested_amount=requested,
            credited_amount=redeemable,
            available_before=balance.available_after_pending,
        )

    async def _check_cooldown(self, redemptions: RedemptionRepository, referrer_id: UUID) -> None:
        cooldown = self.settings.redeem_cooldown_seconds
        if cooldown <= 0:
            return
        latest = await redemptions.latest_for_referrer(referrer_id)
        if latest is None:
            return
        elapsed = (utc_now() - as_utc(latest.created_at)).total_seconds()
        if elapsed < cooldown:
            retry_after = max(1, math.ceil(cooldown - elapsed))
            logger.info(
                "Redemption by {referrer_id} rejected, cooldown {retry_after}s",
                referrer_id=referrer_id,
                retry_after=retry_after,
            )
            raise CooldownError(retry_after)

    def _redeemable(
        self, balance: ReferralBalance, amount: Decimal | None
    ) -> tuple[Decimal, Decimal]:
        available = balance.available_after_pending
        minimum = Decimal(self.settings.min_redeem_amount)

        # An in-flight request lets a referrer redeem the remainder below the minimum
        if balance.requested_count == 0 and available < minimum:
            logger.info(
                "Redemption by {referrer_id} below minimum: {available} < {minimum}",
                referrer_id=balance.referrer_id,
                available=available,
                minimum=minimum,
            )
            raise BelowMinimumError(available, minimum)

        requested = to_money(Decimal(amount)) if amount is not None else available
        redeemable = requested
        if requested > available:
            if not self.settings.redeem_clamp_to_available:
                raise ExceedsAvailableError(requested, available)
            logger.warning(
                "Redemption by {referrer_id} clamped from {requested} to {available}",
                referrer_id=balance.referrer_id,
                requested=requested,
                available=available,
            )
            redeemable = available

        if redeemable <= ZERO:
            raise BelowMinimumError(available, minimum)
        return requested, redeemable

    async def credit(
        self,
        redemption_id: UUID,
        transaction_ref: str | None = None,
        credited_at: datetime | None = None,
    ) -> ReferralRedemption:
        """
        Mark a requested redemption credited.

        Crediting an already credited redemption is a no-op. The payout
        earning must be paid, otherwise reconciliation would fail it again.
        """
        async with self.database.transaction() as session:
            redemption = await RedemptionRepository(session).get_by_id(redemption_id)
            if redemption is None:
                raise NotFoundError(f"Redemption {redemption_id} not found")
            if redemption.counts_as_credited:
                return redemption
            if not redemption.can_credit():
                raise InvalidStateTransitionError(
                    f"Cannot credit redemption in {redemption.status.value} state"
                )

            payout = await EarningRepository(session).get_by_id(redemption.earning_id)
            if payout is None or payout.status != EarningStatus.PAID:
                raise InvalidStateTransitionError(
                    f"Payout earning {redemption.earning_id} is not paid"
                )

            self._mark_credited(redemption, payout, transaction_ref, credited_at)
            await SummaryRepository(session).mark_stale(redemption.referrer_partner_id)

        self.materializer.enqueue(redemption.referrer_partner_id)
        return redemption

    async def fail(self, redemption_id: UUID, reason: str | None = None) -> ReferralRedemption:
        async with self.database.transaction() as session:
            redemption = await RedemptionRepository(session).get_by_id(redemption_id)
            if redemption is None:
                raise NotFoundError(f"Redemption {redemption_id} not found")
            if not redemption.can_fail():
                return redemption

            redemption.status = RedemptionStatus.FAILED
            if reason:
                redemption.failure_reason = reason
            redemption.updated_at = utc_now()
            await SummaryRepository(session).mark_stale(redemption.referrer_partner_id)

        self.materializer.enqueue(redemption.referrer_partner_id)
        logger.info(
            "Redemption {redemption_id} failed: {reason}",
            redemption_id=redemption_id,
            reason=reason or "no reason given",
        )
        return redemption

    async def credit_paid_payouts(
        self, session: AsyncSession, payouts: list[Earning]
    ) -> list[ReferralRedemption]:
        """
        Credit the redemptions linked to paid payout earnings.

        Runs inside the caller's transaction. Returns the redemptions credited.
        """
        paid = {e.id: e for e in payouts if e.status == EarningStatus.PAID}
        credited: list[ReferralRedemption] = []
        for redemption in await RedemptionRepository(session).get_by_earnings(paid):
            if redemption.counts_as_credited:
                continue
            if not redemption.can_credit():
                logger.warning(
                    "Payout {earning_id} paid but redemption {redemption_id} is {status}",
                    earning_id=redemption.earning_id,
                    redemption_id=redemption.id,
                    status=redemption.status.value,
                )
                continue
            self._mark_credited(redemption, paid[redemption.earning_id])
            credited.append(redemption)

        summaries = SummaryRepository(session)
        for referrer_id in {r.referrer_partner_id for r in credited}:
            await summaries.mark_stale(referrer_id)
        return credited

    @staticmethod
    def _mark_credited(
        redemption: ReferralRedemption,
        payout: Earning,
        transaction_ref: str | None = None,
        credited_at: datetime | None = None,
    ) -> None:
        redemption.status = RedemptionStatus.CREDITED
        redemption.credited_at = credited_at or utc_now()
        redemption.transaction_ref = transaction_ref or payout.transaction_id
        redemption.updated_at = utc_now()
        logger.info(
            "Redemption {redemption_id} credited ({amount})",
            redemption_id=redemption.id,
            amount=redemption.commission_redeemed,
        )

