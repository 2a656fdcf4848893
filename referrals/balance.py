"""
Balance calculator.

Derives a referrer's paid, pending and redeemable commission strictly from
the ledger tables (Referral, Earning, ReferralRedemption). The cached
summary is never read here.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from referrals.commission import (
    DEFAULT_COMMISSION_RATE,
    ZERO,
    clamp_non_negative,
    commission_for,
    derive_investment_amount,
    effective_rate,
    to_money,
)
from referrals.database import utc_now
from referrals.exceptions import ReconciliationMismatch
from referrals.models import Earning, EarningStatus, RedemptionStatus, ReferralRedemption
from referrals.repositories import (
    EarningRepository,
    PartnerRepository,
    RedemptionRepository,
    ReferralRepository,
)


@dataclass(slots=True)
class PartnerInvestment:
    """Investment totals of one referred partner, as seen by the referrer."""

    partner_id: UUID
    commission_rate: Decimal
    paid_investment: Decimal = ZERO
    pending_investment: Decimal = ZERO


@dataclass(slots=True)
class ReferralBalance:
    referrer_id: UUID
    paid_commission: Decimal = ZERO
    pending_commission: Decimal = ZERO
    redeemed_credited: Decimal = ZERO
    pending_redemption: Decimal = ZERO
    requested_count: int = 0
    partners: dict[UUID, PartnerInvestment] = field(default_factory=dict)
    failed_redemptions: list[UUID] = field(default_factory=list)

    @property
    def available_balance(self) -> Decimal:
        return clamp_non_negative(self.paid_commission - self.redeemed_credited)

    @property
    def available_after_pending(self) -> Decimal:
        return clamp_non_negative(
            self.paid_commission - self.redeemed_credited - self.pending_redemption
        )

    @property
    def total_investment_amount(self) -> Decimal:
        return sum((p.paid_investment for p in self.partners.values()), ZERO)

    @property
    def total_commission_earned(self) -> Decimal:
        return self.paid_commission + self.pending_commission


def _investment_of(earning: Earning) -> Decimal:
    return derive_investment_amount(
        earning.investment_amount,
        earning.commission_earned,
        earning.commission_rate,
        earning.base_amount,
    )


class BalanceCalculator:
    """
    Computes a referrer's commission balance from the ledger.

    Commission is the referred partner's investment times the rate of the
    referral relationship (not the earning's own rate). Earnings flagged as
    referral redemptions never generate commission.
    """

    def __init__(
        self,
        session: AsyncSession,
        default_rate: Decimal = DEFAULT_COMMISSION_RATE,
    ) -> None:
        self.session = session
        self.default_rate = default_rate
        self.partners = PartnerRepository(session)
        self.referrals = ReferralRepository(session)
        self.earnings = EarningRepository(session)
        self.redemptions = RedemptionRepository(session)

    async def compute(self, referrer_id: UUID, reconcile: bool = True) -> ReferralBalance:
        """
        Full balance for a referrer.

        Args:
            referrer_id: Referrer partner ID
            reconcile: Fail credited redemptions whose payout is missing or
                unpaid. They are excluded from the credited total either way.

        Returns:
            ReferralBalance with money figures rounded to cents
        """
        balance = ReferralBalance(referrer_id=referrer_id)
        balance.partners = await self.referred_partners(referrer_id)

        paid = await self._invested_by_partner(balance.partners, EarningStatus.PAID)
        pending = await self._invested_by_partner(balance.partners, EarningStatus.APPROVED)

        paid_commission = ZERO
        pending_commission = ZERO
        for partner_id, info in balance.partners.items():
            info.paid_investment = paid.get(partner_id, ZERO)
            info.pending_investment = pending.get(partner_id, ZERO)
            paid_commission += commission_for(info.paid_investment, info.commission_rate)
            pending_commission += commission_for(info.pending_investment, info.commission_rate)

        balance.paid_commission = to_money(paid_commission)
        balance.pending_commission = to_money(pending_commission)

        await self._apply_redemptions(balance, reconcile)
        return balance

    async def referred_partners(self, referrer_id: UUID) -> dict[UUID, PartnerInvestment]:
        """
        Referred partners with the referrer's rate for each.

        Partners pointing at the referrer through `referred_by` but lacking a
        Referral row are included at the default rate.
        """
        partners: dict[UUID, PartnerInvestment] = {}
        for referral in await self.referrals.get_by_referrer(referrer_id):
            partners[referral.referred_partner_id] = PartnerInvestment(
                partner_id=referral.referred_partner_id,
                commission_rate=effective_rate(referral.commission_rate, self.default_rate),
            )
        for partner_id in await self.partners.referred_partner_ids(referrer_id):
            partners.setdefault(
                partner_id,
                PartnerInvestment(partner_id=partner_id, commission_rate=self.default_rate),
            )
        return partners

    async def _invested_by_partner(
        self, partners: dict[UUID, PartnerInvestment], status: EarningStatus
    ) -> dict[UUID, Decimal]:
        totals: dict[UUID, Decimal] = {}
        for earning in await self.earnings.commission_bearing(partners.keys(), status):
            totals[earning.partner_id] = totals.get(earning.partner_id, ZERO) + _investment_of(earning)
        return totals

    async def _apply_redemptions(self, balance: ReferralBalance, reconcile: bool) -> None:
        redemptions = await self.redemptions.get_by_referrer(balance.referrer_id)

        credited = [r for r in redemptions if r.counts_as_credited]
        payouts = await self.earnings.get_many(r.earning_id for r in credited)

        redeemed = ZERO
        for redemption in credited:
            try:
                self._verify_payout(redemption, payouts.get(redemption.earning_id))
            except ReconciliationMismatch as mismatch:
                logger.warning("Reconciliation mismatch: {error}", error=str(mismatch))
                if reconcile:
                    self._fail_stale(redemption, mismatch)
                    balance.failed_redemptions.append(redemption.id)
                continue
            redeemed += redemption.commission_redeemed

        requested = [r for r in redemptions if r.status == RedemptionStatus.REQUESTED]
        balance.redeemed_credited = to_money(redeemed)
        balance.pending_redemption = to_money(
            sum((r.commission_redeemed for r in requested), ZERO)
        )
        balance.requested_count = len(requested)

        if balance.failed_redemptions:
            await self.session.flush()

    @staticmethod
    def _verify_payout(redemption: ReferralRedemption, payout: Earning | None) -> None:
        if payout is None:
            raise ReconciliationMismatch(
                redemption.id, redemption.earning_id, "payout earning is missing"
            )
        if payout.status != EarningStatus.PAID:
            raise ReconciliationMismatch(
                redemption.id,
                redemption.earning_id,
                f"payout earning is {payout.status.value}",
            )

    @staticmethod
    def _fail_stale(redemption: ReferralRedemption, mismatch: ReconciliationMismatch) -> None:
        redemption.status = RedemptionStatus.FAILED
        redemption.failure_reason = f"reconciliation: {mismatch.reason}"
        redemption.updated_at = utc_now()
        logger.info(
            "Redemption {redemption_id} marked failed by reconciliation",
            redemption_id=redemption.id,
        )
