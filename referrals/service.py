"""
Referral service.

Entry point used by the HTTP layer and by the payment-completion workflow.
Reads for display go through the cached summary; anything that moves money
goes through RedemptionWorkflow, which recomputes from the ledger.
"""

import re
import secrets
import time
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from referrals.balance import BalanceCalculator, ReferralBalance
from referrals.commission import (
    ZERO,
    commission_for,
    derive_investment_amount,
    effective_rate,
    to_whole,
)
from referrals.config import Settings, get_settings
from referrals.database import Database, as_utc, utc_now
from referrals.exceptions import InvalidCursorError, NotFoundError
from referrals.models import (
    Earning,
    EarningStatus,
    Partner,
    PartnerReferralSummary,
    RedemptionStatus,
    Referral,
    ReferralStatus,
)
from referrals.repositories import (
    EarningRepository,
    PartnerRepository,
    RedemptionRepository,
    ReferralRepository,
    SummaryRepository,
    decode_cursor,
    encode_cursor,
)
from referrals.schemas import (
    BackfillResult,
    EarningsPaidResult,
    PendingRedemptionsPage,
    RedemptionOut,
    RedemptionResult,
    RedemptionSummary,
    ReferralActivity,
    ReferralHistoryPage,
    ReferralOverview,
)
from referrals.summary import SummaryMaterializer
from referrals.workflow import RedemptionWorkflow

CODE_PREFIX = "PART"
CODE_ATTEMPTS = 10
RECENT_REFERRALS = 10


def _settled_at(earning: Earning) -> datetime:
    return as_utc(earning.payment_date or earning.created_at)


def _month_bounds(now: datetime) -> tuple[datetime, datetime]:
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        return start, start.replace(year=start.year + 1, month=1)
    return start, start.replace(month=start.month + 1)


def _parse_cursor(cursor: Optional[str]) -> Optional[tuple[datetime, UUID]]:
    if not cursor:
        return None
    try:
        return decode_cursor(cursor)
    except ValueError as e:
        raise InvalidCursorError(cursor) from e


class ReferralService:
    def __init__(self, database: Database, settings: Optional[Settings] = None):
        self.database = database
        self.settings = settings or get_settings()
        self.materializer = SummaryMaterializer(database, self.settings)
        self.workflow = RedemptionWorkflow(database, self.settings, self.materializer)

    # Referral codes and signup

    async def ensure_referral_code(self, partner_id: UUID) -> str:
        async with self.database.transaction() as session:
            partner = await PartnerRepository(session).get_by_id(partner_id)
            if partner is None:
                raise NotFoundError(f"Partner {partner_id} not found")
            return await self._ensure_code(session, partner)

    async def _ensure_code(self, session: AsyncSession, partner: Partner) -> str:
        if partner.referral_code:
            return partner.referral_code

        partners = PartnerRepository(session)
        prefix = re.sub(r"[^a-zA-Z]", "", partner.name or "")[:3].upper() or "PAR"
        for _ in range(CODE_ATTEMPTS):
            candidate = f"{CODE_PREFIX}{prefix}{1000 + secrets.randbelow(9000)}"
            if not await partners.code_exists(candidate):
                break
        else:
            candidate = f"{CODE_PREFIX}{int(time.time() * 1000)}"

        partner.referral_code = candidate
        await session.flush()
        logger.info(
            "Assigned referral code {code} to {partner_id}",
            code=candidate,
            partner_id=partner.id,
        )
        return candidate

    async def validate_referral_code(self, code: str) -> Partner:
        async with self.database.session() as session:
            referrer = await PartnerRepository(session).get_by_code(code)
        if referrer is None:
            raise NotFoundError("Invalid referral code")
        return referrer

    async def register_signup(
        self, referred_partner_id: UUID, referral_code: Optional[str]
    ) -> Optional[Referral]:
        """
        Link a newly registered partner to the owner of `referral_code`.

        Returns the (possibly pre-existing) Referral, or None when the code
        is missing, unknown or the partner's own.
        """
        if not referral_code:
            return None

        async with self.database.transaction() as session:
            partners = PartnerRepository(session)
            referrer = await partners.get_by_code(referral_code)
            if referrer is None:
                logger.info("Signup with unknown referral code {code}", code=referral_code)
                return None

            referred = await partners.get_by_id(referred_partner_id)
            if referred is None:
                raise NotFoundError(f"Partner {referred_partner_id} not found")
            if referred.id == referrer.id:
                logger.warning("Partner {partner_id} tried to refer themselves", partner_id=referred.id)
                return None

            referrals = ReferralRepository(session)
            referral = await referrals.get_pair(referrer.id, referred.id)
            if referral is None:
                referral = await referrals.create(
                    referrer_partner_id=referrer.id,
                    referred_partner_id=referred.id,
                    referral_code=referral_code,
                    referred_partner_name=referred.name,
                    referred_partner_email=referred.email,
                    status=ReferralStatus.PENDING,
                    commission_rate=self.settings.default_commission_rate,
                )
                logger.info(
                    "Referral created: {referrer_id} -> {referred_id}",
                    referrer_id=referrer.id,
                    referred_id=referred.id,
                )

            referred.referred_by_id = referrer.id
            referred.referred_by_code = referral_code
            await SummaryRepository(session).mark_stale(referrer.id)

        self.materializer.enqueue(referrer.id)
        return referral

    # Commission propagation

    async def record_investment(self, partner_id: UUID, investment: Decimal) -> Optional[Referral]:
        """Activate the referral behind a partner's investment, if there is one."""
        async with self.database.transaction() as session:
            referral = await self._propagate(session, partner_id, Decimal(investment))
        if referral is not None:
            self.materializer.enqueue(referral.referrer_partner_id)
        return referral

    async def _propagate(
        self, session: AsyncSession, partner_id: UUID, investment: Decimal
    ) -> Optional[Referral]:
        partner = await PartnerRepository(session).get_by_id(partner_id)
        if partner is None:
            logger.info("Commission propagation skipped, partner {partner_id} unknown", partner_id=partner_id)
            return None

        referrals = ReferralRepository(session)
        if partner.referred_by_id is None:
            existing = await referrals.first_for_referred(partner_id)
            if existing is None:
                return None
            partner.referred_by_id = existing.referrer_partner_id
            partner.referred_by_code = partner.referred_by_code or existing.referral_code
        if partner.referred_by_id == partner.id:
            return None

        referral = await referrals.get_pair(partner.referred_by_id, partner_id)
        if referral is None:
            logger.info(
                "Referral {referrer_id} -> {partner_id} missing, creating it",
                referrer_id=partner.referred_by_id,
                partner_id=partner_id,
            )
            referral = await referrals.create(
                referrer_partner_id=partner.referred_by_id,
                referred_partner_id=partner_id,
                referral_code=partner.referred_by_code or "AUTO",
                referred_partner_name=partner.name or "Unknown",
                referred_partner_email=partner.email or "unknown@example.com",
                status=ReferralStatus.PENDING,
                commission_rate=self.settings.default_commission_rate,
            )

        now = utc_now()
        if referral.status == ReferralStatus.PENDING and investment > 0:
            referral.status = ReferralStatus.ACTIVE
            referral.first_investment_date = now
        referral.last_activity_date = now
        await session.flush()
        await SummaryRepository(session).mark_stale(referral.referrer_partner_id)

        rate = effective_rate(referral.commission_rate, self.settings.default_commission_rate)
        logger.info(
            "Referral commission recorded for {referrer_id}: {commission} on {investment}",
            referrer_id=referral.referrer_partner_id,
            commission=commission_for(investment, rate),
            investment=investment,
        )
        return referral

    async def on_earning_paid(self, earning_id: UUID) -> EarningsPaidResult:
        return await self.on_earnings_paid([earning_id])

    async def on_earnings_paid(self, earning_ids: list[UUID]) -> EarningsPaidResult:
        """
        React to earnings that reached `paid`.

        Payout earnings credit their redemption. Ordinary earnings propagate
        commission to the partner's referrer. Earnings that are not actually
        paid are ignored.
        """
        affected: set[UUID] = set()
        propagated = 0
        async with self.database.transaction() as session:
            earnings = await EarningRepository(session).get_many(earning_ids)
            paid = [e for e in earnings.values() if e.status == EarningStatus.PAID]

            credited = await self.workflow.credit_paid_payouts(
                session, [e for e in paid if e.is_referral_redemption]
            )
            affected.update(r.referrer_partner_id for r in credited)

            for earning in paid:
                if earning.is_referral_redemption:
                    continue
                investment = derive_investment_amount(
                    earning.investment_amount,
                    earning.commission_earned,
                    earning.commission_rate,
                    earning.base_amount,
                )
                if investment <= 0:
                    continue
                referral = await self._propagate(session, earning.partner_id, investment)
                if referral is not None:
                    propagated += 1
                    affected.add(referral.referrer_partner_id)

        missing = [i for i in earning_ids if i not in earnings]
        if missing:
            logger.warning("Paid hook got unknown earnings: {ids}", ids=missing)
        for partner_id in affected:
            self.materializer.enqueue(partner_id)

        return EarningsPaidResult(
            credited_redemptions=[r.id for r in credited],
            propagated_earnings=propagated,
            refreshed_partners=sorted(affected, key=str),
            missing_earnings=missing,
        )

    # Overview and history

    async def get_summary(self, partner_id: UUID) -> PartnerReferralSummary:
        async with self.database.session() as session:
            if await PartnerRepository(session).get_by_id(partner_id) is None:
                raise NotFoundError(f"Partner {partner_id} not found")
        return await self.materializer.get_summary(partner_id)

    async def get_balance(self, partner_id: UUID) -> ReferralBalance:
        """Live balance straight from the ledger, without reconciliation writes."""
        async with self.database.session() as session:
            return await BalanceCalculator(
                session, self.settings.default_commission_rate
            ).compute(partner_id, reconcile=False)

    async def get_overview(self, partner_id: UUID) -> ReferralOverview:
        async with self.database.transaction() as session:
            partner = await PartnerRepository(session).get_by_id(partner_id)
            if partner is None:
                raise NotFoundError(f"Partner {partner_id} not found")
            code = await self._ensure_code(session, partner)

        summary = await self.materializer.get_summary(partner_id)

        async with self.database.session() as session:
            recent = await ReferralRepository(session).page_for_referrer(
                partner_id, limit=RECENT_REFERRALS
            )
            activity = await self._activity(session, recent)

        return ReferralOverview(
            partner_id=partner_id,
            referral_code=code,
            referral_link=self.settings.referral_link(code),
            paid_commission=summary.paid_commission,
            pending_commission=summary.pending_commission,
            redeemed_credited=summary.redeemed_credited,
            pending_redemption=summary.pending_redemption,
            available_balance=summary.available_balance,
            available_after_pending=summary.available_after_pending,
            total_commission_earned=summary.total_commission_earned,
            total_investment_amount=summary.total_investment_amount,
            total_referrals=summary.total_referrals,
            active_referrals=summary.active_referrals,
            pending_referrals=summary.pending_referrals,
            inactive_referrals=summary.inactive_referrals,
            recent_referrals=activity,
            min_redeem_amount=self.settings.min_redeem_amount,
            redeem_cooldown_seconds=self.settings.redeem_cooldown_seconds,
            summary_updated_at=summary.last_updated,
        )

    async def get_history(
        self,
        partner_id: UUID,
        limit: int = 10,
        status: Optional[ReferralStatus] = None,
        cursor: Optional[str] = None,
    ) -> ReferralHistoryPage:
        position = _parse_cursor(cursor)
        limit = max(limit, 1)
        async with self.database.session() as session:
            rows = await ReferralRepository(session).page_for_referrer(
                partner_id, limit=limit + 1, status=status, cursor=position
            )
            has_more = len(rows) > limit
            rows = rows[:limit]
            activity = await self._activity(session, rows)

        next_cursor = encode_cursor(rows[-1].created_at, rows[-1].id) if has_more else None
        return ReferralHistoryPage(referrals=activity, next_cursor=next_cursor, has_more=has_more)

    async def _activity(
        self, session: AsyncSession, referrals: list[Referral]
    ) -> list[ReferralActivity]:
        if not referrals:
            return []

        partner_ids = [r.referred_partner_id for r in referrals]
        earnings = EarningRepository(session)

        paid_by_partner: dict[UUID, list[Earning]] = defaultdict(list)
        for earning in await earnings.commission_bearing(partner_ids, EarningStatus.PAID):
            paid_by_partner[earning.partner_id].append(earning)

        start, end = _month_bounds(utc_now())
        active_this_month = {
            e.partner_id for e in await earnings.paid_between(partner_ids, start, end)
        }

        result = []
        for referral in referrals:
            rate = effective_rate(referral.commission_rate, self.settings.default_commission_rate)
            invested = [
                (e, derive_investment_amount(
                    e.investment_amount, e.commission_earned, e.commission_rate, e.base_amount
                ))
                for e in paid_by_partner.get(referral.referred_partner_id, [])
            ]
            lifetime = sum((amount for _, amount in invested), ZERO)
            latest, latest_investment = max(
                invested, key=lambda pair: _settled_at(pair[0]), default=(None, ZERO)
            )

            result.append(ReferralActivity(
                id=referral.id,
                referred_partner_id=referral.referred_partner_id,
                referred_user=referral.referred_partner_name,
                email=referral.referred_partner_email,
                referral_code=referral.referral_code,
                status=referral.status,
                active_this_month=referral.referred_partner_id in active_this_month,
                registration_date=referral.registration_date,
                first_investment_date=referral.first_investment_date,
                last_activity_date=referral.last_activity_date,
                commission_rate=rate,
                latest_investment=latest_investment,
                lifetime_investment=lifetime,
                current_commission=to_whole(commission_for(latest_investment, rate)),
                total_commission=to_whole(commission_for(lifetime, rate)),
                latest_client_id=latest.client_id if latest else None,
                latest_client_name=latest.client_name if latest else None,
                created_at=referral.created_at,
            ))
        return result

    # Redemptions

    async def request_redemption(
        self,
        referrer_id: UUID,
        referral_id: UUID,
        referred_partner_id: UUID,
        amount: Optional[Decimal] = None,
        earning_id: Optional[UUID] = None,
    ) -> RedemptionResult:
        outcome = await self.workflow.request_redemption(
            referrer_id, referral_id, referred_partner_id, amount, earning_id
        )
        if outcome.was_clamped:
            message = (
                f"Requested {outcome.requested_amount} exceeds available balance; "
                f"redeemed {outcome.credited_amount}"
            )
        else:
            message = "Redemption requested successfully"
        return RedemptionResult(
            redemption_id=outcome.redemption.id,
            earning_id=outcome.earning.id,
            requested_amount=outcome.requested_amount,
            credited_amount=outcome.credited_amount,
            was_clamped=outcome.was_clamped,
            message=message,
            redemption=RedemptionOut.model_validate(outcome.redemption),
        )

    async def credit_redemption(
        self,
        redemption_id: UUID,
        transaction_ref: Optional[str] = None,
        credited_at: Optional[datetime] = None,
    ) -> RedemptionOut:
        redemption = await self.workflow.credit(redemption_id, transaction_ref, credited_at)
        return RedemptionOut.model_validate(redemption)

    async def fail_redemption(self, redemption_id: UUID, reason: Optional[str] = None) -> RedemptionOut:
        redemption = await self.workflow.fail(redemption_id, reason)
        return RedemptionOut.model_validate(redemption)

    async def list_pending_redemptions(
        self, limit: int = 20, cursor: Optional[str] = None
    ) -> PendingRedemptionsPage:
        position = _parse_cursor(cursor)
        limit = max(limit, 1)
        async with self.database.session() as session:
            rows = await RedemptionRepository(session).pending_page(limit + 1, position)
        has_more = len(rows) > limit
        rows = rows[:limit]
        return PendingRedemptionsPage(
            items=[RedemptionOut.model_validate(r) for r in rows],
            next_cursor=encode_cursor(rows[-1].created_at, rows[-1].id) if has_more else None,
        )

    async def redemption_summary(self, referrer_id: UUID) -> RedemptionSummary:
        """Redeemed commission per referral; failed redemptions are left out."""
        async with self.database.session() as session:
            redemptions = await RedemptionRepository(session).get_by_referrer(referrer_id)

        totals: dict[UUID, Decimal] = defaultdict(lambda: ZERO)
        for redemption in redemptions:
            if redemption.status == RedemptionStatus.FAILED:
                continue
            totals[redemption.referral_id] += redemption.commission_redeemed
        return RedemptionSummary(redeemed_by_referral=dict(totals), count=len(totals))

    # Maintenance

    def enqueue_summary_refresh(self, partner_id: UUID) -> bool:
        return self.materializer.enqueue(partner_id)

    async def backfill_redemption_flags(self) -> BackfillResult:
        """Flag legacy payout earnings recognised only by their label."""
        async with self.database.transaction() as session:
            flagged = await EarningRepository(session).flag_legacy_redemptions()
            stale = await SummaryRepository(session).mark_all_stale() if flagged else 0
        logger.info(
            "Backfill flagged {flagged} legacy payout earnings, {stale} summaries stale",
            flagged=flagged,
            stale=stale,
        )
        return BackfillResult(flagged_earnings=flagged, stale_summaries=stale)
