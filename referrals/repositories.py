"""
Repositories.

Data access for the referral ledger. Each repository wraps one table and an
AsyncSession owned by the caller; none of them commit.
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Any, Generic, TypeVar
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from referrals.database import Base, as_utc, utc_now
from referrals.exceptions import DuplicateRedemptionError
from referrals.models import (
    Earning,
    EarningStatus,
    Partner,
    PartnerReferralSummary,
    Referral,
    ReferralRedemption,
    ReferralStatus,
    RedemptionStatus,
)

ModelType = TypeVar("ModelType", bound=Base)

LEGACY_REDEMPTION_LABELS = ("Referal Earning", "Referral Earning")


def encode_cursor(created_at: datetime, row_id: UUID) -> str:
    return f"{as_utc(created_at).isoformat()}_{row_id}"


def decode_cursor(cursor: str) -> tuple[datetime, UUID]:
    """
    Split a `<iso timestamp>_<uuid>` cursor.

    Raises:
        ValueError: cursor is malformed
    """
    stamp, sep, raw_id = cursor.rpartition("_")
    if not sep:
        raise ValueError(f"Malformed cursor: {cursor!r}")
    return as_utc(datetime.fromisoformat(stamp)), UUID(raw_id)


def _before_cursor(model, cursor: tuple[datetime, UUID]):
    created_at, row_id = cursor
    return or_(
        model.created_at < created_at,
        and_(model.created_at == created_at, model.id < row_id),
    )


class BaseRepository(Generic[ModelType]):
    """
    Generic CRUD for one model.

    Example:
        class PartnerRepository(BaseRepository[Partner]):
            def __init__(self, session: AsyncSession):
                super().__init__(Partner, session)
    """

    def __init__(self, model: type[ModelType], session: AsyncSession) -> None:
        self.model = model
        self.session = session

    async def get_by_id(self, id: UUID) -> ModelType | None:
        return await self.session.get(self.model, id)

    async def get_by(self, **filters: Any) -> ModelType | None:
        stmt = select(self.model).filter_by(**filters)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by(self, **filters: Any) -> list[ModelType]:
        stmt = select(self.model).filter_by(**filters)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def create(self, **data: Any) -> ModelType:
        entity = self.model(**data)
        self.session.add(entity)
        await self.session.flush()
        return entity


class PartnerRepository(BaseRepository[Partner]):
    def __init__(self, session: AsyncSession) -> None:
        super().__init__(Partner, session)

    async def get_by_code(self, referral_code: str) -> Partner | None:
        return await self.get_by(referral_code=referral_code)

    async def lock(self, partner_id: UUID) -> Partner | None:
        """
        Load a partner with SELECT ... FOR UPDATE.

        Serializes redemption writes for one referrer across processes on
        databases that support row locks.
        """
        stmt = select(Partner).where(Partner.id == partner_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def code_exists(self, referral_code: str) -> bool:
        stmt = select(func.count()).select_from(Partner).where(
            Partner.referral_code == referral_code
        )
        result = await self.session.execute(stmt)
        return (result.scalar() or 0) > 0

    async def referred_partner_ids(self, referrer_id: UUID) -> list[UUID]:
        stmt = select(Partner.id).where(Partner.referred_by_id == referrer_id)
        result = await self.session.execute(stmt)
        return [row[0] for row in result.all()]

    async def get_many(self, partner_ids: Iterable[UUID]) -> dict[UUID, Partner]:
        ids = list(partner_ids)
        if not ids:
            return {}
        result = await self.session.execute(select(Partner).where(Partner.id.in_(ids)))
        return {p.id: p for p in result.scalars().all()}


class ReferralRepository(BaseRepository[Referral]):
    def __init__(self, session: AsyncSession) -> None:
        super().__init__(Referral, session)

    async def get_by_referrer(self, referrer_id: UUID) -> list[Referral]:
        return await self.find_by(referrer_partner_id=referrer_id)

    async def get_pair(self, referrer_id: UUID, referred_id: UUID) -> Referral | None:
        return await self.get_by(
            referrer_partner_id=referrer_id, referred_partner_id=referred_id
        )

    async def first_for_referred(self, referred_id: UUID) -> Referral | None:
        stmt = (
            select(Referral)
            .where(Referral.referred_partner_id == referred_id)
            .order_by(Referral.created_at)
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def count_by_status(self, referrer_id: UUID) -> dict[ReferralStatus, int]:
        stmt = (
            select(Referral.status, func.count(Referral.id).label("count"))
            .where(Referral.referrer_partner_id == referrer_id)
            .group_by(Referral.status)
        )
        result = await self.session.execute(stmt)
        counts = {status: 0 for status in ReferralStatus}
        for row in result.all():
            counts[row.status] = row.count
        return counts

    async def page_for_referrer(
        self,
        referrer_id: UUID,
        limit: int,
        status: ReferralStatus | None = None,
        cursor: tuple[datetime, UUID] | None = None,
    ) -> list[Referral]:
        """Newest first, ordered by (created_at, id) descending."""
        stmt = select(Referral).where(Referral.referrer_partner_id == referrer_id)
        if status is not None:
            stmt = stmt.where(Referral.status == status)
        if cursor is not None:
            stmt = stmt.where(_before_cursor(Referral, cursor))
        stmt = stmt.order_by(Referral.created_at.desc(), Referral.id.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class EarningRepository(BaseRepository[Earning]):
    def __init__(self, session: AsyncSession) -> None:
        super().__init__(Earning, session)

    def _commission_bearing(self, partner_ids: list[UUID]):
        return select(Earning).where(
            Earning.partner_id.in_(partner_ids),
            Earning.is_referral_redemption.is_(False),
        )

    async def commission_bearing(
        self, partner_ids: Iterable[UUID], status: EarningStatus
    ) -> list[Earning]:
        """Earnings of the given partners in one status, payouts excluded."""
        ids = list(partner_ids)
        if not ids:
            return []
        stmt = self._commission_bearing(ids).where(Earning.status == status)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def paid_between(
        self, partner_ids: Iterable[UUID], start: datetime, end: datetime
    ) -> list[Earning]:
        """Paid earnings settled in [start, end), by payment date or else creation."""
        ids = list(partner_ids)
        if not ids:
            return []
        stmt = self._commission_bearing(ids).where(
            Earning.status == EarningStatus.PAID,
            or_(
                and_(Earning.payment_date >= start, Earning.payment_date < end),
                and_(
                    Earning.payment_date.is_(None),
                    Earning.created_at >= start,
                    Earning.created_at < end,
                ),
            ),
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_many(self, earning_ids: Iterable[UUID]) -> dict[UUID, Earning]:
        ids = list(earning_ids)
        if not ids:
            return {}
        result = await self.session.execute(select(Earning).where(Earning.id.in_(ids)))
        return {e.id: e for e in result.scalars().all()}

    async def flag_legacy_redemptions(self) -> int:
        stmt = (
            update(Earning)
            .where(
                Earning.is_referral_redemption.is_(False),
                or_(
                    Earning.description.in_(LEGACY_REDEMPTION_LABELS),
                    Earning.fund_name.in_(LEGACY_REDEMPTION_LABELS),
                ),
            )
            .values(is_referral_redemption=True, updated_at=utc_now())
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0


class RedemptionRepository(BaseRepository[ReferralRedemption]):
    def __init__(self, session: AsyncSession) -> None:
        super().__init__(ReferralRedemption, session)

    async def get_by_referrer(self, referrer_id: UUID) -> list[ReferralRedemption]:
        return await self.find_by(referrer_partner_id=referrer_id)

    async def get_by_earning(self, earning_id: UUID) -> ReferralRedemption | None:
        return await self.get_by(earning_id=earning_id)

    async def get_by_earnings(
        self, earning_ids: Iterable[UUID]
    ) -> list[ReferralRedemption]:
        ids = list(earning_ids)
        if not ids:
            return []
        stmt = select(ReferralRedemption).where(ReferralRedemption.earning_id.in_(ids))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def latest_for_referrer(self, referrer_id: UUID) -> ReferralRedemption | None:
        stmt = (
            select(ReferralRedemption)
            .where(ReferralRedemption.referrer_partner_id == referrer_id)
            .order_by(ReferralRedemption.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, **data: Any) -> ReferralRedemption:
        """
        Insert a redemption.

        Raises:
            DuplicateRedemptionError: the earning is already claimed
        """
        earning_id = data["earning_id"]
        if await self.get_by_earning(earning_id) is not None:
            raise DuplicateRedemptionError(earning_id)
        try:
            return await super().create(**data)
        except IntegrityError as exc:
            raise DuplicateRedemptionError(earning_id) from exc

    async def pending_page(
        self, limit: int, cursor: tuple[datetime, UUID] | None = None
    ) -> list[ReferralRedemption]:
        stmt = select(ReferralRedemption).where(
            ReferralRedemption.status == RedemptionStatus.REQUESTED
        )
        if cursor is not None:
            stmt = stmt.where(_before_cursor(ReferralRedemption, cursor))
        stmt = stmt.order_by(
            ReferralRedemption.created_at.desc(), ReferralRedemption.id.desc()
        ).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class SummaryRepository(BaseRepository[PartnerReferralSummary]):
    def __init__(self, session: AsyncSession) -> None:
        super().__init__(PartnerReferralSummary, session)

    async def mark_stale(self, partner_id: UUID) -> None:
        stmt = (
            update(PartnerReferralSummary)
            .where(PartnerReferralSummary.partner_id == partner_id)
            .values(is_stale=True)
        )
        await self.session.execute(stmt)

    async def mark_all_stale(self) -> int:
        result = await self.session.execute(
            update(PartnerReferralSummary).values(is_stale=True)
        )
        return result.rowcount or 0
