"""
Shared fixtures for the referral ledger tests.

Each test gets its own SQLite file under tmp_path. The summary worker is
never started here; tests drain its queue explicitly.
"""

import asyncio
from datetime import datetime
from decimal import Decimal
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy import delete, update

from referrals.config import Settings
from referrals.database import Database, utc_now
from referrals.models import (
    Earning,
    EarningStatus,
    Partner,
    RedemptionStatus,
    Referral,
    ReferralRedemption,
    ReferralStatus,
)
from referrals.service import ReferralService


class LedgerSeeder:
    """Writes ledger rows directly, the way the surrounding systems would."""

    def __init__(self, database: Database):
        self.database = database

    async def partner(
        self,
        name: str,
        referral_code: str | None = None,
        referred_by: Partner | None = None,
    ) -> Partner:
        async with self.database.transaction() as session:
            partner = Partner(
                name=name,
                email=f"{name.lower().replace(' ', '.')}@example.com",
                referral_code=referral_code,
                referred_by_id=referred_by.id if referred_by else None,
                referred_by_code=referred_by.referral_code if referred_by else None,
            )
            session.add(partner)
        return partner

    async def referral(
        self,
        referrer: Partner,
        referred: Partner,
        rate: str = "1",
        status: ReferralStatus = ReferralStatus.PENDING,
        created_at: datetime | None = None,
    ) -> Referral:
        async with self.database.transaction() as session:
            referral = Referral(
                referrer_partner_id=referrer.id,
                referred_partner_id=referred.id,
                referral_code=referrer.referral_code or "TESTCODE",
                referred_partner_name=referred.name,
                referred_partner_email=referred.email,
                status=status,
                commission_rate=Decimal(rate),
            )
            if created_at is not None:
                referral.created_at = created_at
            session.add(referral)
        return referral

    async def earning(
        self,
        partner: Partner,
        investment: str | None = None,
        status: EarningStatus = EarningStatus.PAID,
        commission_earned: str = "0",
        commission_rate: str | None = None,
        base_amount: str | None = None,
        is_referral_redemption: bool = False,
        description: str = "Mutual fund investment",
        fund_name: str | None = None,
        payment_date: datetime | None = None,
        client_id: str | None = None,
    ) -> Earning:
        async with self.database.transaction() as session:
            earning = Earning(
                partner_id=partner.id,
                investment_amount=Decimal(investment) if investment is not None else None,
                base_amount=Decimal(base_amount) if base_amount is not None else None,
                commission_earned=Decimal(commission_earned),
                commission_rate=Decimal(commission_rate) if commission_rate is not None else None,
                status=status,
                is_referral_redemption=is_referral_redemption,
                description=description,
                fund_name=fund_name,
                payment_date=payment_date,
                client_id=client_id,
            )
            session.add(earning)
        return earning

    async def redemption(
        self,
        referral: Referral,
        earning: Earning,
        amount: str,
        status: RedemptionStatus | None = RedemptionStatus.CREDITED,
    ) -> ReferralRedemption:
        async with self.database.transaction() as session:
            redemption = ReferralRedemption(
                referrer_partner_id=referral.referrer_partner_id,
                referral_id=referral.id,
                referred_partner_id=referral.referred_partner_id,
                earning_id=earning.id,
                commission_redeemed=Decimal(amount),
                status=status or RedemptionStatus.CREDITED,
            )
            session.add(redemption)
            await session.flush()
            if status is None:
                # Legacy rows predate the status column
                await session.execute(
                    update(ReferralRedemption)
                    .where(ReferralRedemption.id == redemption.id)
                    .values(status=None)
                )
        return redemption

    async def set_earning_status(
        self, earning_id: UUID, status: EarningStatus, transaction_id: str | None = None
    ) -> None:
        async with self.database.transaction() as session:
            earning = await session.get(Earning, earning_id)
            earning.status = status
            if status == EarningStatus.PAID:
                earning.payment_date = utc_now()
                earning.transaction_id = transaction_id

    async def delete_earning(self, earning_id: UUID) -> None:
        async with self.database.transaction() as session:
            await session.execute(delete(Earning).where(Earning.id == earning_id))

    async def get(self, model, id):
        async with self.database.session() as session:
            return await session.get(model, id)

    async def funded_referral(
        self, investment: str = "100000", rate: str = "1"
    ) -> tuple[Partner, Partner, Referral]:
        """Referrer A, referred B and one paid investment of B."""
        referrer = await self.partner("Alice", referral_code="PARTALI1001")
        referred = await self.partner("Bob", referred_by=referrer)
        referral = await self.referral(referrer, referred, rate=rate)
        await self.earning(referred, investment=investment)
        return referrer, referred, referral


def make_settings(url: str, **overrides) -> Settings:
    values = dict(
        database_url=url,
        min_redeem_amount=250,
        redeem_cooldown_seconds=0,
        summary_worker_enabled=False,
        summary_poll_interval_seconds=0.01,
        summary_recompute_timeout_seconds=5,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'referrals.db'}"


@pytest.fixture
def settings(db_url) -> Settings:
    return make_settings(db_url)


@pytest_asyncio.fixture
async def database(settings):
    db = Database(settings.database_url)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def ledger(database) -> LedgerSeeder:
    return LedgerSeeder(database)


@pytest.fixture
def service(database, settings) -> ReferralService:
    return ReferralService(database, settings)


@pytest.fixture
def make_service(database, settings):
    """Build a service over the same database with some settings changed."""
    def _make(**overrides) -> ReferralService:
        return ReferralService(database, settings.model_copy(update=overrides))
    return _make


@pytest.fixture
def seed(db_url):
    """Run a seeding coroutine against the test database from a sync test."""
    def _seed(build):
        async def run():
            db = Database(db_url)
            await db.create_all()
            try:
                return await build(LedgerSeeder(db))
            finally:
                await db.dispose()
        return asyncio.run(run())
    return _seed
