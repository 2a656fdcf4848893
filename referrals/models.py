"""
Ledger tables.

Referral, Earning and ReferralRedemption are the source of truth.
PartnerReferralSummary is a cache derived from them and is never consulted
for write decisions.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from referrals.database import Base, utc_now

MoneyType = Numeric(18, 2)
RateType = Numeric(7, 4)


class ReferralStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"


class EarningStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    WITHDRAW = "withdraw"
    PAID = "paid"
    CANCELLED = "cancelled"


class RedemptionStatus(str, Enum):
    REQUESTED = "requested"
    CREDITED = "credited"
    FAILED = "failed"


def _status_enum(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=16,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class Partner(Base):
    """Partner directory row; only the referral fields matter here."""

    __tablename__ = "partners"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    referral_code: Mapped[str | None] = mapped_column(String(32), unique=True, nullable=True)
    referred_by_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("partners.id"), nullable=True, index=True
    )
    referred_by_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Partner(id={self.id}, referral_code={self.referral_code})>"


class Referral(Base):
    __tablename__ = "referrals"
    __table_args__ = (
        UniqueConstraint(
            "referrer_partner_id", "referred_partner_id", name="uq_referral_pair"
        ),
        CheckConstraint(
            "commission_rate >= 0 AND commission_rate <= 100",
            name="ck_referral_commission_rate",
        ),
        Index("idx_referrals_referrer_status", "referrer_partner_id", "status"),
        Index("idx_referrals_referrer_created", "referrer_partner_id", "created_at", "id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    referrer_partner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("partners.id"), nullable=False
    )
    referred_partner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("partners.id"), nullable=False, index=True
    )
    referral_code: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    referred_partner_name: Mapped[str] = mapped_column(String(255), nullable=False)
    referred_partner_email: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[ReferralStatus] = mapped_column(
        _status_enum(ReferralStatus, "referral_status"),
        default=ReferralStatus.PENDING,
        nullable=False,
    )
    commission_rate: Mapped[Decimal] = mapped_column(
        RateType, default=Decimal("1"), nullable=False
    )
    registration_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    first_investment_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_activity_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<Referral(id={self.id}, referrer={self.referrer_partner_id}, "
            f"referred={self.referred_partner_id}, status={self.status})>"
        )


class Earning(Base):
    """
    Commission-bearing transaction of a partner.

    Owned by the earnings subsystem. Referral redemption payouts are Earnings
    too and carry `is_referral_redemption`, which keeps them out of every
    referral commission figure.
    """

    __tablename__ = "earnings"
    __table_args__ = (
        Index("idx_earnings_partner_status", "partner_id", "status"),
        Index("idx_earnings_partner_created", "partner_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    partner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("partners.id"), nullable=False
    )
    client_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    client_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    investment_amount: Mapped[Decimal | None] = mapped_column(MoneyType, nullable=True)
    base_amount: Mapped[Decimal | None] = mapped_column(MoneyType, nullable=True)
    fund_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    commission_rate: Mapped[Decimal | None] = mapped_column(RateType, nullable=True)
    commission_earned: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[EarningStatus] = mapped_column(
        _status_enum(EarningStatus, "earning_status"),
        default=EarningStatus.PENDING,
        nullable=False,
    )
    is_referral_redemption: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, index=True
    )
    payment_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<Earning(id={self.id}, partner_id={self.partner_id}, "
            f"status={self.status}, redemption={self.is_referral_redemption})>"
        )


class ReferralRedemption(Base):
    """
    Append-mostly audit trail of redemption requests.

    `earning_id` is unique and intentionally not a foreign key: a redemption
    must survive the deletion of its payout so reconciliation can fail it.
    """

    __tablename__ = "referral_redemptions"
    __table_args__ = (
        Index("idx_redemptions_referrer_created", "referrer_partner_id", "created_at"),
        Index(
            "idx_redemptions_referrer_status_created",
            "referrer_partner_id",
            "status",
            "created_at",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    referrer_partner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("partners.id"), nullable=False
    )
    referral_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("referrals.id"), nullable=False, index=True
    )
    referred_partner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("partners.id"), nullable=False
    )
    earning_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)
    commission_redeemed: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    investment_amount: Mapped[Decimal | None] = mapped_column(MoneyType, nullable=True)
    commission_rate: Mapped[Decimal | None] = mapped_column(RateType, nullable=True)
    # NULL only on legacy rows, which count as credited
    status: Mapped[RedemptionStatus | None] = mapped_column(
        _status_enum(RedemptionStatus, "redemption_status"),
        default=RedemptionStatus.REQUESTED,
        nullable=True,
    )
    credited_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    transaction_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    @property
    def counts_as_credited(self) -> bool:
        return self.status is None or self.status == RedemptionStatus.CREDITED

    def can_credit(self) -> bool:
        return self.status == RedemptionStatus.REQUESTED

    def can_fail(self) -> bool:
        # credited -> failed is the reconciliation correction for a vanished payout
        return self.status != RedemptionStatus.FAILED

    def __repr__(self) -> str:
        return (
            f"<ReferralRedemption(id={self.id}, earning_id={self.earning_id}, "
            f"amount={self.commission_redeemed}, status={self.status})>"
        )


class PartnerReferralSummary(Base):
    __tablename__ = "partner_referral_summaries"

    partner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("partners.id"), primary_key=True
    )
    paid_commission: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)
    pending_commission: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)
    redeemed_credited: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)
    pending_redemption: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)
    available_balance: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)
    available_after_pending: Mapped[Decimal] = mapped_column(
        MoneyType, default=Decimal("0"), nullable=False
    )
    total_referrals: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    active_referrals: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    pending_referrals: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    inactive_referrals: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_investment_amount: Mapped[Decimal] = mapped_column(
        MoneyType, default=Decimal("0"), nullable=False
    )
    total_commission_earned: Mapped[Decimal] = mapped_column(
        MoneyType, default=Decimal("0"), nullable=False
    )
    is_stale: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<PartnerReferralSummary(partner_id={self.partner_id}, "
            f"available={self.available_balance}, stale={self.is_stale})>"
        )
