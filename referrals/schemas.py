from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from referrals.models import RedemptionStatus, ReferralStatus


class ReferrerInfo(BaseModel):
    id: UUID
    name: str
    email: str
    referral_code: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ReferralCodeValidation(BaseModel):
    is_valid: bool = True
    referrer: ReferrerInfo


class ReferralActivity(BaseModel):
    id: UUID
    referred_partner_id: UUID
    referred_user: str
    email: str
    referral_code: str
    status: ReferralStatus
    active_this_month: bool = False
    registration_date: datetime
    first_investment_date: Optional[datetime] = None
    last_activity_date: Optional[datetime] = None
    commission_rate: Decimal
    latest_investment: Decimal = Decimal("0")
    lifetime_investment: Decimal = Decimal("0")
    current_commission: Decimal = Decimal("0")
    total_commission: Decimal = Decimal("0")
    latest_client_id: Optional[str] = None
    latest_client_name: Optional[str] = None
    created_at: datetime


class ReferralOverview(BaseModel):
    partner_id: UUID
    referral_code: str
    referral_link: str
    paid_commission: Decimal
    pending_commission: Decimal
    redeemed_credited: Decimal
    pending_redemption: Decimal
    available_balance: Decimal
    available_after_pending: Decimal
    total_commission_earned: Decimal
    total_investment_amount: Decimal
    total_referrals: int
    active_referrals: int
    pending_referrals: int
    inactive_referrals: int
    recent_referrals: list[ReferralActivity]
    min_redeem_amount: int
    redeem_cooldown_seconds: int
    summary_updated_at: datetime


class ReferralHistoryPage(BaseModel):
    referrals: list[ReferralActivity]
    next_cursor: Optional[str] = None
    has_more: bool = False


class RedemptionRequest(BaseModel):
    referral_id: UUID
    referred_partner_id: UUID
    amount: Optional[Decimal] = Field(
        default=None, gt=0, description="Commission to redeem; omit to redeem everything available"
    )
    earning_id: Optional[UUID] = Field(
        default=None, description="Existing payout earning to claim"
    )

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "referral_id": "7d9f1c7e-0c1b-4f4e-9d55-1f1f6a2f9a10",
            "referred_partner_id": "660e8400-e29b-41d4-a716-446655440001",
            "amount": 500.00,
        }
    })


class RedemptionOut(BaseModel):
    id: UUID
    referrer_partner_id: UUID
    referral_id: UUID
    referred_partner_id: UUID
    earning_id: UUID
    commission_redeemed: Decimal
    investment_amount: Optional[Decimal] = None
    commission_rate: Optional[Decimal] = None
    status: Optional[RedemptionStatus] = None
    credited_at: Optional[datetime] = None
    transaction_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RedemptionResult(BaseModel):
    redemption_id: UUID
    earning_id: UUID
    requested_amount: Decimal
    credited_amount: Decimal
    was_clamped: bool
    message: str
    redemption: RedemptionOut


class RedemptionSummary(BaseModel):
    redeemed_by_referral: dict[UUID, Decimal]
    count: int


class PendingRedemptionsPage(BaseModel):
    items: list[RedemptionOut]
    next_cursor: Optional[str] = None


class CreditRedemptionRequest(BaseModel):
    transaction_ref: Optional[str] = None
    credited_at: Optional[datetime] = None


class FailRedemptionRequest(BaseModel):
    reason: Optional[str] = Field(default=None, description="Why the payout did not go through")


class EarningsPaidEvent(BaseModel):
    earning_ids: list[UUID] = Field(..., min_length=1)


class EarningsPaidResult(BaseModel):
    credited_redemptions: list[UUID]
    propagated_earnings: int
    refreshed_partners: list[UUID]
    missing_earnings: list[UUID] = Field(default_factory=list)


class BackfillResult(BaseModel):
    flagged_earnings: int
    stale_summaries: int


class ReferralSummaryOut(BaseModel):
    partner_id: UUID
    paid_commission: Decimal
    pending_commission: Decimal
    redeemed_credited: Decimal
    pending_redemption: Decimal
    available_balance: Decimal
    available_after_pending: Decimal
    total_referrals: int
    active_referrals: int
    pending_referrals: int
    inactive_referrals: int
    total_investment_amount: Decimal
    total_commission_earned: Decimal
    is_stale: bool
    last_updated: datetime

    model_config = ConfigDict(from_attributes=True)
