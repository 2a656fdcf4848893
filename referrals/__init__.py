"""
Referral Commission & Redemption Ledger

This package provides:
- Commission balances computed from referred partners' paid earnings
- Redemption requests: requested → credited / failed
- Double-redemption protection (unique payout earning, per-referrer locking)
- Reconciliation of credited redemptions whose payout vanished
- A cached per-partner summary refreshed by a background worker
"""

from .balance import BalanceCalculator, ReferralBalance
from .commission import derive_investment_amount
from .models import EarningStatus, RedemptionStatus, ReferralStatus
from .service import ReferralService
from .summary import SummaryMaterializer
from .workflow import RedemptionWorkflow

__all__ = [
    "BalanceCalculator",
    "ReferralBalance",
    "derive_investment_amount",
    "EarningStatus",
    "RedemptionStatus",
    "ReferralStatus",
    "ReferralService",
    "SummaryMaterializer",
    "RedemptionWorkflow",
]
