"""
Commission arithmetic shared by every referral figure.

All callers that need an investment amount go through
`derive_investment_amount` so legacy earnings are interpreted one way only.
"""

from decimal import ROUND_HALF_UP, Decimal

ZERO = Decimal("0")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")
DEFAULT_COMMISSION_RATE = Decimal("1")


def _positive(value) -> Decimal | None:
    if value is None:
        return None
    amount = Decimal(str(value))
    return amount if amount > 0 else None


def derive_investment_amount(
    investment_amount=None,
    commission_earned=None,
    commission_rate=None,
    base_amount=None,
) -> Decimal:
    """
    Investment behind an earning.

    Uses the recorded investment, then the legacy base amount, then
    commission * 100 / rate rounded half-up to a whole unit. Anything else
    yields zero.

    >>> derive_investment_amount(commission_earned=250, commission_rate=2.5)
    Decimal('10000')
    """
    invest = _positive(investment_amount) or _positive(base_amount)
    if invest is not None:
        return invest

    earned = _positive(commission_earned)
    rate = _positive(commission_rate)
    if earned is None or rate is None:
        return ZERO
    return to_whole(earned * HUNDRED / rate)


def effective_rate(rate, default: Decimal = DEFAULT_COMMISSION_RATE) -> Decimal:
    """Referral rate, falling back to the default when unset or zero."""
    return _positive(rate) or default


def commission_for(investment: Decimal, rate: Decimal) -> Decimal:
    return investment * rate / HUNDRED


def to_money(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def clamp_non_negative(amount: Decimal) -> Decimal:
    return amount if amount > 0 else ZERO


def to_whole(amount: Decimal) -> Decimal:
    return amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
