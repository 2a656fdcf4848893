from decimal import Decimal
from uuid import UUID


class ReferralError(Exception):
    pass


class NotFoundError(ReferralError):
    pass


class InvalidStateTransitionError(ReferralError):
    pass


class DuplicateRedemptionError(ReferralError):
    def __init__(self, earning_id: UUID):
        super().__init__(f"Earning {earning_id} is already claimed by a redemption")
        self.earning_id = earning_id


class BelowMinimumError(ReferralError):
    def __init__(self, available: Decimal, minimum: Decimal):
        super().__init__(
            f"Minimum redeem amount is {minimum}. Available {available}"
        )
        self.available = available
        self.minimum = minimum


class ExceedsAvailableError(ReferralError):
    def __init__(self, requested: Decimal, available: Decimal):
        super().__init__(
            f"Requested {requested} exceeds available balance {available} "
            f"(short by {requested - available})"
        )
        self.requested = requested
        self.available = available


class CooldownError(ReferralError):
    def __init__(self, retry_after: int):
        super().__init__(f"Redemption cooldown active, retry in {retry_after}s")
        self.retry_after = retry_after


class ReconciliationMismatch(ReferralError):
    """A credited redemption whose payout earning is gone or no longer paid."""

    def __init__(self, redemption_id: UUID, earning_id: UUID, reason: str):
        super().__init__(
            f"Redemption {redemption_id} credited against earning {earning_id}: {reason}"
        )
        self.redemption_id = redemption_id
        self.earning_id = earning_id
        self.reason = reason


class InvalidCursorError(ReferralError):
    def __init__(self, cursor: str):
        super().__init__(f"Invalid cursor: {cursor!r}")
        self.cursor = cursor
