"""
Unit Tests for the Referral Service

Tests cover:
1. Signup linking and referral codes
2. Commission propagation on paid investments
3. Overview and cursor-paginated history
4. Admin listing and per-referral redemption totals
5. Legacy payout flag backfill
"""

import re
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from referrals.database import utc_now
from referrals.exceptions import InvalidCursorError, NotFoundError
from referrals.models import (
    EarningStatus,
    Partner,
    RedemptionStatus,
    ReferralStatus,
)
from referrals.repositories import ReferralRepository

CODE_PATTERN = re.compile(r"^PART[A-Z]{3}\d{4}$")


class TestSignup:
    """Tests for register_signup and referral codes."""

    @pytest.mark.asyncio
    async def test_signup_creates_pending_referral(self, service, ledger):
        """Test that a valid code links the new partner."""
        alice = await ledger.partner("Alice", referral_code="PARTALI1001")
        bob = await ledger.partner("Bob")

        referral = await service.register_signup(bob.id, "PARTALI1001")

        assert referral.status == ReferralStatus.PENDING
        assert referral.referrer_partner_id == alice.id
        assert referral.commission_rate == Decimal("1")
        stored = await ledger.get(Partner, bob.id)
        assert stored.referred_by_id == alice.id
        assert stored.referred_by_code == "PARTALI1001"

    @pytest.mark.asyncio
    async def test_signup_is_idempotent(self, service, ledger, database):
        """Test that replaying a signup keeps one referral."""
        await ledger.partner("Alice", referral_code="PARTALI1001")
        bob = await ledger.partner("Bob")

        first = await service.register_signup(bob.id, "PARTALI1001")
        second = await service.register_signup(bob.id, "PARTALI1001")

        assert first.id == second.id
        async with database.session() as session:
            assert len(await ReferralRepository(session).find_by(referred_partner_id=bob.id)) == 1

    @pytest.mark.asyncio
    async def test_signup_without_valid_code(self, service, ledger):
        """Test that missing, unknown or own codes link nothing."""
        alice = await ledger.partner("Alice", referral_code="PARTALI1001")
        bob = await ledger.partner("Bob")

        assert await service.register_signup(bob.id, None) is None
        assert await service.register_signup(bob.id, "PARTNOPE0000") is None
        assert await service.register_signup(alice.id, "PARTALI1001") is None

    @pytest.mark.asyncio
    async def test_signup_for_unknown_partner(self, service, ledger):
        """Test that an unknown referred partner is not found."""
        await ledger.partner("Alice", referral_code="PARTALI1001")

        with pytest.raises(NotFoundError):
            await service.register_signup(uuid4(), "PARTALI1001")

    @pytest.mark.asyncio
    async def test_validate_referral_code(self, service, ledger):
        """Test code validation."""
        alice = await ledger.partner("Alice", referral_code="PARTALI1001")

        referrer = await service.validate_referral_code("PARTALI1001")

        assert referrer.id == alice.id
        with pytest.raises(NotFoundError):
            await service.validate_referral_code("PARTXYZ9999")

    @pytest.mark.asyncio
    async def test_ensure_referral_code_format(self, service, ledger):
        """Test generated codes and that existing codes are kept."""
        alice = await ledger.partner("Alice Smith")
        nameless = await ledger.partner("42")
        kept = await ledger.partner("Kept", referral_code="PARTKEP1234")

        code = await service.ensure_referral_code(alice.id)

        assert CODE_PATTERN.match(code)
        assert code.startswith("PARTALI")
        assert (await service.ensure_referral_code(nameless.id)).startswith("PARTPAR")
        assert await service.ensure_referral_code(kept.id) == "PARTKEP1234"
        assert await service.ensure_referral_code(alice.id) == code

    @pytest.mark.asyncio
    async def test_ensure_referral_code_falls_back_after_collisions(self, service, ledger, monkeypatch):
        """Test the timestamp fallback when every candidate is taken."""
        alice = await ledger.partner("Alice")
        await ledger.partner("Taken", referral_code="PARTALI1000")
        monkeypatch.setattr("referrals.service.secrets.randbelow", lambda _: 0)

        code = await service.ensure_referral_code(alice.id)

        assert re.match(r"^PART\d{13}$", code)


class TestCommissionPropagation:
    """Tests for record_investment and the paid hook."""

    @pytest.mark.asyncio
    async def test_first_investment_activates_referral(self, service, ledger):
        """Test pending -> active on the first investment."""
        alice, bob, referral = await ledger.funded_referral("100000")

        updated = await service.record_investment(bob.id, Decimal("100000"))

        assert updated.id == referral.id
        assert updated.status == ReferralStatus.ACTIVE
        assert updated.first_investment_date is not None
        balance = await service.get_balance(alice.id)
        assert balance.paid_commission == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_backfills_referred_by(self, service, ledger):
        """Test that a Referral row restores a missing referred_by."""
        alice = await ledger.partner("Alice", referral_code="PARTALI1001")
        bob = await ledger.partner("Bob")
        await ledger.referral(alice, bob)

        await service.record_investment(bob.id, Decimal("5000"))

        stored = await ledger.get(Partner, bob.id)
        assert stored.referred_by_id == alice.id
        assert stored.referred_by_code == "PARTALI1001"

    @pytest.mark.asyncio
    async def test_creates_missing_referral(self, service, ledger, database):
        """Test that referred_by without a Referral row creates one."""
        alice = await ledger.partner("Alice", referral_code="PARTALI1001")
        bob = await ledger.partner("Bob", referred_by=alice)

        referral = await service.record_investment(bob.id, Decimal("5000"))

        assert referral.referrer_partner_id == alice.id
        assert referral.status == ReferralStatus.ACTIVE
        assert referral.referral_code == "PARTALI1001"
        async with database.session() as session:
            assert await ReferralRepository(session).get_pair(alice.id, bob.id) is not None

    @pytest.mark.asyncio
    async def test_unreferred_partner_is_ignored(self, service, ledger):
        """Test that an investment by a partner nobody referred changes nothing."""
        solo = await ledger.partner("Solo")

        assert await service.record_investment(solo.id, Decimal("5000")) is None
        assert await service.record_investment(uuid4(), Decimal("5000")) is None

    @pytest.mark.asyncio
    async def test_paid_hook_propagates_ordinary_earnings(self, service, ledger):
        """Test scenario: referral activates when the referred partner's earning is paid."""
        alice = await ledger.partner("Alice", referral_code="PARTALI1001")
        bob = await ledger.partner("Bob", referred_by=alice)
        await ledger.referral(alice, bob)
        earning = await ledger.earning(bob, investment="100000", status=EarningStatus.APPROVED)
        unpaid = await ledger.earning(bob, investment="5000", status=EarningStatus.APPROVED)

        await ledger.set_earning_status(earning.id, EarningStatus.PAID)
        missing = uuid4()
        result = await service.on_earnings_paid([earning.id, unpaid.id, missing])

        assert result.propagated_earnings == 1
        assert result.refreshed_partners == [alice.id]
        assert result.missing_earnings == [missing]
        balance = await service.get_balance(alice.id)
        assert balance.paid_commission == Decimal("1000.00")

        overview = await service.get_overview(alice.id)
        assert overview.recent_referrals[0].status == ReferralStatus.ACTIVE


class TestOverviewAndHistory:
    """Tests for the read views."""

    @pytest.mark.asyncio
    async def test_overview_figures(self, service, ledger):
        """Test overview totals, link and limits."""
        alice, bob, referral = await ledger.funded_referral("100000")
        await ledger.earning(bob, investment="20000", status=EarningStatus.APPROVED)
        await service.request_redemption(alice.id, referral.id, bob.id, Decimal("400"))

        overview = await service.get_overview(alice.id)

        assert overview.referral_code == "PARTALI1001"
        assert overview.referral_link == "http://localhost:5174/signup?ref=PARTALI1001"
        assert overview.paid_commission == Decimal("1000.00")
        assert overview.pending_commission == Decimal("200.00")
        assert overview.pending_redemption == Decimal("400.00")
        assert overview.available_balance == Decimal("1000.00")
        assert overview.available_after_pending == Decimal("600.00")
        assert overview.total_referrals == 1
        assert overview.min_redeem_amount == 250
        assert overview.redeem_cooldown_seconds == 0

    @pytest.mark.asyncio
    async def test_overview_assigns_code(self, service, ledger):
        """Test that the overview gives a partner a referral code."""
        zed = await ledger.partner("Zed")

        overview = await service.get_overview(zed.id)

        assert CODE_PATTERN.match(overview.referral_code)
        assert overview.recent_referrals == []
        assert overview.paid_commission == Decimal("0")

    @pytest.mark.asyncio
    async def test_overview_unknown_partner(self, service):
        """Test that an unknown partner is not found."""
        with pytest.raises(NotFoundError):
            await service.get_overview(uuid4())

    @pytest.mark.asyncio
    async def test_recent_referral_activity(self, service, ledger):
        """Test latest/lifetime investment and commissions per referral."""
        alice = await ledger.partner("Alice", referral_code="PARTALI1001")
        bob = await ledger.partner("Bob", referred_by=alice)
        await ledger.referral(alice, bob, rate="1.5")
        last_year = utc_now() - timedelta(days=400)
        await ledger.earning(bob, investment="10000", payment_date=last_year, client_id="C-1")
        await ledger.earning(bob, investment="25000", payment_date=utc_now(), client_id="C-2")
        await ledger.earning(bob, investment="99999", status=EarningStatus.APPROVED)

        overview = await service.get_overview(alice.id)
        activity = overview.recent_referrals[0]

        assert activity.lifetime_investment == Decimal("35000")
        assert activity.latest_investment == Decimal("25000")
        assert activity.latest_client_id == "C-2"
        assert activity.commission_rate == Decimal("1.5")
        assert activity.total_commission == Decimal("525")
        assert activity.current_commission == Decimal("375")
        assert activity.active_this_month is True

    @pytest.mark.asyncio
    async def test_inactive_this_month(self, service, ledger):
        """Test that old payments do not count as monthly activity."""
        alice = await ledger.partner("Alice", referral_code="PARTALI1001")
        bob = await ledger.partner("Bob", referred_by=alice)
        await ledger.referral(alice, bob)
        await ledger.earning(bob, investment="10000", payment_date=utc_now() - timedelta(days=70))

        overview = await service.get_overview(alice.id)

        assert overview.recent_referrals[0].active_this_month is False

    @pytest.mark.asyncio
    async def test_history_pagination(self, service, ledger):
        """Test that the cursor walks the referrals newest first without gaps."""
        alice = await ledger.partner("Alice", referral_code="PARTALI1001")
        base = utc_now() - timedelta(days=1)
        names = []
        for i in range(5):
            friend = await ledger.partner(f"Friend {i}")
            # Two referrals share a timestamp to exercise the id tiebreak
            created = base + timedelta(minutes=max(i, 1))
            await ledger.referral(alice, friend, created_at=created)
            names.append(friend.name)

        first = await service.get_history(alice.id, limit=2)
        second = await service.get_history(alice.id, limit=2, cursor=first.next_cursor)
        third = await service.get_history(alice.id, limit=2, cursor=second.next_cursor)

        seen = [r.referred_user for r in first.referrals + second.referrals + third.referrals]
        assert sorted(seen) == sorted(names)
        assert len(set(seen)) == 5
        assert first.has_more and second.has_more
        assert third.has_more is False
        assert third.next_cursor is None
        assert seen[0] == "Friend 4"

    @pytest.mark.asyncio
    async def test_history_status_filter(self, service, ledger):
        """Test filtering history by referral status."""
        alice = await ledger.partner("Alice", referral_code="PARTALI1001")
        bob = await ledger.partner("Bob")
        carol = await ledger.partner("Carol")
        await ledger.referral(alice, bob, status=ReferralStatus.ACTIVE)
        await ledger.referral(alice, carol, status=ReferralStatus.PENDING)

        page = await service.get_history(alice.id, status=ReferralStatus.ACTIVE)

        assert [r.referred_user for r in page.referrals] == ["Bob"]

    @pytest.mark.asyncio
    async def test_zero_limit_returns_one_row(self, service, ledger):
        """Test that a page size below one is raised to one."""
        alice, _, _ = await ledger.funded_referral("100000")

        page = await service.get_history(alice.id, limit=0)

        assert len(page.referrals) == 1
        assert page.has_more is False
        assert page.next_cursor is None

    @pytest.mark.asyncio
    async def test_history_rejects_bad_cursor(self, service, ledger):
        """Test that a malformed cursor is reported."""
        alice = await ledger.partner("Alice")

        with pytest.raises(InvalidCursorError):
            await service.get_history(alice.id, cursor="yesterday")


class TestRedemptionViews:
    """Tests for admin listing and per-referral totals."""

    @pytest.mark.asyncio
    async def test_redemption_summary_by_referral(self, service, ledger):
        """Test that requested and credited amounts are grouped per referral."""
        alice, bob, referral = await ledger.funded_referral("100000")
        carol = await ledger.partner("Carol", referred_by=alice)
        other = await ledger.referral(alice, carol)
        await ledger.earning(carol, investment="50000")

        await service.request_redemption(alice.id, referral.id, bob.id, Decimal("300"))
        await service.request_redemption(alice.id, referral.id, bob.id, Decimal("200"))
        dropped = await service.request_redemption(alice.id, other.id, carol.id, Decimal("400"))
        await service.fail_redemption(dropped.redemption_id, reason="cancelled")

        summary = await service.redemption_summary(alice.id)

        assert summary.redeemed_by_referral == {referral.id: Decimal("500.00")}
        assert summary.count == 1

    @pytest.mark.asyncio
    async def test_pending_listing_pages(self, service, ledger):
        """Test the admin queue of requested redemptions."""
        alice, bob, referral = await ledger.funded_referral("100000")
        ids = []
        for amount in ("300", "100", "100"):
            result = await service.request_redemption(alice.id, referral.id, bob.id, Decimal(amount))
            ids.append(result.redemption_id)
        await service.fail_redemption(ids[2])

        first = await service.list_pending_redemptions(limit=1)
        second = await service.list_pending_redemptions(limit=1, cursor=first.next_cursor)

        assert len(first.items) == 1
        assert first.next_cursor is not None
        assert len(second.items) == 1
        assert second.next_cursor is None
        assert {first.items[0].id, second.items[0].id} == set(ids[:2])
        assert all(i.status == RedemptionStatus.REQUESTED for i in first.items + second.items)

    @pytest.mark.asyncio
    async def test_pending_listing_zero_limit(self, service, ledger):
        """Test that a zero page size still returns a usable page."""
        alice, bob, referral = await ledger.funded_referral("100000")
        for amount in ("300", "100"):
            await service.request_redemption(alice.id, referral.id, bob.id, Decimal(amount))

        page = await service.list_pending_redemptions(limit=0)

        assert len(page.items) == 1
        assert page.next_cursor is not None


class TestLegacyBackfill:
    """Tests for flagging legacy payout earnings."""

    @pytest.mark.asyncio
    async def test_backfill_flags_labelled_payouts(self, service, ledger):
        """Test that label-only payouts stop generating commission after the backfill."""
        alice, bob, _ = await ledger.funded_referral("100000")
        await ledger.earning(bob, investment="50000", description="Referal Earning")
        await ledger.earning(bob, investment="20000", fund_name="Referral Earning")
        await service.get_summary(alice.id)

        before = await service.get_balance(alice.id)
        result = await service.backfill_redemption_flags()
        after = await service.get_balance(alice.id)

        assert before.paid_commission == Decimal("1700.00")
        assert result.flagged_earnings == 2
        assert result.stale_summaries == 1
        assert after.paid_commission == Decimal("1000.00")
        assert (await service.get_summary(alice.id)).paid_commission == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_backfill_is_idempotent(self, service, ledger):
        """Test that a second run flags nothing."""
        _, bob, _ = await ledger.funded_referral("100000")
        await ledger.earning(bob, investment="50000", description="Referal Earning")

        await service.backfill_redemption_flags()
        again = await service.backfill_redemption_flags()

        assert again.flagged_earnings == 0
        assert again.stale_summaries == 0
