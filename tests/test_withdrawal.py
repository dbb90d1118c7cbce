"""Withdrawals: reservation at request time, review, settlement and the payout rail."""

import pytest

from skillmint.core.enum import WithdrawalStatus
from skillmint.core.errors import (
    Conflict,
    Forbidden,
    InsufficientFunds,
    InvalidTransition,
    Unprocessable,
    UpstreamTimeout,
    ValidationFailure,
)
from skillmint.core.settings import settings
from skillmint.db.models.database import User
from skillmint.services.shares.ledger import LedgerService
from skillmint.services.shares.wallets import WalletsService
from skillmint.services.shares.withdraw import WithdrawService

BANK = {"account_number": "001122334455", "ifsc": "HDFC0000123"}


@pytest.fixture
def withdrawals(session, leases, policy, mailer, gateway):
    return WithdrawService(session, leases, policy, mailer, gateway)


@pytest.fixture
def ledger(session, leases):
    return LedgerService(session, leases)


@pytest.fixture
async def earner(seed):
    user = await seed.affiliate("Asha")
    await seed.fund(user, 100_000)
    return user


async def _processing(withdrawals, user, admin, amount=50_000, details=None):
    withdrawal = await withdrawals.request_withdraw_async(user, amount, "bank_transfer", details or BANK)
    await withdrawals.approve_async(withdrawal.id, admin)
    return await withdrawals.begin_settlement_async(withdrawal.id, admin)


class TestRequest:
    async def test_funds_are_reserved(self, withdrawals, ledger, earner) -> None:
        withdrawal = await withdrawals.request_withdraw_async(earner, 50_000, "bank_transfer", BANK)

        assert withdrawal.status == WithdrawalStatus.PENDING.value
        assert (withdrawal.processing_fee, withdrawal.net_amount) == (1_000, 49_000)
        assert withdrawal.reserve_entry_id is not None
        assert await ledger.balance(earner.id) == {"total": 100_000, "available": 50_000, "reserved": 50_000}

    async def test_percentage_fee_above_minimum(self, withdrawals, earner, seed) -> None:
        await seed.fund(earner, 100_000)
        withdrawal = await withdrawals.request_withdraw_async(earner, 150_000, "upi", {"vpa": "asha@okbank"})
        assert withdrawal.processing_fee == 3_000

    @pytest.mark.parametrize("amount", [9_999, 5_000_001, 0, -100])
    async def test_amount_limits(self, withdrawals, earner, amount) -> None:
        with pytest.raises(ValidationFailure):
            await withdrawals.request_withdraw_async(earner, amount, "bank_transfer", BANK)

    async def test_unknown_method(self, withdrawals, earner) -> None:
        with pytest.raises(ValidationFailure):
            await withdrawals.request_withdraw_async(earner, 20_000, "carrier_pigeon", BANK)

    async def test_entire_available_balance(self, withdrawals, ledger, earner) -> None:
        withdrawal = await withdrawals.request_withdraw_async(earner, 100_000, "bank_transfer", BANK)

        assert withdrawal.status == WithdrawalStatus.PENDING.value
        assert withdrawal.net_amount == 98_000
        assert await ledger.balance(earner.id) == {"total": 100_000, "available": 0, "reserved": 100_000}

    async def test_insufficient_funds(self, withdrawals, ledger, earner) -> None:
        earner_id = earner.id
        with pytest.raises(InsufficientFunds):
            await withdrawals.request_withdraw_async(earner, 100_001, "bank_transfer", BANK)
        assert (await ledger.balance(earner_id))["reserved"] == 0

    async def test_reserved_funds_are_not_available_twice(self, withdrawals, earner) -> None:
        await withdrawals.request_withdraw_async(earner, 60_000, "bank_transfer", BANK)
        with pytest.raises(InsufficientFunds):
            await withdrawals.request_withdraw_async(earner, 60_000, "bank_transfer", BANK)

    async def test_monthly_cap(self, withdrawals, policy, session, seed) -> None:
        await policy.update(session, {"max_withdrawal": 60_000, "monthly_withdrawal_cap": 60_000}, None)
        user = await seed.affiliate("Asha")
        await seed.fund(user, 200_000)
        user_id = user.id
        admin_id = (await seed.admin()).id

        first = await withdrawals.request_withdraw_async(user, 50_000, "bank_transfer", BANK)
        first_id = first.id
        with pytest.raises(Unprocessable):
            await withdrawals.request_withdraw_async(user, 20_000, "bank_transfer", BANK)

        admin = await session.get(User, admin_id, populate_existing=True)
        await withdrawals.reject_async(first_id, admin, "wrong account")
        user = await session.get(User, user_id, populate_existing=True)
        again = await withdrawals.request_withdraw_async(user, 20_000, "bank_transfer", BANK)
        assert again.status == WithdrawalStatus.PENDING.value

    async def test_frozen_wallet(self, withdrawals, session, leases, gateway, earner, seed) -> None:
        admin = await seed.admin()
        await WalletsService(session, leases, gateway).freeze_async(admin, earner.id)
        with pytest.raises(Forbidden):
            await withdrawals.request_withdraw_async(earner, 20_000, "bank_transfer", BANK)


class TestReview:
    async def test_approve_notifies_owner(self, withdrawals, mailer, earner, seed) -> None:
        admin = await seed.admin()
        withdrawal = await withdrawals.request_withdraw_async(earner, 20_000, "bank_transfer", BANK)

        approved = await withdrawals.approve_async(withdrawal.id, admin, "kyc ok")

        assert approved.status == WithdrawalStatus.APPROVED.value
        assert approved.reviewed_by == admin.id
        assert ("Withdrawal approved", [earner.email]) in mailer.sent

    async def test_reject_releases_funds(self, withdrawals, ledger, earner, seed) -> None:
        admin = await seed.admin()
        withdrawal = await withdrawals.request_withdraw_async(earner, 20_000, "bank_transfer", BANK)

        rejected = await withdrawals.reject_async(withdrawal.id, admin, "name mismatch")

        assert rejected.status == WithdrawalStatus.REJECTED.value
        assert await ledger.balance(earner.id) == {"total": 100_000, "available": 100_000, "reserved": 0}

    async def test_owner_cancel_releases_funds(self, withdrawals, ledger, earner) -> None:
        withdrawal = await withdrawals.request_withdraw_async(earner, 20_000, "bank_transfer", BANK)

        cancelled = await withdrawals.cancel_async(withdrawal.id, earner)

        assert cancelled.status == WithdrawalStatus.CANCELLED.value
        assert (await ledger.balance(earner.id))["available"] == 100_000

    async def test_cancel_after_approval_rejected(self, withdrawals, earner, seed) -> None:
        admin = await seed.admin()
        withdrawal = await withdrawals.request_withdraw_async(earner, 20_000, "bank_transfer", BANK)
        withdrawal_id = withdrawal.id
        await withdrawals.approve_async(withdrawal_id, admin)
        with pytest.raises(InvalidTransition):
            await withdrawals.cancel_async(withdrawal_id, earner)

    async def test_only_owner_cancels(self, withdrawals, earner, seed) -> None:
        stranger = await seed.user("Stranger")
        withdrawal = await withdrawals.request_withdraw_async(earner, 20_000, "bank_transfer", BANK)
        with pytest.raises(Forbidden):
            await withdrawals.cancel_async(withdrawal.id, stranger)

    async def test_flag_moves_to_review(self, withdrawals, earner, seed) -> None:
        admin = await seed.admin()
        withdrawal = await withdrawals.request_withdraw_async(earner, 20_000, "bank_transfer", BANK)

        flagged = await withdrawals.flag_async(withdrawal.id, admin, "new bank account")

        assert flagged.is_flagged
        assert flagged.status == WithdrawalStatus.UNDER_REVIEW.value
        approved = await withdrawals.approve_async(withdrawal.id, admin)
        assert approved.status == WithdrawalStatus.APPROVED.value

    async def test_review_requires_capability(self, withdrawals, earner) -> None:
        withdrawal = await withdrawals.request_withdraw_async(earner, 20_000, "bank_transfer", BANK)
        with pytest.raises(Forbidden):
            await withdrawals.approve_async(withdrawal.id, earner)


class TestSettlement:
    async def test_complete_posts_reservation_and_fee(self, withdrawals, ledger, earner, seed, system) -> None:
        admin = await seed.admin()
        withdrawal = await _processing(withdrawals, earner, admin)
        assert withdrawal.status == WithdrawalStatus.PROCESSING.value

        done = await withdrawals.complete_settlement_async(withdrawal.id, admin, "UTR0001")

        assert done.status == WithdrawalStatus.COMPLETED.value
        assert done.external_reference == "UTR0001"
        assert await ledger.balance(earner.id) == {"total": 50_000, "available": 50_000, "reserved": 0}
        wallet = await ledger.get_wallet(earner.id)
        assert wallet.total_withdrawn == 50_000
        assert (await ledger.balance(system.platform_id))["total"] == 1_000

    async def test_complete_is_idempotent_per_reference(self, withdrawals, ledger, earner, seed) -> None:
        admin = await seed.admin()
        withdrawal = await _processing(withdrawals, earner, admin)
        withdrawal_id = withdrawal.id
        await withdrawals.complete_settlement_async(withdrawal_id, admin, "UTR0001")

        again = await withdrawals.complete_settlement_async(withdrawal_id, admin, "UTR0001")
        assert again.status == WithdrawalStatus.COMPLETED.value
        assert (await ledger.balance(earner.id))["total"] == 50_000

        with pytest.raises(Conflict):
            await withdrawals.complete_settlement_async(withdrawal_id, admin, "UTR0002")

    async def test_reference_cannot_settle_two_withdrawals(self, withdrawals, earner, seed) -> None:
        admin = await seed.admin()
        first = await _processing(withdrawals, earner, admin, amount=20_000)
        second = await _processing(withdrawals, earner, admin, amount=20_000)
        second_id = second.id
        await withdrawals.complete_settlement_async(first.id, admin, "UTR0001")

        with pytest.raises(Conflict):
            await withdrawals.complete_settlement_async(second_id, admin, "UTR0001")

    async def test_complete_needs_processing(self, withdrawals, earner, seed) -> None:
        admin = await seed.admin()
        withdrawal = await withdrawals.request_withdraw_async(earner, 20_000, "bank_transfer", BANK)
        with pytest.raises(InvalidTransition):
            await withdrawals.complete_settlement_async(withdrawal.id, admin, "UTR0001")

    async def test_fail_releases_reservation(self, withdrawals, ledger, earner, seed) -> None:
        admin = await seed.admin()
        withdrawal = await _processing(withdrawals, earner, admin)

        failed = await withdrawals.fail_settlement_async(withdrawal.id, admin, "account closed")

        assert failed.status == WithdrawalStatus.FAILED.value
        assert failed.failure_reason == "account closed"
        assert await ledger.balance(earner.id) == {"total": 100_000, "available": 100_000, "reserved": 0}

    async def test_payout_rail(self, withdrawals, gateway, earner, seed, monkeypatch) -> None:
        monkeypatch.setattr(settings, "RAZORPAYX_ACCOUNT_NUMBER", "2323230041626905")
        admin = await seed.admin()

        withdrawal = await _processing(
            withdrawals, earner, admin, details={**BANK, "fund_account_id": "fa_00000000000001"}
        )

        assert withdrawal.payout_id.startswith("pout_")
        (payout,) = gateway.payouts
        assert payout["amount"] == 49_000
        assert payout["fund_account_id"] == "fa_00000000000001"
        assert payout["reference_id"] == str(withdrawal.id)

    async def test_payout_failure_leaves_processing(self, withdrawals, gateway, earner, seed, monkeypatch) -> None:
        monkeypatch.setattr(settings, "RAZORPAYX_ACCOUNT_NUMBER", "2323230041626905")
        admin = await seed.admin()
        withdrawal = await withdrawals.request_withdraw_async(
            earner, 50_000, "bank_transfer", {**BANK, "fund_account_id": "fa_00000000000001"}
        )
        await withdrawals.approve_async(withdrawal.id, admin)
        gateway.fail(transient=True)

        with pytest.raises(UpstreamTimeout):
            await withdrawals.begin_settlement_async(withdrawal.id, admin)

        current = await withdrawals.get_async(withdrawal.id, admin)
        assert current.status == WithdrawalStatus.PROCESSING.value
        assert current.payout_id is None


class TestSweepAndQueries:
    async def test_auto_approve_skips_flagged_and_large(self, withdrawals, earner, seed) -> None:
        admin = await seed.admin()
        await seed.fund(earner, 2_000_000)
        small = await withdrawals.request_withdraw_async(earner, 50_000, "bank_transfer", BANK)
        large = await withdrawals.request_withdraw_async(earner, 600_000, "bank_transfer", BANK)
        flagged = await withdrawals.request_withdraw_async(earner, 20_000, "bank_transfer", BANK)
        await withdrawals.flag_async(flagged.id, admin, "velocity")

        assert await withdrawals.auto_approve_due() == {"approved": 1}

        assert (await withdrawals.get_async(small.id, admin)).status == WithdrawalStatus.APPROVED.value
        assert (await withdrawals.get_async(large.id, admin)).status == WithdrawalStatus.PENDING.value
        assert (await withdrawals.get_async(flagged.id, admin)).status == WithdrawalStatus.UNDER_REVIEW.value

    async def test_get_is_owner_or_admin(self, withdrawals, earner, seed) -> None:
        stranger = await seed.user("Stranger")
        withdrawal = await withdrawals.request_withdraw_async(earner, 20_000, "bank_transfer", BANK)
        assert (await withdrawals.get_async(withdrawal.id, earner)).id == withdrawal.id
        with pytest.raises(Forbidden):
            await withdrawals.get_async(withdrawal.id, stranger)

    async def test_list_filters(self, withdrawals, earner, seed) -> None:
        other = await seed.affiliate("Bela")
        await seed.fund(other, 50_000)
        await withdrawals.request_withdraw_async(earner, 20_000, "bank_transfer", BANK)
        mine = await withdrawals.request_withdraw_async(earner, 30_000, "bank_transfer", BANK)
        await withdrawals.request_withdraw_async(other, 20_000, "bank_transfer", BANK)
        await withdrawals.cancel_async(mine.id, earner)

        page = await withdrawals.list_async(user_id=earner.id)
        assert page["total"] == 2
        pending = await withdrawals.list_async(status=WithdrawalStatus.PENDING.value)
        assert pending["total"] == 2
