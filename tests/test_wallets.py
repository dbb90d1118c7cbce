"""Wallet surface: transfers, admin adjustments, freezing, reconciliation and top-ups."""

import pytest
from sqlalchemy import update

from skillmint.core.enum import EntryCategory, TopupStatus
from skillmint.core.errors import (
    Forbidden,
    InsufficientFunds,
    SignatureInvalid,
    Upstream,
    ValidationFailure,
)
from skillmint.core.security import hmac_sha256_hex
from skillmint.core.settings import settings
from skillmint.db.models.database import Wallets
from skillmint.services.shares.wallets import WalletsService


def payment_signature(gateway_order_id: str, payment_id: str) -> str:
    return hmac_sha256_hex(settings.RAZORPAY_KEY_SECRET, f"{gateway_order_id}|{payment_id}")


@pytest.fixture
def wallets(session, leases, gateway):
    return WalletsService(session, leases, gateway)


class TestTransfer:
    async def test_moves_funds(self, wallets, seed, balance) -> None:
        alice = await seed.user("Alice")
        bob = await seed.user("Bob")
        await seed.fund(alice, 30_000)

        result = await wallets.transfer_async(alice, bob.id, 12_000, "gift-1", "for the course")

        assert result["debit"].category == EntryCategory.TRANSFER.value
        assert result["credit"].description == "for the course"
        assert await balance(alice.id) == 18_000
        assert await balance(bob.id) == 12_000

    async def test_replay_returns_same_entries(self, wallets, seed, balance) -> None:
        alice = await seed.user("Alice")
        bob = await seed.user("Bob")
        await seed.fund(alice, 30_000)

        first = await wallets.transfer_async(alice, bob.id, 12_000, "gift-1")
        again = await wallets.transfer_async(alice, bob.id, 12_000, "gift-1")

        assert again["debit"].id == first["debit"].id
        assert await balance(alice.id) == 18_000

    async def test_rejects_self_and_missing_key(self, wallets, seed) -> None:
        alice = await seed.user("Alice")
        bob = await seed.user("Bob")
        with pytest.raises(ValidationFailure):
            await wallets.transfer_async(alice, alice.id, 100, "k")
        with pytest.raises(ValidationFailure):
            await wallets.transfer_async(alice, bob.id, 100, "")

    async def test_inactive_recipient(self, wallets, seed) -> None:
        alice = await seed.user("Alice")
        ghost = await seed.user("Ghost", is_active=False)
        await seed.fund(alice, 1_000)
        with pytest.raises(ValidationFailure):
            await wallets.transfer_async(alice, ghost.id, 500, "k")

    async def test_insufficient_funds(self, wallets, seed, balance) -> None:
        alice = await seed.user("Alice")
        bob = await seed.user("Bob")
        alice_id, bob_id = alice.id, bob.id
        await seed.fund(alice, 1_000)
        with pytest.raises(InsufficientFunds):
            await wallets.transfer_async(alice, bob_id, 1_001, "k")
        assert await balance(alice_id) == 1_000
        assert await balance(bob_id) == 0

    async def test_frozen_sender(self, wallets, seed) -> None:
        admin = await seed.admin()
        alice = await seed.user("Alice")
        bob = await seed.user("Bob")
        await seed.fund(alice, 5_000)
        await wallets.freeze_async(admin, alice.id)
        with pytest.raises(Forbidden):
            await wallets.transfer_async(alice, bob.id, 1_000, "k")


class TestAdmin:
    async def test_credit_and_debit(self, wallets, seed, balance) -> None:
        admin = await seed.admin()
        user = await seed.user()

        await wallets.admin_credit_async(admin, user.id, 7_000, "goodwill", "ticket-42")
        await wallets.admin_credit_async(admin, user.id, 7_000, "goodwill", "ticket-42")
        entry = await wallets.admin_debit_async(admin, user.id, 2_000, "correction")

        assert entry.category == EntryCategory.ADMIN_ADJUSTMENT.value
        assert entry.reference == f"admin:{admin.id}"
        assert await balance(user.id) == 5_000

    async def test_non_admin_forbidden(self, wallets, seed) -> None:
        user = await seed.user()
        with pytest.raises(Forbidden):
            await wallets.admin_credit_async(user, user.id, 1_000, "free money")
        with pytest.raises(Forbidden):
            await wallets.freeze_async(user, user.id)

    async def test_unfreeze(self, wallets, seed) -> None:
        admin = await seed.admin()
        user = await seed.user()
        assert (await wallets.freeze_async(admin, user.id)).is_locked
        assert not (await wallets.freeze_async(admin, user.id, frozen=False)).is_locked

    async def test_summary(self, wallets, seed) -> None:
        user = await seed.user()
        await seed.fund(user, 9_000)
        summary = await wallets.summary_async(user)
        assert (summary["total"], summary["available"], summary["reserved"]) == (9_000, 9_000, 0)
        assert summary["total_earned"] == 0
        assert summary["currency"] == "INR"

    async def test_transactions_page(self, wallets, seed) -> None:
        user = await seed.user()
        for _ in range(3):
            await seed.fund(user, 1_000)
        page = await wallets.transactions_async(user, limit=2)
        assert len(page["items"]) == 2
        assert page["next_cursor"] is not None


class TestReconcile:
    async def test_repairs_drift(self, wallets, seed, session) -> None:
        admin = await seed.admin()
        user = await seed.user()
        await seed.fund(user, 9_000)
        await session.execute(update(Wallets).where(Wallets.user_id == user.id).values(balance=123))
        await session.commit()

        report = await wallets.reconcile_async(admin, user.id)

        assert report["total"] == 9_000
        assert report["drift"] == {"total": 123 - 9_000, "reserved": 0}
        assert report["repaired"] is True

    async def test_clean_wallet(self, wallets, seed) -> None:
        admin = await seed.admin()
        user = await seed.user()
        await seed.fund(user, 9_000)

        report = await wallets.reconcile_async(admin, user.id)
        assert report["repaired"] is False


class TestTopup:
    async def test_create_and_confirm(self, wallets, gateway, seed, balance) -> None:
        user = await seed.user()
        created = await wallets.create_topup_async(user, 25_000)
        topup = created["topup"]

        assert created["gateway"]["key_id"] == "rzp_test_key"
        assert gateway.orders[0]["receipt"] == f"topup-{topup.id}"

        done = await wallets.confirm_topup_async(
            topup.id, "pay_topup0001", payment_signature(topup.gateway_order_id, "pay_topup0001"), user
        )
        again = await wallets.confirm_topup_async(
            topup.id, "pay_topup0001", payment_signature(topup.gateway_order_id, "pay_topup0001"), user
        )

        assert done.status == TopupStatus.COMPLETED.value
        assert again.entry_id == done.entry_id
        assert await balance(user.id) == 25_000

    async def test_bad_signature(self, wallets, seed, balance) -> None:
        user = await seed.user()
        topup = (await wallets.create_topup_async(user, 25_000))["topup"]
        with pytest.raises(SignatureInvalid):
            await wallets.confirm_topup_async(topup.id, "pay_x", "deadbeef", user)
        assert await balance(user.id) == 0

    async def test_other_users_topup(self, wallets, seed) -> None:
        user = await seed.user()
        intruder = await seed.user("Intruder")
        topup = (await wallets.create_topup_async(user, 25_000))["topup"]
        with pytest.raises(Forbidden):
            await wallets.confirm_topup_async(
                topup.id, "pay_x", payment_signature(topup.gateway_order_id, "pay_x"), intruder
            )

    async def test_gateway_rejection_fails_topup(self, wallets, gateway, seed) -> None:
        user = await seed.user()
        gateway.fail(transient=False, status_code=400)
        with pytest.raises(Upstream):
            await wallets.create_topup_async(user, 25_000)

    @pytest.mark.parametrize("amount", [0, -1])
    async def test_invalid_amount(self, wallets, seed, amount) -> None:
        user = await seed.user()
        with pytest.raises(ValidationFailure):
            await wallets.create_topup_async(user, amount)
