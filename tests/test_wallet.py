from decimal import Decimal

import pytest

from errors import AccountNotFound, InvalidAmount
from wallet import Account, AccountRole, WalletService


class TestAccount:
    def test_record_round_trip_keeps_role(self):
        account = Account("staff", "Staff", Decimal("12.50"), 3, role=AccountRole.ADMIN)

        restored = Account.from_record(account.to_record())

        assert restored == account
        assert restored.is_admin

    def test_profile_dict(self):
        account = Account("alice", "Alice", Decimal("325.00"), 27, phone="9876543210")

        assert account.to_dict()["wallet"] == {"balance": 325.0, "rewardPoints": 27}
        assert account.to_dict()["role"] == "user"


class TestWalletService:
    async def test_top_up(self, db):
        account = await WalletService(db).top_up("bob", 50)

        assert account.wallet_balance == Decimal("150.00")

    async def test_top_up_rounds_to_cents(self, db):
        account = await WalletService(db).top_up("bob", "0.005")

        assert account.wallet_balance == Decimal("100.01")

    @pytest.mark.parametrize("amount", [0, -10, "abc", None, True, "NaN", 100000.01])
    async def test_invalid_amounts(self, db, amount):
        with pytest.raises(InvalidAmount):
            await WalletService(db).top_up("bob", amount)

        assert (await db.get_account("bob")).wallet_balance == Decimal("100.00")

    async def test_unknown_account(self, db):
        with pytest.raises(AccountNotFound):
            await WalletService(db).top_up("ghost", 10)

    async def test_get_profile(self, db):
        assert (await WalletService(db).get_profile("alice")).name == "Alice"

        with pytest.raises(AccountNotFound):
            await WalletService(db).get_profile("ghost")
