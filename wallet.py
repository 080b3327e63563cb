"""
Wallet Module
=============
Customer accounts: identity, wallet balance and reward points.

Balances are only ever changed by the database's atomic primitives
(``settle_order`` and ``credit_wallet``); this module never writes them
directly.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Any, Optional

import structlog

from errors import AccountNotFound, InvalidAmount
from money import to_money


logger = structlog.get_logger(__name__)

MAX_TOP_UP = Decimal("100000.00")


class AccountRole(Enum):
    USER = "user"
    ADMIN = "admin"


@dataclass(frozen=True)
class Account:
    account_id: str
    name: str
    wallet_balance: Decimal = Decimal("0.00")
    reward_points: int = 0
    phone: Optional[str] = None
    email: Optional[str] = None
    role: AccountRole = AccountRole.USER

    @property
    def is_admin(self) -> bool:
        return self.role == AccountRole.ADMIN

    def wallet_snapshot(self) -> Dict[str, Any]:
        return {
            "balance": float(self.wallet_balance),
            "rewardPoints": self.reward_points
        }

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.account_id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "role": self.role.value,
            "wallet_balance": str(self.wallet_balance),
            "reward_points": self.reward_points
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Account":
        return cls(
            account_id=record["id"],
            name=record.get("name") or "",
            wallet_balance=to_money(record.get("wallet_balance", 0)),
            reward_points=int(record.get("reward_points", 0)),
            phone=record.get("phone"),
            email=record.get("email"),
            role=AccountRole(record.get("role") or "user")
        )

    def to_dict(self) -> Dict[str, Any]:
        """Profile representation (no secrets held here to begin with)."""
        return {
            "id": self.account_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "role": self.role.value,
            "wallet": self.wallet_snapshot()
        }


class WalletService:
    """Profile reads and wallet top-ups."""

    def __init__(self, db):
        self.db = db

    async def get_profile(self, account_id: str) -> Account:
        account = await self.db.get_account(account_id)
        if account is None:
            raise AccountNotFound()
        return account

    async def top_up(self, account_id: str, amount: Any) -> Account:
        """
        Credit the wallet by a positive amount.

        The payment itself is taken by an external provider before this is
        called; this only records the credit.

        Raises:
            InvalidAmount: If the amount is not a positive number
            AccountNotFound: If the account does not exist
        """
        try:
            value = to_money(amount)
        except ValueError:
            raise InvalidAmount()

        if value <= 0 or value > MAX_TOP_UP:
            raise InvalidAmount()

        account = await self.db.credit_wallet(account_id, value)

        logger.info("wallet_topped_up", account_id=account_id)
        return account
