"""
Database Module
===============
Async data access for menu items, accounts and orders.

Two backends share one interface:
- MemoryDatabase: in-process store for development and tests
- SupabaseDatabase: Postgres via Supabase, with a circuit breaker

Both provide the two atomic primitives the order core depends on:
- settle_order: validate balances, write the order and adjust the account
  as one unit
- compare_and_set_status: change an order's status only if it still holds
  the expected value
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Any, Callable, Iterable, Optional

from postgrest.exceptions import APIError
from prometheus_client import Counter
from supabase import create_client, Client

from errors import (
    AccountNotFound,
    InsufficientFunds,
    InsufficientPoints,
    InvalidAmount,
    OrderNotFound,
    StoreUnavailable,
)
from menu import MenuItem
from order import Order, OrderStatus
from wallet import Account


logger = logging.getLogger(__name__)


# Configuration
CIRCUIT_BREAKER_THRESHOLD = 5
CIRCUIT_BREAKER_TIMEOUT = 30  # seconds
DEFAULT_TIMEOUT = 10.0  # seconds


# ============================================================================
# METRICS
# ============================================================================

store_errors_total = Counter(
    "store_errors_total",
    "Data store call failures",
    ["operation"]
)


# ============================================================================
# CIRCUIT BREAKER
# ============================================================================

class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"            # store calls rejected until the timeout passes
    HALF_OPEN = "half_open"  # probing; one failure reopens


class CircuitBreaker:
    """
    Stops hammering an unreachable store.

    Opens after ``threshold`` consecutive failures, lets probes through once
    ``timeout`` seconds have passed, and closes again after two successful
    probes.
    """

    def __init__(
        self,
        threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        timeout: int = CIRCUIT_BREAKER_TIMEOUT
    ):
        self.threshold = threshold
        self.timeout = timeout
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at: Optional[datetime] = None
        self.probe_successes = 0

    def record_success(self):
        self.failure_count = 0

        if self.state != CircuitState.HALF_OPEN:
            return

        self.probe_successes += 1
        if self.probe_successes >= 2:
            self.state = CircuitState.CLOSED
            self.probe_successes = 0
            logger.info("Store circuit closed, calls resumed")

    def record_failure(self):
        self.failure_count += 1
        self.opened_at = datetime.now(timezone.utc)

        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.threshold:
            self.state = CircuitState.OPEN
            logger.error(f"Store circuit open after {self.failure_count} failures")

    def can_execute(self) -> bool:
        if self.state != CircuitState.OPEN:
            return True

        waited = (datetime.now(timezone.utc) - self.opened_at).total_seconds()
        if waited < self.timeout:
            return False

        self.state = CircuitState.HALF_OPEN
        self.probe_successes = 0
        logger.info("Store circuit half-open, probing")
        return True

    def get_state(self) -> str:
        return self.state.value


# ============================================================================
# INTERFACE
# ============================================================================

class Database:
    """
    Store interface used by the order core.

    Implementations must make settle_order, credit_wallet and
    compare_and_set_status atomic with respect to concurrent callers.
    """

    async def start(self):
        pass

    async def stop(self):
        pass

    def is_healthy(self) -> bool:
        return True

    def get_stats(self) -> Dict[str, Any]:
        return {}

    # Catalog
    async def get_menu_items(self, item_ids: Iterable[str]) -> Dict[str, MenuItem]:
        raise NotImplementedError

    async def list_menu_items(self, available_only: bool = False) -> List[MenuItem]:
        raise NotImplementedError

    async def upsert_menu_item(self, item: MenuItem):
        raise NotImplementedError

    # Accounts
    async def get_account(self, account_id: str) -> Optional[Account]:
        raise NotImplementedError

    async def upsert_account(self, account: Account):
        raise NotImplementedError

    async def credit_wallet(self, account_id: str, amount: Decimal) -> Account:
        raise NotImplementedError

    # Orders
    async def settle_order(self, order: Order) -> Account:
        """
        Persist a pending order and apply its balance effects atomically.

        Returns:
            The account as updated by the settlement

        Raises:
            AccountNotFound, InsufficientPoints, InsufficientFunds
        """
        raise NotImplementedError

    async def get_order(self, order_id: str) -> Optional[Order]:
        raise NotImplementedError

    async def list_orders(self, account_id: Optional[str] = None) -> List[Order]:
        """Orders most-recent-first, optionally for one account."""
        raise NotImplementedError

    async def compare_and_set_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new_status: OrderStatus
    ) -> Optional[Order]:
        """
        Set the status only if it currently equals ``expected``.

        Returns:
            The updated order, or None if the status had moved on

        Raises:
            OrderNotFound: If the order does not exist
        """
        raise NotImplementedError


# ============================================================================
# MEMORY BACKEND
# ============================================================================

class MemoryDatabase(Database):
    """
    In-process store.

    Per-account and per-order asyncio locks serialize read-modify-write
    sequences; the critical sections contain no other awaits, so a settlement
    is never left half applied by task cancellation.
    """

    def __init__(self):
        self._menu: Dict[str, MenuItem] = {}
        self._accounts: Dict[str, Account] = {}
        self._orders: Dict[str, Order] = {}
        self._order_seq: Dict[str, int] = {}
        self._seq = 0

        # One lock per stored account and per stored order, created with the record
        self._account_locks: Dict[str, asyncio.Lock] = {}
        self._order_locks: Dict[str, asyncio.Lock] = {}

        self.read_count = 0
        self.write_count = 0

        logger.info("MemoryDatabase initialized")

    async def get_menu_items(self, item_ids: Iterable[str]) -> Dict[str, MenuItem]:
        self.read_count += 1
        return {i: self._menu[i] for i in item_ids if i in self._menu}

    async def list_menu_items(self, available_only: bool = False) -> List[MenuItem]:
        self.read_count += 1
        return [
            item for item in self._menu.values()
            if item.available or not available_only
        ]

    async def upsert_menu_item(self, item: MenuItem):
        self.write_count += 1
        self._menu[item.item_id] = item

    async def get_account(self, account_id: str) -> Optional[Account]:
        self.read_count += 1
        return self._accounts.get(account_id)

    async def upsert_account(self, account: Account):
        lock = self._account_locks.setdefault(account.account_id, asyncio.Lock())
        async with lock:
            self.write_count += 1
            self._accounts[account.account_id] = account

    def _account_lock(self, account_id: str) -> asyncio.Lock:
        lock = self._account_locks.get(account_id)
        if lock is None:
            raise AccountNotFound()
        return lock

    async def credit_wallet(self, account_id: str, amount: Decimal) -> Account:
        async with self._account_lock(account_id):
            account = self._accounts.get(account_id)
            if account is None:
                raise AccountNotFound()

            updated = replace(
                account,
                wallet_balance=account.wallet_balance + amount
            )
            self._accounts[account_id] = updated
            self.write_count += 1
            return updated

    async def settle_order(self, order: Order) -> Account:
        async with self._account_lock(order.account_id):
            account = self._accounts.get(order.account_id)
            if account is None:
                raise AccountNotFound()

            # Authoritative re-check against the committed balance
            if order.reward_points_redeemed > account.reward_points:
                raise InsufficientPoints()

            if account.wallet_balance < order.total:
                raise InsufficientFunds()

            updated = replace(
                account,
                wallet_balance=account.wallet_balance - order.total,
                reward_points=(
                    account.reward_points
                    - order.reward_points_redeemed
                    + order.reward_points_earned
                )
            )

            # Both writes happen with no await in between
            self._seq += 1
            self._orders[order.order_id] = order
            self._order_locks.setdefault(order.order_id, asyncio.Lock())
            self._order_seq[order.order_id] = self._seq
            self._accounts[account.account_id] = updated
            self.write_count += 2

            return updated

    async def get_order(self, order_id: str) -> Optional[Order]:
        self.read_count += 1
        return self._orders.get(order_id)

    async def list_orders(self, account_id: Optional[str] = None) -> List[Order]:
        self.read_count += 1
        orders = [
            o for o in self._orders.values()
            if account_id is None or o.account_id == account_id
        ]
        return sorted(
            orders,
            key=lambda o: (o.created_at, self._order_seq[o.order_id]),
            reverse=True
        )

    async def compare_and_set_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new_status: OrderStatus
    ) -> Optional[Order]:
        lock = self._order_locks.get(order_id)
        if lock is None:
            raise OrderNotFound()

        async with lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFound()

            if order.status != expected:
                return None

            updated = order.with_status(new_status)
            self._orders[order_id] = updated
            self.write_count += 1
            return updated

    def get_stats(self) -> Dict[str, Any]:
        return {
            "backend": "memory",
            "reads": self.read_count,
            "writes": self.write_count,
            "menu_items": len(self._menu),
            "accounts": len(self._accounts),
            "orders": len(self._orders)
        }


# ============================================================================
# SUPABASE BACKEND
# ============================================================================

# Messages raised by the Postgres functions in sql/schema.sql
RPC_ERRORS = {
    "ACCOUNT_NOT_FOUND": AccountNotFound,
    "INSUFFICIENT_POINTS": InsufficientPoints,
    "INSUFFICIENT_FUNDS": InsufficientFunds,
    "INVALID_AMOUNT": InvalidAmount,
}


class SupabaseDatabase(Database):
    """
    Supabase-backed store.

    The supabase client is synchronous; every call runs in the default
    executor under a timeout. Settlement and wallet credits are Postgres
    functions so each runs as a single transaction holding the account row
    lock.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[Client] = None
    ):
        self.client: Optional[Client] = client
        self.timeout = timeout
        self.circuit_breaker = CircuitBreaker()

        # Stats
        self.read_count = 0
        self.write_count = 0
        self.error_count = 0

        if self.client is None:
            self._initialize_client(url, key)

        logger.info("SupabaseDatabase initialized")

    def _initialize_client(self, url: Optional[str], key: Optional[str]):
        """Connect unless credentials are missing; calls then fail as unavailable."""
        if not url or not key:
            logger.error("Supabase URL or key missing, store calls will fail")
            return

        try:
            self.client = create_client(url, key)
            logger.info("Supabase client connected")
        except Exception as e:
            logger.error(f"Supabase client could not be created: {e}")

    async def _execute(self, operation: str, query: Callable[[], Any], write: bool = False):
        """
        Run one blocking supabase call with timeout and circuit breaker.

        Raises:
            StoreUnavailable: Client missing, circuit open, timeout or
                unexpected store error
            OrderCoreError: Domain error raised by a Postgres function
        """
        if not self.client:
            logger.error(f"No Supabase client for {operation}")
            raise StoreUnavailable()

        if not self.circuit_breaker.can_execute():
            logger.warning(f"Circuit breaker open, rejecting {operation}")
            raise StoreUnavailable()

        try:
            loop = asyncio.get_running_loop()
            result = await asyncio.wait_for(
                loop.run_in_executor(None, query),
                timeout=self.timeout
            )

        except APIError as e:
            domain_error = RPC_ERRORS.get((e.message or "").strip())
            if domain_error is not None:
                # A business rejection means the store is healthy
                self.circuit_breaker.record_success()
                raise domain_error()

            self._record_error(operation, f"{e.code}: {e.message}")
            raise StoreUnavailable()

        except asyncio.TimeoutError:
            self._record_error(operation, "timeout")
            raise StoreUnavailable()

        except Exception as e:
            self._record_error(operation, str(e))
            raise StoreUnavailable()

        self.circuit_breaker.record_success()
        if write:
            self.write_count += 1
        else:
            self.read_count += 1

        return result

    def _record_error(self, operation: str, detail: str):
        logger.error(f"Store {operation} failed: {detail}")
        self.error_count += 1
        self.circuit_breaker.record_failure()
        store_errors_total.labels(operation=operation).inc()

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    async def get_menu_items(self, item_ids: Iterable[str]) -> Dict[str, MenuItem]:
        ids = list(item_ids)
        if not ids:
            return {}

        result = await self._execute(
            "get_menu_items",
            lambda: self.client.table("menu_items").select("*").in_("id", ids).execute()
        )
        items = [MenuItem.from_record(row) for row in result.data or []]
        return {item.item_id: item for item in items}

    async def list_menu_items(self, available_only: bool = False) -> List[MenuItem]:
        def query():
            q = self.client.table("menu_items").select("*")
            if available_only:
                q = q.eq("available", True)
            return q.execute()

        result = await self._execute("list_menu_items", query)
        return [MenuItem.from_record(row) for row in result.data or []]

    async def upsert_menu_item(self, item: MenuItem):
        await self._execute(
            "upsert_menu_item",
            lambda: self.client.table("menu_items").upsert(item.to_record()).execute(),
            write=True
        )

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def get_account(self, account_id: str) -> Optional[Account]:
        result = await self._execute(
            "get_account",
            lambda: self.client.table("accounts")
                .select("*")
                .eq("id", account_id)
                .limit(1)
                .execute()
        )
        if result.data:
            return Account.from_record(result.data[0])
        return None

    async def upsert_account(self, account: Account):
        await self._execute(
            "upsert_account",
            lambda: self.client.table("accounts").upsert(account.to_record()).execute(),
            write=True
        )

    async def credit_wallet(self, account_id: str, amount: Decimal) -> Account:
        result = await self._execute(
            "credit_wallet",
            lambda: self.client.rpc(
                "credit_wallet",
                {"p_account_id": account_id, "p_amount": str(amount)}
            ).execute(),
            write=True
        )
        return Account.from_record(_single_row(result.data))

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def settle_order(self, order: Order) -> Account:
        result = await self._execute(
            "settle_order",
            lambda: self.client.rpc(
                "settle_order",
                {"p_order": order.to_record()}
            ).execute(),
            write=True
        )
        return Account.from_record(_single_row(result.data))

    async def get_order(self, order_id: str) -> Optional[Order]:
        result = await self._execute(
            "get_order",
            lambda: self.client.table("orders")
                .select("*")
                .eq("id", order_id)
                .limit(1)
                .execute()
        )
        if result.data:
            return Order.from_record(result.data[0])
        return None

    async def list_orders(self, account_id: Optional[str] = None) -> List[Order]:
        def query():
            q = self.client.table("orders").select("*")
            if account_id is not None:
                q = q.eq("account_id", account_id)
            return q.order("created_at", desc=True).execute()

        result = await self._execute("list_orders", query)
        return [Order.from_record(row) for row in result.data or []]

    async def compare_and_set_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new_status: OrderStatus
    ) -> Optional[Order]:
        updated_at = datetime.now(timezone.utc).isoformat()

        result = await self._execute(
            "compare_and_set_status",
            lambda: self.client.table("orders")
                .update({"status": new_status.value, "updated_at": updated_at})
                .eq("id", order_id)
                .eq("status", expected.value)
                .execute(),
            write=True
        )

        if result.data:
            return Order.from_record(result.data[0])

        # Nothing matched: either gone or moved on
        if await self.get_order(order_id) is None:
            raise OrderNotFound()
        return None

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        """Get database statistics."""
        return {
            "backend": "supabase",
            "reads": self.read_count,
            "writes": self.write_count,
            "errors": self.error_count,
            "circuit_breaker": self.circuit_breaker.get_state(),
            "circuit_failures": self.circuit_breaker.failure_count
        }

    def is_healthy(self) -> bool:
        """Healthy while connected and the circuit is not open."""
        return (
            self.client is not None and
            self.circuit_breaker.state != CircuitState.OPEN
        )


def _single_row(data: Any) -> Dict[str, Any]:
    """RPCs returning a row type come back as an object or a one-row list."""
    if isinstance(data, list):
        if not data:
            raise StoreUnavailable()
        return data[0]
    if not data:
        raise StoreUnavailable()
    return data


# ============================================================================
# FACTORY
# ============================================================================

def create_database(store_config) -> Database:
    """Build the configured backend."""
    if store_config.backend == "supabase":
        return SupabaseDatabase(
            url=store_config.supabase_url,
            key=store_config.supabase_key,
            timeout=store_config.timeout
        )

    logger.warning("Using in-memory store; data is not persisted")
    return MemoryDatabase()
