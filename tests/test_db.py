from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from postgrest.exceptions import APIError

from db import (
    CircuitBreaker,
    CircuitState,
    MemoryDatabase,
    SupabaseDatabase,
    create_database,
)
from errors import (
    AccountNotFound,
    InvalidAmount,
    InsufficientFunds,
    InsufficientPoints,
    OrderNotFound,
    StoreUnavailable,
)
from order import Order, OrderLine, OrderStatus, utcnow
from tests.conftest import ESPRESSO


def make_order(order_id, total="100.00", redeemed=0, earned=10, account_id="alice", created_at=None):
    kwargs = {}
    if created_at is not None:
        kwargs["created_at"] = created_at
        kwargs["updated_at"] = created_at
    return Order(
        order_id=order_id,
        account_id=account_id,
        lines=(OrderLine("espresso", 1, Decimal(total)),),
        subtotal=Decimal(total),
        reward_points_redeemed=redeemed,
        reward_points_earned=earned,
        total=Decimal(total),
        **kwargs
    )


def account_row(**overrides):
    row = {
        "id": "alice",
        "name": "Alice",
        "phone": "9876543210",
        "email": None,
        "role": "user",
        "wallet_balance": 325.0,
        "reward_points": 27,
    }
    row.update(overrides)
    return row


class TestMemoryDatabase:
    async def test_settle_applies_both_effects(self, db):
        account = await db.settle_order(make_order("ord_1", redeemed=20, earned=9))

        assert account.wallet_balance == Decimal("400.00")
        assert account.reward_points == 60 - 20 + 9
        assert (await db.get_order("ord_1")).status == OrderStatus.PENDING

    async def test_settle_rechecks_points(self, db):
        with pytest.raises(InsufficientPoints):
            await db.settle_order(make_order("ord_1", redeemed=61))

        assert await db.get_order("ord_1") is None

    async def test_settle_rechecks_funds(self, db):
        with pytest.raises(InsufficientFunds):
            await db.settle_order(make_order("ord_1", total="500.01"))

        assert (await db.get_account("alice")).wallet_balance == Decimal("500.00")

    async def test_settle_unknown_account(self, db):
        with pytest.raises(AccountNotFound):
            await db.settle_order(make_order("ord_1", account_id="ghost"))

    async def test_exact_balance_allowed(self, db):
        account = await db.settle_order(make_order("ord_1", total="500.00", earned=0))

        assert account.wallet_balance == Decimal("0.00")

    async def test_list_orders_most_recent_first(self, db):
        now = utcnow()
        await db.settle_order(make_order("ord_old", created_at=now - timedelta(minutes=5)))
        await db.settle_order(make_order("ord_new", created_at=now))
        await db.settle_order(make_order("ord_tie", created_at=now))

        ids = [o.order_id for o in await db.list_orders("alice")]

        assert ids == ["ord_tie", "ord_new", "ord_old"]

    async def test_list_orders_filters_by_account(self, db):
        await db.settle_order(make_order("ord_alice"))
        await db.settle_order(make_order("ord_bob", total="10.00", account_id="bob"))

        assert [o.order_id for o in await db.list_orders("bob")] == ["ord_bob"]
        assert len(await db.list_orders()) == 2

    async def test_compare_and_set(self, db):
        await db.settle_order(make_order("ord_1"))

        updated = await db.compare_and_set_status("ord_1", OrderStatus.PENDING, OrderStatus.PREPARING)
        stale = await db.compare_and_set_status("ord_1", OrderStatus.PENDING, OrderStatus.CANCELLED)

        assert updated.status == OrderStatus.PREPARING
        assert stale is None
        assert (await db.get_order("ord_1")).status == OrderStatus.PREPARING

    async def test_compare_and_set_unknown_order(self, db):
        with pytest.raises(OrderNotFound):
            await db.compare_and_set_status("nope", OrderStatus.PENDING, OrderStatus.PREPARING)

    async def test_unknown_ids_leave_no_locks_behind(self, db):
        accounts, orders = len(db._account_locks), len(db._order_locks)

        for _ in range(3):
            with pytest.raises(OrderNotFound):
                await db.compare_and_set_status("ord_missing", OrderStatus.PENDING, OrderStatus.PREPARING)
            with pytest.raises(AccountNotFound):
                await db.credit_wallet("ghost", Decimal("1.00"))
            with pytest.raises(AccountNotFound):
                await db.settle_order(make_order("ord_ghost", account_id="ghost"))

        assert len(db._account_locks) == accounts
        assert len(db._order_locks) == orders

    async def test_order_lock_created_on_settlement(self, db):
        await db.settle_order(make_order("ord_1"))

        assert "ord_1" in db._order_locks

    async def test_rejected_settlement_creates_no_order_lock(self, db):
        with pytest.raises(InsufficientFunds):
            await db.settle_order(make_order("ord_big", total="10000.00"))

        assert "ord_big" not in db._order_locks

    async def test_credit_wallet(self, db):
        account = await db.credit_wallet("bob", Decimal("25.50"))

        assert account.wallet_balance == Decimal("125.50")

    async def test_credit_unknown_account(self, db):
        with pytest.raises(AccountNotFound):
            await db.credit_wallet("ghost", Decimal("1.00"))

    async def test_list_menu_items(self, db):
        available = await db.list_menu_items(available_only=True)
        everything = await db.list_menu_items()

        assert "sold_out" not in {i.item_id for i in available}
        assert len(everything) == len(available) + 1

    async def test_get_menu_items_skips_missing(self, db):
        items = await db.get_menu_items({"espresso", "ghost"})

        assert list(items) == ["espresso"]


class TestSupabaseDatabase:
    def make_db(self):
        client = MagicMock()
        return SupabaseDatabase(client=client, timeout=1.0), client

    async def test_settle_calls_rpc(self):
        db, client = self.make_db()
        client.rpc.return_value.execute.return_value = SimpleNamespace(data=account_row())
        order = make_order("ord_1")

        account = await db.settle_order(order)

        client.rpc.assert_called_once_with("settle_order", {"p_order": order.to_record()})
        assert account.wallet_balance == Decimal("325.00")
        assert account.reward_points == 27

    @pytest.mark.parametrize("message,error", [
        ("INSUFFICIENT_FUNDS", InsufficientFunds),
        ("INSUFFICIENT_POINTS", InsufficientPoints),
        ("ACCOUNT_NOT_FOUND", AccountNotFound),
        ("INVALID_AMOUNT", InvalidAmount),
    ])
    async def test_rpc_business_errors(self, message, error):
        db, client = self.make_db()
        client.rpc.return_value.execute.side_effect = APIError(
            {"message": message, "code": "P0001", "hint": None, "details": None}
        )

        with pytest.raises(error):
            await db.settle_order(make_order("ord_1"))

        assert db.circuit_breaker.failure_count == 0

    async def test_unexpected_api_error_is_unavailable(self):
        db, client = self.make_db()
        client.rpc.return_value.execute.side_effect = APIError(
            {"message": "relation does not exist", "code": "42P01", "hint": None, "details": None}
        )

        with pytest.raises(StoreUnavailable):
            await db.settle_order(make_order("ord_1"))

        assert db.get_stats()["errors"] == 1

    async def test_credit_wallet_rpc_list_result(self):
        db, client = self.make_db()
        client.rpc.return_value.execute.return_value = SimpleNamespace(
            data=[account_row(wallet_balance="600.00")]
        )

        account = await db.credit_wallet("alice", Decimal("100.00"))

        client.rpc.assert_called_once_with(
            "credit_wallet", {"p_account_id": "alice", "p_amount": "100.00"}
        )
        assert account.wallet_balance == Decimal("600.00")

    async def test_get_account_missing(self):
        db, client = self.make_db()
        query = client.table.return_value.select.return_value.eq.return_value.limit.return_value
        query.execute.return_value = SimpleNamespace(data=[])

        assert await db.get_account("ghost") is None

    async def test_get_menu_items(self):
        db, client = self.make_db()
        query = client.table.return_value.select.return_value.in_.return_value
        query.execute.return_value = SimpleNamespace(data=[ESPRESSO.to_record()])

        items = await db.get_menu_items({"espresso"})

        assert items["espresso"].price == Decimal("100.00")
        client.table.assert_called_with("menu_items")

    async def test_compare_and_set_match(self):
        db, client = self.make_db()
        row = make_order("ord_1").with_status(OrderStatus.PREPARING).to_record()
        update = client.table.return_value.update.return_value.eq.return_value.eq.return_value
        update.execute.return_value = SimpleNamespace(data=[row])

        order = await db.compare_and_set_status("ord_1", OrderStatus.PENDING, OrderStatus.PREPARING)

        assert order.status == OrderStatus.PREPARING

    async def test_compare_and_set_stale(self):
        db, client = self.make_db()
        update = client.table.return_value.update.return_value.eq.return_value.eq.return_value
        update.execute.return_value = SimpleNamespace(data=[])
        read = client.table.return_value.select.return_value.eq.return_value.limit.return_value
        read.execute.return_value = SimpleNamespace(data=[make_order("ord_1").to_record()])

        assert await db.compare_and_set_status(
            "ord_1", OrderStatus.PREPARING, OrderStatus.READY
        ) is None

    async def test_compare_and_set_missing(self):
        db, client = self.make_db()
        update = client.table.return_value.update.return_value.eq.return_value.eq.return_value
        update.execute.return_value = SimpleNamespace(data=[])
        read = client.table.return_value.select.return_value.eq.return_value.limit.return_value
        read.execute.return_value = SimpleNamespace(data=[])

        with pytest.raises(OrderNotFound):
            await db.compare_and_set_status("ord_1", OrderStatus.PENDING, OrderStatus.PREPARING)

    async def test_circuit_opens_after_repeated_failures(self):
        db, client = self.make_db()
        client.table.side_effect = ConnectionError("unreachable")

        for _ in range(5):
            with pytest.raises(StoreUnavailable):
                await db.get_order("ord_1")

        assert not db.is_healthy()

        client.table.side_effect = None
        with pytest.raises(StoreUnavailable):
            await db.get_order("ord_1")
        assert db.get_stats()["errors"] == 5

    async def test_missing_client_is_unavailable(self):
        db = SupabaseDatabase(url=None, key=None)

        with pytest.raises(StoreUnavailable):
            await db.get_account("alice")


class TestCircuitBreaker:
    def test_half_open_failure_reopens(self):
        breaker = CircuitBreaker(threshold=1, timeout=0)
        breaker.record_failure()

        assert breaker.can_execute()
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

    def test_recovers_after_two_successes(self):
        breaker = CircuitBreaker(threshold=1, timeout=0)
        breaker.record_failure()
        breaker.can_execute()

        breaker.record_success()
        breaker.record_success()

        assert breaker.state == CircuitState.CLOSED


class TestCreateDatabase:
    def test_memory_backend(self):
        assert isinstance(create_database(SimpleNamespace(backend="memory")), MemoryDatabase)

    def test_supabase_backend(self, monkeypatch):
        created = {}

        def fake_create_client(url, key):
            created["args"] = (url, key)
            return MagicMock()

        monkeypatch.setattr("db.create_client", fake_create_client)

        database = create_database(SimpleNamespace(
            backend="supabase",
            supabase_url="https://x.supabase.co",
            supabase_key="key",
            timeout=5
        ))

        assert isinstance(database, SupabaseDatabase)
        assert created["args"] == ("https://x.supabase.co", "key")
