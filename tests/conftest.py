from decimal import Decimal
from types import SimpleNamespace

import pytest

from db import MemoryDatabase
from menu import MenuCategory, MenuItem
from wallet import Account, AccountRole


ESPRESSO = MenuItem(
    item_id="espresso",
    name="Espresso",
    price=Decimal("100.00"),
    category=MenuCategory.BEVERAGES,
    reward_points=10,
)
LATTE = MenuItem(
    item_id="latte",
    name="Latte",
    price=Decimal("150.00"),
    category=MenuCategory.BEVERAGES,
    reward_points=15,
)
COOKIE = MenuItem(
    item_id="cookie",
    name="Cookie",
    price=Decimal("45.50"),
    category=MenuCategory.SNACKS,
)
SOLD_OUT = MenuItem(
    item_id="sold_out",
    name="Seasonal Tart",
    price=Decimal("90.00"),
    category=MenuCategory.DESSERTS,
    available=False,
)


def twilio_config(**overrides):
    values = dict(
        enabled=True,
        account_sid="AC" + "0" * 32,
        auth_token="token",
        phone_number="+15550001111",
        default_country_code="+91",
        cafe_name="Café Delight",
    )
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.fixture
async def db():
    database = MemoryDatabase()
    for item in (ESPRESSO, LATTE, COOKIE, SOLD_OUT):
        await database.upsert_menu_item(item)

    await database.upsert_account(Account(
        account_id="alice",
        name="Alice",
        wallet_balance=Decimal("500.00"),
        reward_points=60,
        phone="9876543210",
    ))
    await database.upsert_account(Account(
        account_id="bob",
        name="Bob",
        wallet_balance=Decimal("100.00"),
    ))
    await database.upsert_account(Account(
        account_id="admin",
        name="Counter Staff",
        role=AccountRole.ADMIN,
    ))
    return database
