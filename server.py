"""
Order API Server
================
FastAPI surface over the order core: REST routes, real-time websocket,
health and metrics.

The caller's identity comes from the X-Account-Id header, set by the
upstream auth layer. Everything else is mapping requests onto core
operations and core errors onto HTTP statuses.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from pydantic import BaseModel

from config import Config, get_config, validate_configuration
from db import Database, MemoryDatabase, create_database
from errors import AccountNotFound, Forbidden, OrderCoreError, Unauthenticated
from menu import MenuCategory, MenuItem
from notifications import Notifier
from order_status import StatusController
from pricing import LoyaltyPolicy
from live_updates import ConnectionRegistry
from settlement import OrderService
from sms import SMSClient
from wallet import Account, AccountRole, WalletService


logger = structlog.get_logger(__name__)

# Websocket close codes (application range)
WS_UNAUTHENTICATED = 4401
WS_FORBIDDEN = 4403
WS_UNKNOWN_ACCOUNT = 4404


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

def configure_logging(level: str = "INFO", json_logs: bool = False):
    """Configure stdlib logging and structlog together."""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level, logging.INFO)
        ),
        cache_logger_on_first_use=True
    )


# ============================================================================
# REQUEST BODIES
# ============================================================================
# Field types are loose on purpose: the core validates values and returns
# its own typed errors.

class OrderItemRequest(BaseModel):
    menuItemId: Optional[str] = None
    quantity: Any = None


class PlaceOrderRequest(BaseModel):
    items: List[OrderItemRequest] = []
    redeemPoints: Any = 0


class StatusUpdateRequest(BaseModel):
    status: Any = None


class TopUpRequest(BaseModel):
    amount: Any = None


class MenuItemRequest(BaseModel):
    name: Optional[str] = None
    price: Any = None
    category: Optional[str] = None
    rewardPoints: Any = 0
    description: Optional[str] = ""
    available: Any = True


# ============================================================================
# DEPENDENCIES
# ============================================================================

async def current_account(
    request: Request,
    x_account_id: Optional[str] = Header(default=None)
) -> Account:
    """Resolve the authenticated account from the upstream auth header."""
    if not x_account_id:
        raise Unauthenticated()

    account = await request.app.state.db.get_account(x_account_id)
    if account is None:
        raise AccountNotFound()

    structlog.contextvars.bind_contextvars(account_id=account.account_id)
    return account


async def admin_account(account: Account = Depends(current_account)) -> Account:
    if not account.is_admin:
        raise Forbidden()
    return account


# ============================================================================
# DEMO DATA
# ============================================================================

async def seed_demo_data(db: Database):
    """Sample menu and two accounts for local runs."""
    menu = [
        ("item_espresso", "Espresso", "100", MenuCategory.BEVERAGES, 10),
        ("item_cappuccino", "Cappuccino", "150", MenuCategory.BEVERAGES, 15),
        ("item_samosa", "Samosa", "40", MenuCategory.SNACKS, 4),
        ("item_brownie", "Chocolate Brownie", "120", MenuCategory.DESSERTS, 12),
    ]
    for item_id, name, price, category, points in menu:
        await db.upsert_menu_item(MenuItem(
            item_id=item_id,
            name=name,
            price=Decimal(price),
            category=category,
            reward_points=points
        ))

    await db.upsert_account(Account(
        account_id="acct_demo",
        name="Demo Customer",
        wallet_balance=Decimal("500.00"),
        reward_points=60
    ))
    await db.upsert_account(Account(
        account_id="acct_admin",
        name="Café Admin",
        role=AccountRole.ADMIN
    ))

    logger.info("demo_data_seeded")


# ============================================================================
# APPLICATION FACTORY
# ============================================================================

def create_app(
    config: Optional[Config] = None,
    db: Optional[Database] = None,
    sms_client: Optional[SMSClient] = None,
    registry: Optional[ConnectionRegistry] = None
) -> FastAPI:
    """
    Build the application with explicitly constructed collaborators.

    Anything not passed in is built from configuration.
    """
    config = config or get_config()
    db = db or create_database(config.store)
    sms_client = sms_client or SMSClient(config.twilio)
    registry = registry or ConnectionRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await db.start()
        await sms_client.start()

        if config.store.seed_demo_data and isinstance(db, MemoryDatabase):
            await seed_demo_data(db)

        logger.info("server_started", store=config.store.backend, sms=sms_client.enabled)
        yield

        logger.info("server_shutting_down")
        await registry.close_all()
        await sms_client.stop()
        await db.stop()
        logger.info("server_stopped")

    app = FastAPI(title="Café Order Core", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Accept", "X-Account-Id"],
    )

    notifier = Notifier(db, publisher=registry, sms_client=sms_client)

    app.state.config = config
    app.state.db = db
    app.state.sms = sms_client
    app.state.registry = registry
    app.state.orders = OrderService(db, LoyaltyPolicy.from_config(config.loyalty))
    app.state.status = StatusController(db, notifier)
    app.state.wallet = WalletService(db)

    _register_error_handlers(app)
    _register_routes(app)

    app.mount("/metrics", make_asgi_app())

    return app


def _register_error_handlers(app: FastAPI):

    @app.exception_handler(OrderCoreError)
    async def order_core_error_handler(request: Request, exc: OrderCoreError):
        if exc.http_status >= 500:
            logger.error("request_failed", path=request.url.path, error=exc.kind)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "validation_error",
                "message": "Request body is malformed"
            }
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error("unexpected_error", path=request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "internal_error", "message": "Server error"}
        )


def _register_routes(app: FastAPI):

    @app.get("/health")
    async def health_check(request: Request) -> Dict[str, Any]:
        state = request.app.state
        healthy = state.db.is_healthy() and state.sms.is_healthy()
        return {
            "status": "healthy" if healthy else "degraded",
            "store": state.db.get_stats(),
            "sms": state.sms.get_stats(),
            "listeners": state.registry.connection_count(),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    @app.post("/api/orders", status_code=201)
    async def place_order(
        body: PlaceOrderRequest,
        request: Request,
        account: Account = Depends(current_account)
    ):
        receipt = await request.app.state.orders.place_order(
            account.account_id,
            [item.model_dump() for item in body.items],
            body.redeemPoints
        )
        return {"order": receipt.to_dict()}

    @app.get("/api/orders/history")
    async def order_history(request: Request, account: Account = Depends(current_account)):
        return await request.app.state.orders.history(account)

    @app.get("/api/orders/{order_id}")
    async def get_order(order_id: str, request: Request, account: Account = Depends(current_account)):
        return await request.app.state.orders.get_order(account, order_id)

    @app.put("/api/orders/{order_id}")
    async def update_order_status(
        order_id: str,
        body: StatusUpdateRequest,
        request: Request,
        admin: Account = Depends(admin_account)
    ):
        result = await request.app.state.status.update_status(order_id, body.status)
        names = await request.app.state.orders.item_names([result.order])
        return result.to_dict(names)

    # ------------------------------------------------------------------
    # Menu
    # ------------------------------------------------------------------

    @app.get("/api/menu")
    async def list_menu(request: Request):
        items = await request.app.state.orders.catalog.list_available()
        return [item.to_dict() for item in items]

    @app.post("/api/menu", status_code=201)
    async def add_menu_item(
        body: MenuItemRequest,
        request: Request,
        admin: Account = Depends(admin_account)
    ):
        item = await request.app.state.orders.catalog.add_item(body.model_dump())
        return item.to_dict()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    @app.get("/api/users/profile")
    async def profile(account: Account = Depends(current_account)):
        return account.to_dict()

    @app.post("/api/users/wallet/add")
    async def add_funds(
        body: TopUpRequest,
        request: Request,
        account: Account = Depends(current_account)
    ):
        updated = await request.app.state.wallet.top_up(account.account_id, body.amount)
        return updated.to_dict()

    # ------------------------------------------------------------------
    # Real-time
    # ------------------------------------------------------------------

    @app.websocket("/ws")
    async def order_updates(websocket: WebSocket, accountId: Optional[str] = None):
        """
        Push order status events for the authenticated account.

        The identity comes from the same X-Account-Id header as the REST
        routes. An ``accountId`` query parameter, when given, must name that
        same account.
        """
        state = websocket.app.state
        account_id = websocket.headers.get("x-account-id")

        if not account_id:
            await websocket.close(code=WS_UNAUTHENTICATED)
            return

        if accountId is not None and accountId != account_id:
            logger.warning("listener_identity_mismatch", account_id=account_id)
            await websocket.close(code=WS_FORBIDDEN)
            return

        account = await state.db.get_account(account_id)
        if account is None:
            await websocket.close(code=WS_UNKNOWN_ACCOUNT)
            return

        await websocket.accept()
        state.registry.register(account_id, websocket)

        try:
            while True:
                message = await websocket.receive_text()
                if message == "ping":
                    await websocket.send_text("pong")

        except WebSocketDisconnect:
            pass

        finally:
            state.registry.unregister(account_id, websocket)


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """Run the API server."""
    config = get_config()
    configure_logging(config.server.log_level, config.server.log_json)
    validate_configuration(config)

    logger.info("starting_server", host=config.server.host, port=config.server.port)

    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
        access_log=True
    )


if __name__ == "__main__":
    main()
