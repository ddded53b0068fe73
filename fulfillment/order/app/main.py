"""
Order Service — FastAPI エントリーポイント

注文の作成 (Orchestrator)、支払いシグナルの受付 (Payment Confirmation Handler)、
注文の参照を提供する。在庫は Inventory Service に HTTP で引き当てを依頼し、
状態変更はコミット後に events.topic へ発行する。
"""

import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from uuid import UUID

import httpx
import redis.asyncio as aioredis
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from ...common.cache import ReadCache
from ...common.errors import install_exception_handlers
from ...common.events import EventPublisher
from ...common.logconfig import configure_logging
from .aggregate import PaymentOutcome
from .clients import InventoryClient
from .commands import OrderStore
from .config import Settings
from .models import metadata
from .orchestrator import OrderPlacementOrchestrator, RequestedLine
from .payments import PaymentConfirmationHandler


@dataclass
class Resources:
    engine: AsyncEngine
    session_factory: sessionmaker
    http: httpx.AsyncClient
    publisher: EventPublisher
    redis: aioredis.Redis | None = None

    @classmethod
    def open(cls, settings: Settings) -> "Resources":
        engine = create_async_engine(settings.database_url, echo=False, pool_pre_ping=True)
        return cls(
            engine=engine,
            session_factory=sessionmaker(engine, class_=AsyncSession, expire_on_commit=False),
            http=httpx.AsyncClient(timeout=settings.http_timeout),
            publisher=EventPublisher(settings.rabbit_url),
            redis=aioredis.from_url(settings.redis_url, decode_responses=True)
            if settings.redis_url
            else None,
        )

    async def aclose(self) -> None:
        await self.publisher.close()
        await self.http.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        await self.engine.dispose()


def _wire(app: FastAPI, settings: Settings, resources: Resources) -> None:
    store = OrderStore(
        resources.session_factory,
        ReadCache(resources.redis, "cache:orders", settings.order_cache_ttl),
    )
    app.state.resources = resources
    app.state.store = store
    app.state.orchestrator = OrderPlacementOrchestrator(
        InventoryClient(resources.http, settings.inventory_base_url),
        store,
        resources.publisher,
        release_on_failure=settings.release_on_order_failure,
    )
    app.state.payments = PaymentConfirmationHandler(
        store, resources.publisher, settings.payment_webhook_secret
    )


def create_app(settings: Settings | None = None, resources: Resources | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if resources is not None:
            yield
            return
        configure_logging("order-service", settings.log_level)
        owned = Resources.open(settings)
        async with owned.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        await owned.publisher.connect()
        _wire(app, settings, owned)
        yield
        await owned.aclose()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    install_exception_handlers(app)
    if resources is not None:
        _wire(app, settings, resources)
    app.include_router(router)
    return app


# ── Request Models ───────────────────────────────


class OrderItemRequest(BaseModel):
    product_id: int = Field(gt=0)
    quantity: int = Field(gt=0)
    # 指定された場合はカタログ価格と照合する (不一致なら 400)
    unit_price_cents: int | None = Field(default=None, ge=0)
    sku: str | None = None
    name: str | None = None


class CreateOrderRequest(BaseModel):
    customer_email: EmailStr
    currency: str = Field(default="USD", min_length=3, max_length=3)
    items: list[OrderItemRequest] = Field(min_length=1)


class WebhookRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: UUID = Field(alias="orderId")
    payment_status: PaymentOutcome = Field(default=PaymentOutcome.CONFIRMED, alias="paymentStatus")
    signature: str | None = None


# ── Dependencies ─────────────────────────────────


def get_resources(request: Request) -> Resources:
    return request.app.state.resources


def get_store(request: Request) -> OrderStore:
    return request.app.state.store


def get_orchestrator(request: Request) -> OrderPlacementOrchestrator:
    return request.app.state.orchestrator


def get_payments(request: Request) -> PaymentConfirmationHandler:
    return request.app.state.payments


router = APIRouter()


# ── Command Endpoints ────────────────────────────


@router.post("/orders", status_code=201)
async def cmd_place_order(
    req: CreateOrderRequest,
    orchestrator: OrderPlacementOrchestrator = Depends(get_orchestrator),
):
    """注文作成 (在庫引き当て → 注文 INSERT → order.created)"""
    agg = await orchestrator.place_order(
        req.customer_email,
        req.currency,
        [
            RequestedLine(
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price_cents=item.unit_price_cents,
            )
            for item in req.items
        ],
    )
    return agg.summary()


@router.post("/payments/webhook")
async def cmd_payment_webhook(
    req: WebhookRequest,
    payments: PaymentConfirmationHandler = Depends(get_payments),
):
    """支払いシグナル (CONFIRMED → PAID / FAILED → CANCELLED)"""
    agg = await payments.apply(str(req.order_id), req.payment_status, req.signature)
    return {
        "ok": True,
        "orderId": agg.id,
        "paymentStatus": req.payment_status.value,
        "status": agg.status.value,
    }


# ── Query Endpoints ──────────────────────────────


@router.get("/orders")
async def query_list_orders(store: OrderStore = Depends(get_store)):
    return {"items": await store.list_orders()}


@router.get("/orders/{order_id}")
async def query_get_order(order_id: str, store: OrderStore = Depends(get_store)):
    """注文と明細 (キャッシュ優先)"""
    payload, source = await store.get_order(order_id)
    return {"source": source, **payload}


@router.get("/health")
async def health(resources: Resources = Depends(get_resources)):
    try:
        async with resources.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        return JSONResponse(
            status_code=503,
            content={"ok": False, "service": "order-service", "error": str(e)},
        )
    return {"ok": True, "service": "order-service"}


app = create_app()


def run() -> None:
    """uvicorn で起動する (HOST / PORT で待ち受け先を変更できる)。"""
    uvicorn.run(
        "fulfillment.order.app.main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
    )


if __name__ == "__main__":
    run()
