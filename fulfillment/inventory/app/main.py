"""
Inventory Service — FastAPI エントリーポイント

在庫 (Stock Ledger) と商品カタログ (Product Catalog Cache) を所有する。
在庫行を変更できるのはこのサービスだけで、他サービスは HTTP で引き当てを依頼する。
"""

import os
from contextlib import asynccontextmanager
from dataclasses import dataclass

import redis.asyncio as aioredis
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from ...common.cache import ReadCache
from ...common.errors import install_exception_handlers
from ...common.logconfig import configure_logging
from . import commands, queries
from .config import Settings
from .models import metadata


@dataclass
class Resources:
    """プロセス全体で共有する接続 (起動時に取得し、終了時に解放する)"""

    engine: AsyncEngine
    session_factory: sessionmaker
    redis: aioredis.Redis | None = None

    @classmethod
    def open(cls, settings: Settings) -> "Resources":
        engine = create_async_engine(settings.database_url, echo=False, pool_pre_ping=True)
        return cls(
            engine=engine,
            session_factory=sessionmaker(engine, class_=AsyncSession, expire_on_commit=False),
            redis=aioredis.from_url(settings.redis_url, decode_responses=True)
            if settings.redis_url
            else None,
        )

    async def aclose(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
        await self.engine.dispose()


def _wire(app: FastAPI, settings: Settings, resources: Resources) -> None:
    catalog = queries.ProductCatalog(
        resources.session_factory,
        ReadCache(resources.redis, "cache:inventory", settings.catalog_cache_ttl),
    )
    app.state.resources = resources
    app.state.catalog = catalog
    app.state.ledger = commands.StockLedger(resources.session_factory, catalog)


def create_app(settings: Settings | None = None, resources: Resources | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if resources is not None:
            yield
            return
        configure_logging("inventory-service", settings.log_level)
        owned = Resources.open(settings)
        async with owned.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        _wire(app, settings, owned)
        yield
        await owned.aclose()

    app = FastAPI(title="Inventory Service", lifespan=lifespan)
    install_exception_handlers(app)
    if resources is not None:
        _wire(app, settings, resources)
    app.include_router(router)
    return app


# ── Request Models ───────────────────────────────


class CreateProductRequest(BaseModel):
    sku: str = Field(min_length=1)
    name: str = Field(min_length=1)
    price_cents: int = Field(ge=0)
    initial_qty: int = Field(default=0, ge=0)


class StockItem(BaseModel):
    product_id: int = Field(gt=0)
    quantity: int = Field(gt=0)


class StockRequest(BaseModel):
    items: list[StockItem] = Field(min_length=1)

    def pairs(self) -> list[tuple[int, int]]:
        return [(item.product_id, item.quantity) for item in self.items]


class LookupRequest(BaseModel):
    product_ids: list[int] = Field(min_length=1)


# ── Dependencies ─────────────────────────────────


def get_resources(request: Request) -> Resources:
    return request.app.state.resources


def get_catalog(request: Request) -> queries.ProductCatalog:
    return request.app.state.catalog


def get_ledger(request: Request) -> commands.StockLedger:
    return request.app.state.ledger


router = APIRouter()


# ── Catalog Endpoints ────────────────────────────


@router.post("/inventory/products", status_code=201)
async def cmd_create_product(
    req: CreateProductRequest,
    resources: Resources = Depends(get_resources),
    catalog: queries.ProductCatalog = Depends(get_catalog),
):
    """商品作成コマンド (初期在庫付き)"""
    return await commands.create_product(
        resources.session_factory,
        catalog,
        req.sku,
        req.name,
        req.price_cents,
        req.initial_qty,
    )


@router.get("/inventory/products")
async def query_list_products(catalog: queries.ProductCatalog = Depends(get_catalog)):
    """商品一覧 (キャッシュ優先)"""
    items, source = await catalog.get()
    return {"source": source, "items": items}


@router.post("/inventory/products/lookup")
async def query_lookup_products(
    req: LookupRequest,
    resources: Resources = Depends(get_resources),
):
    """価格照会 (常に DB から)"""
    async with resources.session_factory() as session:
        items = await queries.lookup_products(session, req.product_ids)
    return {"items": items}


@router.delete("/inventory/products/{product_id}", status_code=204)
async def cmd_delete_product(
    product_id: int,
    resources: Resources = Depends(get_resources),
    catalog: queries.ProductCatalog = Depends(get_catalog),
):
    await commands.delete_product(resources.session_factory, catalog, product_id)
    return Response(status_code=204)


# ── Stock Endpoints ──────────────────────────────


@router.post("/inventory/stock/reserve")
async def cmd_reserve(req: StockRequest, ledger: commands.StockLedger = Depends(get_ledger)):
    """在庫引き当てコマンド (all-or-nothing)"""
    remaining = await ledger.reserve(req.pairs())
    return {"reserved": True, "remaining": remaining}


@router.post("/inventory/stock/release")
async def cmd_release(req: StockRequest, ledger: commands.StockLedger = Depends(get_ledger)):
    """在庫解放コマンド (補償トランザクション)"""
    restored = await ledger.release(req.pairs())
    return {"released": True, "available": restored}


@router.get("/health")
async def health(resources: Resources = Depends(get_resources)):
    try:
        async with resources.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        return JSONResponse(
            status_code=503,
            content={"ok": False, "service": "inventory-service", "error": str(e)},
        )
    return {"ok": True, "service": "inventory-service"}


app = create_app()


def run() -> None:
    """uvicorn で起動する (HOST / PORT で待ち受け先を変更できる)。"""
    uvicorn.run(
        "fulfillment.inventory.app.main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
    )


if __name__ == "__main__":
    run()
