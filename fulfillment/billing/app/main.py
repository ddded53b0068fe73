"""
Billing Service — FastAPI エントリーポイント

注文の請求書を発行し、ドキュメントをブロブストアに保存する。
注文データは Order Service から HTTP で読むだけで、書き込みはしない。
"""

import os
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
import uvicorn
from botocore.client import BaseClient
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from ...common.errors import install_exception_handlers
from ...common.events import EventPublisher
from ...common.logconfig import configure_logging
from . import queries
from .blob_store import BlobStore, make_s3_client
from .clients import OrderClient
from .commands import InvoiceWorkflow
from .config import Settings
from .models import metadata


@dataclass
class Resources:
    engine: AsyncEngine
    session_factory: sessionmaker
    http: httpx.AsyncClient
    s3: BaseClient
    publisher: EventPublisher | None = None

    @classmethod
    def open(cls, settings: Settings) -> "Resources":
        engine = create_async_engine(settings.database_url, echo=False, pool_pre_ping=True)
        return cls(
            engine=engine,
            session_factory=sessionmaker(engine, class_=AsyncSession, expire_on_commit=False),
            http=httpx.AsyncClient(timeout=settings.http_timeout),
            s3=make_s3_client(settings),
            publisher=EventPublisher(settings.rabbit_url) if settings.rabbit_url else None,
        )

    async def aclose(self) -> None:
        if self.publisher is not None:
            await self.publisher.close()
        await self.http.aclose()
        self.s3.close()
        await self.engine.dispose()


def _wire(app: FastAPI, settings: Settings, resources: Resources) -> None:
    app.state.resources = resources
    app.state.workflow = InvoiceWorkflow(
        resources.session_factory,
        OrderClient(resources.http, settings.order_base_url),
        BlobStore(resources.s3, settings.blob_bucket, settings.blob_public_url),
        resources.publisher,
    )


def create_app(settings: Settings | None = None, resources: Resources | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if resources is not None:
            yield
            return
        configure_logging("billing-service", settings.log_level)
        owned = Resources.open(settings)
        async with owned.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        if owned.publisher is not None:
            await owned.publisher.connect()
        _wire(app, settings, owned)
        yield
        await owned.aclose()

    app = FastAPI(title="Billing Service", lifespan=lifespan)
    install_exception_handlers(app)
    if resources is not None:
        _wire(app, settings, resources)
    app.include_router(router)
    return app


# ── Request Models ───────────────────────────────


class GenerateInvoiceRequest(BaseModel):
    # 注文の通貨を上書きする場合のみ指定
    currency: str | None = Field(default=None, min_length=3, max_length=3)


# ── Dependencies ─────────────────────────────────


def get_resources(request: Request) -> Resources:
    return request.app.state.resources


def get_workflow(request: Request) -> InvoiceWorkflow:
    return request.app.state.workflow


router = APIRouter()


@router.post("/billing/generate/{order_id}", status_code=201)
async def cmd_generate_invoice(
    order_id: str,
    req: GenerateInvoiceRequest | None = None,
    workflow: InvoiceWorkflow = Depends(get_workflow),
):
    """請求書発行コマンド (呼ぶたびに新しい請求書を作る)"""
    return await workflow.generate_invoice(order_id, req.currency if req else None)


@router.get("/billing/invoices/{order_id}")
async def query_list_invoices(order_id: str, resources: Resources = Depends(get_resources)):
    async with resources.session_factory() as session:
        return {"orderId": order_id, "invoices": await queries.list_invoices(session, order_id)}


@router.get("/health")
async def health(resources: Resources = Depends(get_resources)):
    try:
        async with resources.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        return JSONResponse(
            status_code=503,
            content={"ok": False, "service": "billing-service", "error": str(e)},
        )
    return {"ok": True, "service": "billing-service"}


app = create_app()


def run() -> None:
    """uvicorn で起動する (HOST / PORT で待ち受け先を変更できる)。"""
    uvicorn.run(
        "fulfillment.billing.app.main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
    )


if __name__ == "__main__":
    run()
