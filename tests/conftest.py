"""
共通フィクスチャ

各サービスは SQLite (aiosqlite) のファイル DB で起動し、
サービス間の HTTP は httpx.ASGITransport でプロセス内に配線する。
Redis とイベントパブリッシャはメモリ上のテストダブルに差し替える。
"""

from contextlib import contextmanager

import httpx
import pytest
import pytest_asyncio
from botocore.exceptions import ClientError
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import event
from sqlalchemy.dialects import postgresql
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from fulfillment.billing.app import main as billing_main
from fulfillment.billing.app.config import Settings as BillingSettings
from fulfillment.billing.app.models import metadata as billing_metadata
from fulfillment.inventory.app import main as inventory_main
from fulfillment.inventory.app.config import Settings as InventorySettings
from fulfillment.inventory.app.models import metadata as inventory_metadata
from fulfillment.order.app import main as order_main
from fulfillment.order.app.config import Settings as OrderSettings
from fulfillment.order.app.models import metadata as order_metadata

PAYMENT_SECRET = "test_secret"


class FakeRedis:
    """ReadCache が使う GET / SET EX / INCR だけを持つ Redis ダブル"""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise RedisConnectionError("redis is down")

    async def get(self, key: str) -> str | None:
        self._check()
        return self.data.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._check()
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def incr(self, key: str) -> int:
        self._check()
        value = int(self.data.get(key, 0)) + 1
        self.data[key] = str(value)
        return value

    async def aclose(self) -> None:
        pass


class RecordingPublisher:
    """発行されたイベントを記録するだけのパブリッシャ"""

    def __init__(self) -> None:
        self.published: list[tuple[str, object]] = []
        self.fail = False

    async def connect(self) -> None:
        pass

    async def publish(self, routing_key: str, event) -> bool:
        if self.fail:
            return False
        self.published.append((routing_key, event))
        return True

    def of(self, routing_key: str) -> list:
        return [event for key, event in self.published if key == routing_key]

    async def close(self) -> None:
        pass


async def open_sqlite(tmp_path, name: str, metadata):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / name}",
        pool_size=1,
        max_overflow=0,
    )
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    return engine, sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@contextmanager
def postgres_statements(engine):
    """実行された文を PostgreSQL 方言でコンパイルした SQL として記録する。

    SQLite は FOR UPDATE を出力しないため、行ロックの有無はこちらで確認する。
    """
    statements: list[str] = []

    def record(conn, clauseelement, multiparams, params, execution_options):
        if hasattr(clauseelement, "compile"):
            statements.append(str(clauseelement.compile(dialect=postgresql.dialect())))

    sync_engine = engine.sync_engine
    event.listen(sync_engine, "before_execute", record)
    try:
        yield statements
    finally:
        event.remove(sync_engine, "before_execute", record)


# ── Test doubles ─────────────────────────────────


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


# ── Inventory Service ────────────────────────────


@pytest_asyncio.fixture
async def inventory_resources(tmp_path, fake_redis):
    engine, session_factory = await open_sqlite(tmp_path, "inventory.db", inventory_metadata)
    yield inventory_main.Resources(engine=engine, session_factory=session_factory, redis=fake_redis)
    await engine.dispose()


@pytest.fixture
def inventory_app(inventory_resources):
    return inventory_main.create_app(InventorySettings(), inventory_resources)


@pytest.fixture
def catalog(inventory_app):
    return inventory_app.state.catalog


@pytest.fixture
def ledger(inventory_app):
    return inventory_app.state.ledger


@pytest_asyncio.fixture
async def inventory_client(inventory_app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=inventory_app), base_url="http://inventory"
    ) as client:
        yield client


@pytest.fixture
def add_product(inventory_client):
    async def _add(sku: str, price_cents: int, qty: int, name: str | None = None) -> int:
        resp = await inventory_client.post(
            "/inventory/products",
            json={"sku": sku, "name": name or sku, "price_cents": price_cents, "initial_qty": qty},
        )
        assert resp.status_code == 201, resp.text
        return resp.json()["id"]

    return _add


# ── Order Service ────────────────────────────────


@pytest.fixture
def order_settings() -> OrderSettings:
    return OrderSettings(
        inventory_base_url="http://inventory",
        payment_webhook_secret=PAYMENT_SECRET,
    )


@pytest_asyncio.fixture
async def order_resources(tmp_path, inventory_app, publisher):
    engine, session_factory = await open_sqlite(tmp_path, "orders.db", order_metadata)
    http = httpx.AsyncClient(transport=httpx.ASGITransport(app=inventory_app))
    yield order_main.Resources(
        engine=engine,
        session_factory=session_factory,
        http=http,
        publisher=publisher,
        redis=FakeRedis(),
    )
    await http.aclose()
    await engine.dispose()


@pytest.fixture
def order_app(order_settings, order_resources):
    return order_main.create_app(order_settings, order_resources)


@pytest.fixture
def order_store(order_app):
    return order_app.state.store


@pytest_asyncio.fixture
async def order_client(order_app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=order_app), base_url="http://orders"
    ) as client:
        yield client


# ── Billing Service ──────────────────────────────


class FakeS3:
    """put_object だけを持つ S3 クライアントのダブル"""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}
        self.down = False

    def put_object(self, Bucket: str, Key: str, Body: bytes, ContentType: str) -> dict:
        if self.down:
            raise ClientError(
                {"Error": {"Code": "ServiceUnavailable", "Message": "minio is down"}},
                "PutObject",
            )
        self.objects[f"{Bucket}/{Key}"] = Body
        self.content_types[f"{Bucket}/{Key}"] = ContentType
        return {"ETag": "\"etag\""}

    def close(self) -> None:
        pass


@pytest.fixture
def blobs() -> FakeS3:
    return FakeS3()


@pytest_asyncio.fixture
async def billing_resources(tmp_path, order_app, blobs, publisher):
    engine, session_factory = await open_sqlite(tmp_path, "billing.db", billing_metadata)
    http = httpx.AsyncClient(transport=httpx.ASGITransport(app=order_app))
    yield billing_main.Resources(
        engine=engine,
        session_factory=session_factory,
        http=http,
        s3=blobs,
        publisher=publisher,
    )
    await http.aclose()
    await engine.dispose()


@pytest.fixture
def billing_app(billing_resources):
    settings = BillingSettings(
        order_base_url="http://orders",
        blob_bucket="invoices",
        blob_public_url="http://localhost:9000",
    )
    return billing_main.create_app(settings, billing_resources)


@pytest_asyncio.fixture
async def billing_client(billing_app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=billing_app), base_url="http://billing"
    ) as client:
        yield client
