"""
イベントファブリック — RabbitMQ トピックエクスチェンジ

全サービスが 1 つの durable topic exchange (events.topic) を共有する。

  order-service    ── order.created ──────┐
  order-service    ── payment.confirmed ──┼──▶ events.topic ──▶ q.notifications
  billing-service  ── invoice.generated ──┘                     (durable, DLX 付き)

配信は at-least-once。同じイベントが複数回届く可能性があるため、
コンシューマは eventId で重複を吸収する。
パブリッシュはコミット後に行い、失敗してもコミット済みの状態変更は取り消さない
(配信ギャップとしてログに残す)。
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from uuid import uuid4

import pika
from pika.adapters.blocking_connection import BlockingChannel
from pika.exceptions import AMQPError
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

EXCHANGE = "events.topic"
EXCHANGE_TYPE = "topic"

DLX_EXCHANGE = "events.dlx"
DLQ_QUEUE = "events.dlq"

ORDER_CREATED = "order.created"
PAYMENT_CONFIRMED = "payment.confirmed"
INVOICE_GENERATED = "invoice.generated"


# ── イベント定義 ─────────────────────────────────


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Event(BaseModel):
    """全イベント共通のエンベロープ: {eventId, ...固有フィールド, ts}"""

    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(default_factory=lambda: str(uuid4()), alias="eventId")
    ts: datetime = Field(default_factory=_now)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class OrderCreated(Event):
    """注文が作成された"""
    order_id: str = Field(alias="orderId")
    customer_email: str
    total_cents: int
    currency: str


class PaymentConfirmed(Event):
    """支払いが確認された"""
    order_id: str = Field(alias="orderId")
    amount_cents: int
    currency: str
    customer_email: str = Field(alias="customerEmail")


class InvoiceGenerated(Event):
    """請求書が発行された"""
    invoice_id: str = Field(alias="invoiceId")
    order_id: str = Field(alias="orderId")
    document_url: str = Field(alias="documentUrl")


EVENT_TYPES: dict[str, type[Event]] = {
    ORDER_CREATED: OrderCreated,
    PAYMENT_CONFIRMED: PaymentConfirmed,
    INVOICE_GENERATED: InvoiceGenerated,
}


def parse_event(routing_key: str, body: bytes | str) -> Event:
    """ルーティングキーに対応するモデルで本文を検証する。"""
    model = EVENT_TYPES.get(routing_key)
    if model is None:
        raise ValueError(f"Unknown routing key: {routing_key}")
    return model.model_validate_json(body)


# ── トポロジ宣言 ─────────────────────────────────


def declare_exchange(channel: BlockingChannel) -> None:
    """メインのトピックエクスチェンジを宣言する (冪等)。"""
    channel.exchange_declare(exchange=EXCHANGE, exchange_type=EXCHANGE_TYPE, durable=True)


def declare_consumer_queue(
    channel: BlockingChannel,
    queue: str,
    routing_keys: list[str],
) -> None:
    """
    コンシューマ用の durable キューを宣言してバインドする。

    再処理しないと判断したメッセージ (nack requeue=False) は
    DLX 経由で events.dlq に送られ、黙って消えることはない。
    """
    declare_exchange(channel)
    channel.exchange_declare(exchange=DLX_EXCHANGE, exchange_type="fanout", durable=True)
    channel.queue_declare(queue=DLQ_QUEUE, durable=True)
    channel.queue_bind(queue=DLQ_QUEUE, exchange=DLX_EXCHANGE)

    channel.queue_declare(
        queue=queue,
        durable=True,
        arguments={"x-dead-letter-exchange": DLX_EXCHANGE},
    )
    for routing_key in routing_keys:
        channel.queue_bind(queue=queue, exchange=EXCHANGE, routing_key=routing_key)
        logger.info("Queue '%s' <- '%s'", queue, routing_key)


# ── パブリッシャ ─────────────────────────────────


class EventPublisher:
    """
    永続メッセージをトピックエクスチェンジに発行する。

    pika の BlockingConnection はスレッドセーフではないため、
    接続の操作はすべて専用の 1 スレッドで行う。
    publisher confirms を有効にし、ブローカーが受理するまで待つ。
    """

    def __init__(self, url: str) -> None:
        self._params = pika.URLParameters(url)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="amqp-publisher")
        self._connection: pika.BlockingConnection | None = None
        self._channel: BlockingChannel | None = None

    # 以下 _ で始まるメソッドは publisher スレッド上でのみ呼ばれる

    def _open_channel(self) -> BlockingChannel:
        if self._channel is not None and self._channel.is_open:
            return self._channel
        self._reset()
        self._connection = pika.BlockingConnection(self._params)
        channel = self._connection.channel()
        declare_exchange(channel)
        channel.confirm_delivery()
        self._channel = channel
        logger.info("Connected to RabbitMQ, exchange '%s' declared", EXCHANGE)
        return channel

    def _reset(self) -> None:
        connection, self._connection, self._channel = self._connection, None, None
        if connection is not None and connection.is_open:
            try:
                connection.close()
            except AMQPError:
                logger.debug("Ignoring error while closing stale AMQP connection")

    def _publish_blocking(self, routing_key: str, body: str, message_id: str) -> None:
        properties = pika.BasicProperties(
            delivery_mode=2,
            content_type="application/json",
            message_id=message_id,
        )
        # 接続が切れていたら 1 回だけ再接続して再送する
        for attempt in (1, 2):
            try:
                channel = self._open_channel()
                channel.basic_publish(
                    exchange=EXCHANGE,
                    routing_key=routing_key,
                    body=body.encode("utf-8"),
                    properties=properties,
                )
                return
            except AMQPError:
                self._reset()
                if attempt == 2:
                    raise
                logger.warning("AMQP publish failed, reconnecting")

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    async def connect(self) -> None:
        """起動時に接続とエクスチェンジ宣言を済ませる。"""
        await self._run(self._open_channel)

    async def publish(self, routing_key: str, event: Event) -> bool:
        """
        イベントを発行する。失敗は例外にせず False を返す。

        呼び出し元の状態変更はすでにコミット済みであり、
        発行失敗でロールバックしてはならない。
        """
        try:
            await self._run(self._publish_blocking, routing_key, event.to_json(), event.event_id)
        except AMQPError:
            logger.exception(
                "Event delivery gap: %s eventId=%s was not published",
                routing_key,
                event.event_id,
            )
            return False
        logger.info("Published %s eventId=%s", routing_key, event.event_id)
        return True

    async def close(self) -> None:
        await self._run(self._reset)
        self._executor.shutdown(wait=True)
