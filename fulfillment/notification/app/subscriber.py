"""
Notification Service — RabbitMQ コンシューマ

q.notifications を payment.confirmed / invoice.generated にバインドして購読する。

ACK 方針 (手動 ACK):
  - 通知を送ってから ACK する
  - 形式不正のメッセージ          → nack(requeue=False) で即 DLQ
  - 処理失敗 (eventId ごとに 1 回目) → nack(requeue=True) で再試行
  - 処理失敗 (max_attempts 回目)     → nack(requeue=False) で DLQ
  - 処理済みの eventId の再配信   → 何もせず ACK (重複通知しない)
"""

import logging
import time
from collections import OrderedDict

import pika
from pika.adapters.blocking_connection import BlockingChannel
from pika.exceptions import AMQPConnectionError
from pydantic import ValidationError

from ...common.events import INVOICE_GENERATED, PAYMENT_CONFIRMED, declare_consumer_queue, parse_event
from .handlers import Notifier

logger = logging.getLogger(__name__)

QUEUE = "q.notifications"
ROUTING_KEYS = [PAYMENT_CONFIRMED, INVOICE_GENERATED]


class NotificationConsumer:
    def __init__(
        self,
        notifier: Notifier,
        dedup_capacity: int = 10_000,
        max_attempts: int = 2,
    ) -> None:
        self.notifier = notifier
        self.dedup_capacity = dedup_capacity
        self.max_attempts = max_attempts
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._failures: OrderedDict[str, int] = OrderedDict()

    def _already_processed(self, event_id: str) -> bool:
        if event_id in self._seen:
            self._seen.move_to_end(event_id)
            return True
        return False

    def _remember(self, event_id: str) -> None:
        self._seen[event_id] = None
        while len(self._seen) > self.dedup_capacity:
            self._seen.popitem(last=False)
        self._failures.pop(event_id, None)

    def _record_failure(self, event_id: str) -> int:
        attempts = self._failures.pop(event_id, 0) + 1
        self._failures[event_id] = attempts
        while len(self._failures) > self.dedup_capacity:
            self._failures.popitem(last=False)
        return attempts

    def on_message(self, ch: BlockingChannel, method, properties, body: bytes) -> None:
        routing_key = method.routing_key
        try:
            event = parse_event(routing_key, body)
        except (ValidationError, ValueError) as e:
            logger.error("Malformed %s message -> DLQ: %s", routing_key, e)
            ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
            return

        if self._already_processed(event.event_id):
            logger.info("Duplicate eventId=%s (%s) -> ACK without notifying", event.event_id, routing_key)
            ch.basic_ack(delivery_tag=method.delivery_tag)
            return

        try:
            self.notifier.notify(routing_key, event)
        except Exception:
            attempts = self._record_failure(event.event_id)
            requeue = attempts < self.max_attempts
            if not requeue:
                self._failures.pop(event.event_id, None)
            logger.exception(
                "Notification failed for eventId=%s (%s), attempt %s/%s -> %s",
                event.event_id,
                routing_key,
                attempts,
                self.max_attempts,
                "requeue" if requeue else "DLQ",
            )
            ch.basic_nack(delivery_tag=method.delivery_tag, requeue=requeue)
            return

        self._remember(event.event_id)
        ch.basic_ack(delivery_tag=method.delivery_tag)


def connect_with_retry(url: str, retries: int = 15, delay: float = 2.0) -> pika.BlockingConnection:
    params = pika.URLParameters(url)
    for attempt in range(1, retries + 1):
        try:
            return pika.BlockingConnection(params)
        except AMQPConnectionError:
            logger.warning("RabbitMQ not ready, retry %s/%s", attempt, retries)
            time.sleep(delay)
    raise RuntimeError("Cannot connect to RabbitMQ")


def run_subscriber(url: str, consumer: NotificationConsumer, prefetch: int = 10) -> None:
    """Ctrl+C まで購読を続ける。"""
    connection = connect_with_retry(url)
    channel = connection.channel()
    declare_consumer_queue(channel, QUEUE, ROUTING_KEYS)
    channel.basic_qos(prefetch_count=prefetch)
    channel.basic_consume(queue=QUEUE, on_message_callback=consumer.on_message, auto_ack=False)
    logger.info("Waiting for events on %s", QUEUE)

    try:
        channel.start_consuming()
    except KeyboardInterrupt:
        channel.stop_consuming()
    finally:
        if connection.is_open:
            connection.close()
        logger.info("Stopped")
