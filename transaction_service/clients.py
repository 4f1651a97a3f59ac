"""
This module provides communication clients for the external systems the
transaction core hands stock changes to:
- Stock Service (REST API): applies one stock delta per intent
- Intent retry queue (RabbitMQ): keeps intents that could not be applied
  after their transaction was persisted, and replays them
Each class encapsulates its protocol logic, error handling, and connection management.
"""

import json
import time
from typing import Callable, Optional

import httpx
import pika
import pydantic

from .config import (
    INTENT_RETRY_BACKOFF_SECONDS, INTENT_RETRY_MAX_ATTEMPTS, INTENT_RETRY_QUEUE, RABBITMQ_HOST, RABBITMQ_PASSWORD,
    RABBITMQ_USER, STOCK_SERVICE_URL,
)
from .logging_config import get_logger
from .reconciler import QuantityAlterationIntent

log = get_logger(__name__)


def default_connection() -> pika.BlockingConnection:
    """
    Opens a RabbitMQ connection with the configured credentials.

    Raises:
        pika.exceptions.AMQPConnectionError: If the broker is unavailable.
    """
    credentials = pika.PlainCredentials(RABBITMQ_USER, RABBITMQ_PASSWORD)
    return pika.BlockingConnection(
        pika.ConnectionParameters(host=RABBITMQ_HOST, credentials=credentials, heartbeat=60)
    )


# --- Stock Client (REST) ---
class StockServiceClient:
    """
    Client for the Stock Service (REST API).
    Implements the StockLedger interface: one POST per stock delta, carrying
    the intent's idempotency key so redelivered intents are applied once.
    """
    def __init__(self, base_url: str = STOCK_SERVICE_URL, client: Optional[httpx.Client] = None):
        """
        Initializes the HTTP client with proper timeout configuration.

        Args:
            base_url (str): Base URL of the stock service.
            client (httpx.Client | None): Preconfigured client (e.g. a test client); created when omitted.
        """
        timeout_config = httpx.Timeout(5.0, read=8.0)
        self.client = client or httpx.Client(base_url=base_url, timeout=timeout_config)

    def close(self):
        """Closes the HTTP client session."""
        self.client.close()

    def apply_stock_delta(self, store_id: str, variant_code: str, delta: float,
                          idempotency_key: Optional[str] = None) -> dict:
        """
        Applies a stock delta via the Stock Service REST API.
        Args:
            store_id (str): Store whose stock changes.
            variant_code (str): Variant whose stock changes.
            delta (float): Signed quantity change.
            idempotency_key (str | None): Deduplication key of the intent.
        Returns:
            dict: JSON response containing the resulting stock level.
        Raises:
            httpx.TimeoutException: If the service does not respond within the timeout.
            httpx.HTTPStatusError: If the service returns an error status (4xx or 5xx).
        """
        payload = {"storeId": store_id, "variantCode": variant_code, "delta": delta}
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}

        try:
            response = self.client.post("/v1/stock/adjustments", json=payload, headers=headers)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException:
            # Outcome unknown; a retry with the same key is safe.
            log.error(f"[Stock: {store_id}/{variant_code}] Stock Service timeout. Status unknown.")
            raise
        except httpx.HTTPStatusError as e:
            log.error(f"[Stock: {store_id}/{variant_code}] HTTP error from Stock Service: {e}")
            raise


# --- Intent Retry Publisher (MQ) ---
class IntentRetryPublisher:
    """
    Retry log on RabbitMQ.
    Implements the IntentLog interface: every failed intent is published as a
    persistent message so that it survives a broker restart.
    """
    def __init__(self, queue: str = INTENT_RETRY_QUEUE,
                 connection_factory: Callable[[], pika.BlockingConnection] = default_connection):
        """Initializes the RabbitMQ connection and declares the retry queue."""
        self.queue = queue
        self.connection_factory = connection_factory
        self.connection = None
        self.channel = None
        self._connect()

    def _connect(self):
        """
        Establishes the RabbitMQ connection.
        Raises:
            pika.exceptions.AMQPConnectionError: If the connection fails.
        """
        try:
            self.connection = self.connection_factory()
            self.channel = self.connection.channel()
            self.channel.queue_declare(queue=self.queue, durable=True)
            log.info(f"Intent retry log connected to RabbitMQ queue '{self.queue}'.")
        except pika.exceptions.AMQPConnectionError as e:
            log.critical(f"Cannot connect to RabbitMQ (intent retry log): {e}")
            raise

    def record(self, intent: QuantityAlterationIntent, reason: str) -> None:
        """
        Publishes a failed intent to the retry queue.
        Raises:
            Exception: If message publishing fails.
        """
        message = {
            "intent": intent.model_dump(mode="json"),
            "idempotencyKey": intent.idempotency_key,
            "reason": reason,
            "attempts": 0,
            "recordedAt": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        try:
            if not self.connection or self.connection.is_closed:
                self._connect()

            self.channel.basic_publish(
                exchange='',
                routing_key=self.queue,
                body=json.dumps(message),
                properties=pika.BasicProperties(delivery_mode=2)  # persistent message
            )
            log.info(f"[Transaction: {intent.transaction_id}] Intent {intent.idempotency_key} queued for retry.")
        except Exception as e:
            log.error(f"[Transaction: {intent.transaction_id}] FAILED to queue intent {intent.idempotency_key}: {e}")
            raise

    def close(self):
        if self.connection and self.connection.is_open:
            self.connection.close()


# --- Intent Retry Consumer (MQ) ---
def handle_retry_message(reconciler, channel, method, body, queue: str = INTENT_RETRY_QUEUE,
                         max_attempts: int = INTENT_RETRY_MAX_ATTEMPTS,
                         backoff: Optional[Callable[[int], None]] = None) -> None:
    """
    Re-applies one intent taken from the retry queue.

    Malformed messages are rejected without requeue (dead-lettered). An intent
    that fails again is republished with its attempt count increased, after
    `backoff(attempt)` when given, and the original message is acked. Once
    `max_attempts` is reached the message is dead-lettered and logged as
    critical. Successfully applied intents are acked.
    """
    try:
        data = json.loads(body)
        intent = QuantityAlterationIntent.model_validate(data["intent"])
        attempt = int(data.get("attempts", 0)) + 1
    except (ValueError, TypeError, KeyError, pydantic.ValidationError):
        log.error(f"[INTENT-RETRY] Invalid message received: {body!r}")
        channel.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
        return

    log_prefix = f"[INTENT-RETRY][Transaction: {intent.transaction_id}]"
    try:
        reconciler.retry([intent])
    except Exception as e:
        if attempt >= max_attempts:
            log.critical(f"{log_prefix} Intent {intent.idempotency_key} failed {attempt} times: {e}. "
                         f"Dead-lettered. MANUAL RECONCILIATION REQUIRED!")
            channel.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
            return

        log.warning(f"{log_prefix} Attempt {attempt}/{max_attempts} failed: {e}. Requeued.")
        if backoff is not None:
            backoff(attempt)
        channel.basic_publish(
            exchange='',
            routing_key=queue,
            body=json.dumps({**data, "attempts": attempt, "reason": str(e)}),
            properties=pika.BasicProperties(delivery_mode=2)
        )
        channel.basic_ack(delivery_tag=method.delivery_tag)
        return

    log.info(f"{log_prefix} Intent {intent.idempotency_key} applied.")
    channel.basic_ack(delivery_tag=method.delivery_tag)


def start_intent_retry_consumer(reconciler, queue: str = INTENT_RETRY_QUEUE,
                                connection_factory: Callable[[], pika.BlockingConnection] = default_connection):
    """
    Consumes the retry queue forever, re-applying intents through `reconciler`.

    The reconciler used here should have no retry log of its own, otherwise an
    intent failing again would be published twice. Failed attempts wait with an
    exponential backoff (INTENT_RETRY_BACKOFF_SECONDS, capped at 60s) before being
    requeued. On connection loss or errors, it reconnects after 10 seconds.
    """
    log.info("Intent retry consumer starting...")
    while True:
        try:
            connection = connection_factory()
            channel = connection.channel()
            channel.queue_declare(queue=queue, durable=True)
            channel.basic_qos(prefetch_count=1)

            def backoff(attempt):
                # connection.sleep keeps heartbeats flowing while waiting
                connection.sleep(min(INTENT_RETRY_BACKOFF_SECONDS * 2 ** (attempt - 1), 60))

            def callback(ch, method, properties, body):
                handle_retry_message(reconciler, ch, method, body, queue=queue, backoff=backoff)

            log.info(f"[INTENT-RETRY] Consumer is listening on '{queue}'.")
            channel.basic_consume(queue=queue, on_message_callback=callback)
            channel.start_consuming()

        except pika.exceptions.AMQPConnectionError:
            log.warning("Intent retry consumer: connection to RabbitMQ lost. Reconnecting in 10s...")
            time.sleep(10)
        except Exception as e:
            log.error(f"Intent retry consumer: critical error. {e}. Restarting in 10s.")
            time.sleep(10)
