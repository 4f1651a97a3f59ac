"""Tests for the Stock Service client and the intent retry queue."""
import json
import logging
from types import SimpleNamespace

import httpx
import pytest
from fastapi.testclient import TestClient

from mock_services import mock_stock_service
from transaction_service.clients import IntentRetryPublisher, StockServiceClient, handle_retry_message
from transaction_service.errors import ReconciliationFailure
from transaction_service.logging_config import setup_logging
from transaction_service.reconciler import QuantityReconciler, derive_intents
from transaction_service.repository import InMemoryStockLedger

from conftest import ORIGIN, FlakyLedger, make_init, make_line, make_order


class FakeChannel:
    def __init__(self):
        self.declared = []
        self.published = []
        self.acked = []
        self.nacked = []

    def queue_declare(self, queue, durable=False):
        self.declared.append((queue, durable))

    def basic_publish(self, exchange, routing_key, body, properties=None):
        self.published.append(SimpleNamespace(routing_key=routing_key, body=body, properties=properties))

    def basic_ack(self, delivery_tag):
        self.acked.append(delivery_tag)

    def basic_nack(self, delivery_tag, requeue=True):
        self.nacked.append((delivery_tag, requeue))


class FakeConnection:
    def __init__(self, channel):
        self._channel = channel
        self.is_closed = False

    @property
    def is_open(self):
        return not self.is_closed

    def channel(self):
        return self._channel

    def close(self):
        self.is_closed = True


@pytest.fixture
def stock_client():
    mock_stock_service.reset()
    client = StockServiceClient(client=TestClient(mock_stock_service.app))
    yield client
    client.close()


@pytest.fixture
def intents():
    sale = make_init(make_order(make_line("A", 10, quantity=2)), paid=20)
    return [intent.bind("t-1") for intent in derive_intents(sale)]


def test_stock_client_applies_delta(stock_client):
    result = stock_client.apply_stock_delta(ORIGIN.store_id, "V-A", -2, "ord-1:line-1")

    assert result == {"storeId": ORIGIN.store_id, "variantCode": "V-A", "level": -2, "duplicate": False}


def test_stock_client_redelivery_is_applied_once(stock_client):
    stock_client.apply_stock_delta(ORIGIN.store_id, "V-A", -2, "ord-1:line-1")
    result = stock_client.apply_stock_delta(ORIGIN.store_id, "V-A", -2, "ord-1:line-1")

    assert result["duplicate"] is True
    assert stock_client.client.get(f"/v1/stock/{ORIGIN.store_id}/V-A").json()["level"] == -2


def test_mock_stock_service_forgets_keys_on_reset(stock_client):
    stock_client.apply_stock_delta(ORIGIN.store_id, "V-A", -2, "ord-1:line-1")
    mock_stock_service.reset()

    result = stock_client.apply_stock_delta(ORIGIN.store_id, "V-A", -2, "ord-1:line-1")

    assert result["duplicate"] is False
    assert result["level"] == -2


def test_stock_client_raises_on_unavailable_store(stock_client):
    with pytest.raises(httpx.HTTPStatusError) as exc:
        stock_client.apply_stock_delta("offline-store", "V-A", -1, "ord-1:line-1")

    assert exc.value.response.status_code == 503


def test_reconciler_over_stock_service(stock_client, intents):
    QuantityReconciler(stock_client).apply(intents)

    assert stock_client.client.get(f"/v1/stock/{ORIGIN.store_id}/V-A").json()["level"] == -2


def test_publisher_declares_durable_queue_and_publishes_persistent_message(intents):
    channel = FakeChannel()
    publisher = IntentRetryPublisher(queue="retry", connection_factory=lambda: FakeConnection(channel))

    publisher.record(intents[0], "ledger unavailable")

    assert channel.declared == [("retry", True)]
    message = channel.published[0]
    assert message.routing_key == "retry"
    assert message.properties.delivery_mode == 2
    body = json.loads(message.body)
    assert body["idempotencyKey"] == intents[0].idempotency_key
    assert body["reason"] == "ledger unavailable"
    assert body["intent"]["transaction_id"] == "t-1"


def test_publisher_reconnects_when_connection_closed(intents):
    channel = FakeChannel()
    connections = []

    def factory():
        connections.append(FakeConnection(channel))
        return connections[-1]

    publisher = IntentRetryPublisher(queue="retry", connection_factory=factory)
    publisher.close()
    publisher.record(intents[0], "timeout")

    assert len(connections) == 2
    assert len(channel.published) == 1


def test_failed_intent_round_trips_through_retry_queue(intents):
    channel = FakeChannel()
    publisher = IntentRetryPublisher(queue="retry", connection_factory=lambda: FakeConnection(channel))
    ledger = FlakyLedger(failing={"V-A"})

    with pytest.raises(ReconciliationFailure):
        QuantityReconciler(ledger, publisher).apply(intents)

    ledger.failing.clear()
    handle_retry_message(QuantityReconciler(ledger), channel, SimpleNamespace(delivery_tag=7),
                         channel.published[0].body)

    assert channel.acked == [7]
    assert ledger.level(ORIGIN.store_id, "V-A") == -2


def test_retry_handler_republishes_with_attempt_count_when_ledger_still_failing(intents):
    channel = FakeChannel()
    waits = []
    body = json.dumps({"intent": intents[0].model_dump(mode="json")})

    handle_retry_message(QuantityReconciler(FlakyLedger(failing={"V-A"})), channel,
                         SimpleNamespace(delivery_tag=3), body, queue="retry", backoff=waits.append)

    assert channel.acked == [3]
    assert channel.nacked == []
    assert waits == [1]
    message = channel.published[0]
    assert message.routing_key == "retry"
    assert message.properties.delivery_mode == 2
    assert json.loads(message.body)["attempts"] == 1


def test_retry_handler_dead_letters_after_max_attempts(intents, caplog):
    channel = FakeChannel()
    reconciler = QuantityReconciler(FlakyLedger(failing={"V-A"}))
    body = json.dumps({"intent": intents[0].model_dump(mode="json")})

    for tag in range(1, 4):
        handle_retry_message(reconciler, channel, SimpleNamespace(delivery_tag=tag), body, max_attempts=3)
        if channel.published:
            body = channel.published.pop().body

    assert channel.acked == [1, 2]
    assert channel.nacked == [(3, False)]
    assert channel.published == []
    assert any(r.levelno == logging.CRITICAL and "Dead-lettered" in r.message for r in caplog.records)


@pytest.mark.parametrize("body", [b"not json", b'{"reason": "x"}', b'{"intent": {"delta": 1}}', b'[1, 2]'])
def test_retry_handler_rejects_malformed_messages(body):
    channel = FakeChannel()

    handle_retry_message(QuantityReconciler(InMemoryStockLedger()), channel, SimpleNamespace(delivery_tag=1), body)

    assert channel.nacked == [(1, False)]


def test_setup_logging_writes_to_file(tmp_path):
    log_file = tmp_path / "transactions.log"
    root = logging.getLogger()
    previous, previous_level = root.handlers[:], root.level
    root.handlers = []
    try:
        setup_logging(log_file=str(log_file), level="INFO")
        logging.getLogger("transaction_service.test").info("[Transaction: t-1] Persisted.")
        for handler in root.handlers:
            handler.flush()
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers = previous
        root.setLevel(previous_level)

    assert "[Transaction: t-1] Persisted." in log_file.read_text()
    assert logging.getLogger("pika").level == logging.WARNING
