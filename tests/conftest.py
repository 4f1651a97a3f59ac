"""Pytest fixtures for the transaction core (in-memory collaborators)."""

from datetime import datetime, timedelta, timezone

import pytest

from transaction_service.auth import Access, Action, Employee, Session
from transaction_service.models import (
    CustomerRef, Location, OrderInit, Payment, ProductPurchase, TransactionInit, TransactionType,
)
from transaction_service.reconciler import QuantityReconciler
from transaction_service.repository import (
    InMemoryIntentLog, InMemoryPromotionStore, InMemoryStockLedger, InMemoryTransactionStore,
)
from transaction_service.workflow import TransactionProcessor

NOW = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)

ORIGIN = Location(store_code="001", store_id="store-001")
DESTINATION = Location(store_code="002", store_id="store-002")


def make_session(*actions: Action, authority: int = 1) -> Session:
    employee = Employee(
        id="emp-001",
        name="Test Cashier",
        level=[Access(action=action, authority=authority) for action in actions],
    )
    return Session(id="sess-001", key="key-001", employee=employee, expiry=NOW + timedelta(days=3650))


def make_line(sku: str, cost: float, quantity: float = 1, code: str = None, tags=None, **kwargs) -> ProductPurchase:
    return ProductPurchase(
        product_code=code or f"V-{sku}",
        product_sku=sku,
        product_cost=cost,
        quantity=quantity,
        tags=tags or [],
        **kwargs,
    )


def make_order(*lines: ProductPurchase, reference: str = "ORD-1", **kwargs) -> OrderInit:
    return OrderInit(
        reference=reference,
        origin=ORIGIN,
        destination=DESTINATION,
        products=list(lines),
        creation_date=NOW,
        **kwargs,
    )


def make_init(*orders: OrderInit, paid: float, transaction_type=TransactionType.OUT) -> TransactionInit:
    return TransactionInit(
        customer=CustomerRef(customer_id="cust-001", customer_name="Jane Doe"),
        transaction_type=transaction_type,
        products=list(orders),
        payment=[Payment(payment_method="card", amount=paid)],
        order_date=NOW,
        salesperson="emp-001",
        kiosk="kiosk-01",
    )


@pytest.fixture
def session() -> Session:
    return make_session(*Action)


@pytest.fixture
def powerless_session() -> Session:
    return make_session()


@pytest.fixture
def transaction_store() -> InMemoryTransactionStore:
    return InMemoryTransactionStore()


@pytest.fixture
def promotion_store() -> InMemoryPromotionStore:
    return InMemoryPromotionStore()


@pytest.fixture
def ledger() -> InMemoryStockLedger:
    return InMemoryStockLedger({
        ("store-001", "V-654321"): 10,
        ("store-001", "V-162534"): 20,
    })


@pytest.fixture
def intent_log() -> InMemoryIntentLog:
    return InMemoryIntentLog()


@pytest.fixture
def processor(transaction_store, promotion_store, ledger, intent_log) -> TransactionProcessor:
    return TransactionProcessor(
        transactions=transaction_store,
        promotions=promotion_store,
        reconciler=QuantityReconciler(ledger, intent_log),
    )


class FlakyLedger(InMemoryStockLedger):
    """Ledger failing for selected variant codes."""

    def __init__(self, failing=()):
        super().__init__()
        self.failing = set(failing)

    def apply_stock_delta(self, store_id, variant_code, delta, idempotency_key=None):
        if variant_code in self.failing:
            raise ConnectionError(f"ledger unavailable for {variant_code}")
        super().apply_stock_delta(store_id, variant_code, delta, idempotency_key)
