from __future__ import annotations

import argparse
from datetime import datetime, timedelta, timezone

from transaction_service.auth import Access, Action, Employee, Session
from transaction_service.errors import TransactionServiceError
from transaction_service.logging_config import get_logger, setup_logging
from transaction_service.promotions import PromotionService
from transaction_service.reconciler import QuantityReconciler
from transaction_service.repository import (
    InMemoryIntentLog, InMemoryPromotionStore, InMemoryStockLedger, InMemoryTransactionStore,
)
from transaction_service.workflow import TransactionProcessor

log = get_logger("run_transaction")


def demo_session() -> Session:
    employee = Employee(
        id="demo-employee",
        name="Demo Cashier",
        level=[Access(action=action, authority=1) for action in Action],
    )
    return Session(id="demo", key="demo-key", employee=employee,
                   expiry=datetime.now(timezone.utc) + timedelta(hours=1))


def main() -> None:
    p = argparse.ArgumentParser(description="Create one template transaction in memory and print the result.")
    p.add_argument("--customer", type=str, default="demo-customer")
    p.add_argument("--promotions", action="store_true", help="Seed the template promotions first")
    p.add_argument("--log-file", type=str, default="", help="Also write logs to this file")
    args = p.parse_args()

    setup_logging(log_file=args.log_file)

    session = demo_session()
    promotions = InMemoryPromotionStore()
    ledger = InMemoryStockLedger()
    processor = TransactionProcessor(
        transactions=InMemoryTransactionStore(),
        promotions=promotions,
        reconciler=QuantityReconciler(ledger, InMemoryIntentLog()),
    )

    if args.promotions:
        PromotionService(promotions).generate(session)

    try:
        transaction = processor.generate(args.customer, session)
    except TransactionServiceError as e:
        log.error(f"Demo failed: {e.to_dict()}")
        raise SystemExit(1)

    print("\n=== RESULT ===")
    print(transaction.model_dump_json(indent=2))
    for order in transaction.products:
        for line in order.products:
            print(f"stock {order.origin.store_code}/{line.product_code}:",
                  ledger.level(order.origin.store_id, line.product_code))


if __name__ == "__main__":
    main()
