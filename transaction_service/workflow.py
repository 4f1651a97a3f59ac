"""
workflow.py — Core Orchestration Logic for Transaction Processing

This module contains the TransactionProcessor, which coordinates pricing,
payment validation, persistence, stock reconciliation and order status
changes in the correct sequence.

Creation Workflow:
1. Check the session's CreateTransaction authority
2. Derive the stock intents of the transaction (pure)
3. Price every order: line discounts, active promotions, order discount
4. Validate the sum of payments against the computed cost (tolerance 0.1)
5. Persist the transaction; nothing has been mutated before this point
6. Apply the stock intents at the origin stores
7. Return the freshly re-fetched transaction

Failure Handling:
    - Authorization or validation failures abort before any mutation.
    - A persistence failure during save aborts before any stock change.
    - If stock intents fail AFTER the transaction was saved, the transaction
      stays recorded, the failed intents go to the retry log, and a
      ReconciliationFailure is raised (logged as critical, manual action may be needed).
"""

from datetime import datetime, timedelta
from typing import List, Optional, Union

from .auth import Action, Session, check_permissions
from .config import PAYMENT_TOLERANCE
from .errors import NotFound, ReconciliationFailure, ValidationError
from .logging_config import get_logger
from .models import (
    CustomerRef, Location, Note, Order, OrderInit, Payment, PickStatus, ProductPurchase,
    Transaction, TransactionInit, TransactionInput, TransactionType, new_id, utc_now,
)
from .orders import OPEN_ORDER_KINDS, OrderStateMachine
from .promotions import price_orders
from .reconciler import QuantityReconciler, derive_intents
from .repository import PromotionRepository, TransactionRepository, persistence_guard

log = get_logger(__name__)


class TransactionProcessor:
    """
    Entry point of the core for the calling layer.

    Every public operation takes the requesting Session explicitly; the
    processor holds no per-request state and may be shared between threads.

    Args:
        transactions (TransactionRepository): Transaction persistence collaborator.
        promotions (PromotionRepository): Source of the active promotion catalog.
        reconciler (QuantityReconciler): Applies stock intents after a transaction is saved.
        state_machine (OrderStateMachine | None): Status rules, permissive unless configured strict.
        payment_tolerance (float): Maximum absolute difference between payments and cost.
    """

    def __init__(self, transactions: TransactionRepository, promotions: PromotionRepository,
                 reconciler: QuantityReconciler, state_machine: Optional[OrderStateMachine] = None,
                 payment_tolerance: float = PAYMENT_TOLERANCE):
        self.transactions = transactions
        self.promotions = promotions
        self.reconciler = reconciler
        self.state_machine = state_machine or OrderStateMachine()
        self.payment_tolerance = payment_tolerance

    # --- Creation ---

    def create_transaction(self, new_transaction: TransactionInit, session: Session) -> Transaction:
        """
        Creates a transaction, validating payment and adjusting stock.

        Args:
            new_transaction (TransactionInit): The creation payload.
            session (Session): The requesting session.

        Returns:
            Transaction: The persisted transaction as re-read from the repository.

        Raises:
            Unauthorized: If the session lacks CreateTransaction.
            ValidationError: If payments differ from the computed cost by more than the tolerance.
            PersistenceFailure: If the transaction could not be saved (no stock was changed).
            ReconciliationFailure: If the transaction was saved but some stock intents failed.
        """
        check_permissions(session, Action.CREATE_TRANSACTION)
        return self._create(new_transaction, session)

    def _create(self, new_transaction: TransactionInit, session: Session) -> Transaction:
        transaction_id = new_id()
        log_prefix = f"[Transaction: {transaction_id}]"
        log.info(f"{log_prefix} New {new_transaction.transaction_type.value} transaction from kiosk "
                 f"{new_transaction.kiosk} (employee {session.employee.id}).")

        # --- 1. Stock intents (pure) ---
        intents = derive_intents(new_transaction)

        # --- 2. Payment vs. cost ---
        total_paid = sum(payment.amount for payment in new_transaction.payment)
        with persistence_guard(log_prefix, "promotion lookup"):
            catalog = self.promotions.find_active_promotions(new_transaction.order_date)
        pricing = price_orders(new_transaction.products, catalog, new_transaction.order_date)
        total_cost = sum(order.total for order in pricing)

        if abs(total_paid - total_cost) > self.payment_tolerance:
            log.warning(f"{log_prefix} Rejected: paid {total_paid:.2f}, cost {total_cost:.2f}.")
            raise ValidationError("Payment amount does not match product costs.")

        promoted = sum(len(order.matches) for order in pricing)
        log.info(f"{log_prefix} Cost {total_cost:.2f} validated ({promoted} promotion discount(s)).")

        # --- 3. Persist ---
        transaction = Transaction(
            id=transaction_id,
            customer=new_transaction.customer,
            transaction_type=new_transaction.transaction_type,
            products=[self.state_machine.open(order) for order in new_transaction.products],
            order_total=total_cost,
            payment=new_transaction.payment,
            order_date=new_transaction.order_date,
            order_notes=new_transaction.order_notes,
            salesperson=new_transaction.salesperson,
            kiosk=new_transaction.kiosk,
        )
        with persistence_guard(log_prefix, "save"):
            saved_id = self.transactions.save(transaction)
        log.info(f"{log_prefix} Persisted.")

        # --- 4. Stock ---
        try:
            self.reconciler.apply([intent.bind(saved_id) for intent in intents])
        except ReconciliationFailure as e:
            log.critical(f"{log_prefix} Transaction recorded but stock not fully adjusted "
                         f"({len(e.failed)} intent(s) queued for retry). MANUAL ACTION MAY BE REQUIRED!")
            raise

        with persistence_guard(log_prefix, "fetch"):
            return self.transactions.find_by_id(saved_id)

    def generate(self, customer_id: str, session: Session) -> Transaction:
        """Creates a template sale (a kayak and a life jacket) for demo content, paid at the promoted price."""
        check_permissions(session, Action.GENERATE_TEMPLATE_CONTENT)
        template = example_transaction(customer_id, session.employee.id)

        with persistence_guard("[Transaction: template]", "promotion lookup"):
            catalog = self.promotions.find_active_promotions(template.order_date)
        total = sum(order.total for order in price_orders(template.products, catalog, template.order_date))
        template = template.model_copy(update={"payment": [Payment(payment_method="card", amount=total)]})

        return self._create(template, session)

    # --- Updates ---

    def update_transaction(self, input_data: TransactionInput, transaction_id: str,
                           session: Session) -> Transaction:
        """
        Replaces the mutable body of a transaction. Payments are not re-validated and stock is untouched.

        Order status and history are not part of the body: orders already stored keep
        theirs, orders new to the transaction start Queued. Statuses change only through
        update_order_status.
        """
        check_permissions(session, Action.MODIFY_TRANSACTION)
        log_prefix = f"[Transaction: {transaction_id}]"

        with persistence_guard(log_prefix, "update"):
            stored = self.transactions.find_by_id(transaction_id)
            products = [self._keep_status(stored, order) for order in input_data.products]
            self.transactions.update(
                Transaction(id=transaction_id, **{**dict(input_data), "products": products})
            )
            updated = self.transactions.find_by_id(transaction_id)
        log.info(f"{log_prefix} Updated.")
        return updated

    def update_order_status(self, transaction_id: str, order_ref: str, status,
                            session: Session) -> Transaction:
        """
        Sets the status of one order and appends it to the order history.

        Raises:
            NotFound: If the transaction or order does not exist.
            ValidationError: If the status payload is malformed or forbidden in strict mode.
        """
        check_permissions(session, Action.MODIFY_TRANSACTION)
        return self._modify_order(
            transaction_id, order_ref,
            lambda order: self.state_machine.transition(order, status),
        )

    def update_order_status_by_ref(self, order_ref: str, status, session: Session) -> Transaction:
        """Same as update_order_status, locating the transaction by the order reference."""
        check_permissions(session, Action.MODIFY_TRANSACTION)
        transaction = self._first_by_ref(order_ref)
        return self._modify_order(
            transaction.id, order_ref,
            lambda order: self.state_machine.transition(order, status),
        )

    def update_line_item_status(self, transaction_id: str, order_ref: str, product_id: str,
                                item_id: str, status: Union[PickStatus, str],
                                session: Session) -> Transaction:
        """Overwrites the pick status of one unit of a line item."""
        check_permissions(session, Action.MODIFY_TRANSACTION)
        return self._modify_order(
            transaction_id, order_ref,
            lambda order: self.state_machine.set_pick_status(order, product_id, item_id, status),
        )

    def _keep_status(self, stored: Transaction, order: Order) -> Order:
        previous = next((o for o in stored.products if o.id == order.id), None)
        if previous is None:
            return self.state_machine.open(order)
        return order.model_copy(update={"status": previous.status, "status_history": previous.status_history})

    def _modify_order(self, transaction_id: str, order_ref: str, change) -> Transaction:
        log_prefix = f"[Transaction: {transaction_id}]"
        with persistence_guard(log_prefix, "fetch"):
            transaction = self.transactions.find_by_id(transaction_id)

        order = transaction.find_order(order_ref)
        if order is None:
            raise NotFound(f"Order {order_ref} not found in transaction {transaction_id}.")

        changed = change(order)
        products = [changed if o.id == order.id else o for o in transaction.products]

        with persistence_guard(log_prefix, "update"):
            self.transactions.update(transaction.model_copy(update={"products": products}))
            return self.transactions.find_by_id(transaction_id)

    # --- Deletion ---

    def delete_transaction(self, transaction_id: str, session: Session) -> None:
        """Removes the record. Stock changes already applied are NOT reversed."""
        check_permissions(session, Action.DELETE_TRANSACTION)
        with persistence_guard(f"[Transaction: {transaction_id}]", "delete"):
            self.transactions.delete(transaction_id)
        log.info(f"[Transaction: {transaction_id}] Deleted (stock not reverted).")

    # --- Reads ---

    def get_transaction(self, transaction_id: str, session: Session) -> Transaction:
        check_permissions(session, Action.FETCH_TRANSACTION)
        with persistence_guard(f"[Transaction: {transaction_id}]", "fetch"):
            return self.transactions.find_by_id(transaction_id)

    def find_by_reference(self, reference: str, session: Session) -> List[Transaction]:
        """Transactions matching an order reference, a product SKU or a transaction id."""
        check_permissions(session, Action.FETCH_TRANSACTION)
        with persistence_guard(f"[Ref: {reference}]", "fetch"):
            return self.transactions.find_by_ref(reference)

    def fetch_all_saved(self, session: Session) -> List[Transaction]:
        check_permissions(session, Action.FETCH_TRANSACTION)
        with persistence_guard("[Transaction: *]", "fetch"):
            return [t for t in self.transactions.find_all() if t.transaction_type == TransactionType.SAVED]

    def fetch_deliverable_jobs(self, store_id: str, session: Session) -> List[Order]:
        """Open orders that leave from `store_id`."""
        check_permissions(session, Action.FETCH_TRANSACTION)
        return [order for order in self._open_orders() if order.origin.store_id == store_id]

    def fetch_receivable_jobs(self, store_id: str, session: Session) -> List[Order]:
        """Open orders that arrive at `store_id`."""
        check_permissions(session, Action.FETCH_TRANSACTION)
        return [order for order in self._open_orders() if order.destination.store_id == store_id]

    def _open_orders(self) -> List[Order]:
        with persistence_guard("[Transaction: *]", "fetch"):
            transactions = self.transactions.find_all()
        return [
            order
            for transaction in transactions
            for order in transaction.products
            if order.status.kind in OPEN_ORDER_KINDS
        ]

    def _first_by_ref(self, reference: str) -> Transaction:
        with persistence_guard(f"[Ref: {reference}]", "fetch"):
            found = self.transactions.find_by_ref(reference)
        if not found:
            raise NotFound(f"No transaction references {reference}.")
        return found[0]


def example_transaction(customer_id: str, salesperson: str,
                        now: Optional[datetime] = None) -> TransactionInit:
    """Template in-store sale of a kayak and a life jacket, paid in full by card at list price."""
    now = now or utc_now()
    store = Location(store_code="001", store_id="628f74d7-de00-4956-a5b6-2031e0c72128",
                     contact_name="Antarctic Kayaks")
    products = [
        ProductPurchase(product_name="Torpedo7 Nippers Kids Kayak & Paddle", product_code="54897443288214",
                        product_sku="654321", product_cost=199.99, quantity=1, tags=["Kayak"]),
        ProductPurchase(product_name="Torpedo7 Kids Buoyancy Vest", product_code="51891265958214",
                        product_sku="162534", product_cost=49.99, quantity=1, tags=["Safety"]),
    ]
    order = OrderInit(
        reference=f"TM-{now:%y%m%d%H%M%S}",
        origin=store,
        destination=store,
        products=products,
        order_notes=[Note(message="Template order", author=salesperson, timestamp=now)],
        creation_date=now - timedelta(seconds=1),
    )
    total = sum(line.product_cost * line.quantity for line in products)
    return TransactionInit(
        customer=CustomerRef(customer_id=customer_id),
        transaction_type=TransactionType.OUT,
        products=[order],
        payment=[Payment(payment_method="card", amount=total)],
        order_date=now,
        salesperson=salesperson,
        kiosk="template-kiosk",
    )
