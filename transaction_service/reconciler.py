"""
reconciler.py — Stock Intent Derivation and Application

A confirmed transaction is translated into one QuantityAlterationIntent per
line item. Stock is always adjusted at the order's ORIGIN store. The sign of
the delta follows the transaction type: sales remove stock, returns add it,
saved carts and quotes leave it untouched.

Intents are transient values: they are derived, bound to the persisted
transaction, applied, and discarded. Only intents that fail to apply leave the
process, through the retry log, so an operator or a retry consumer can
re-apply them. Each intent carries an idempotency key built from its
transaction, order and line item ids so the stock ledger can drop
redeliveries without confusing two transactions over the same order.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from .errors import ReconciliationFailure
from .logging_config import get_logger
from .models import TransactionType
from .repository import IntentLog, StockLedger

log = get_logger(__name__)


class QuantityAlterationIntent(BaseModel):
    """
    Instruction to change the stock of one variant at one store.

    Attributes:
        variant_code (str): Variant whose stock changes.
        product_sku (str): SKU of the product.
        store_code (str): Code of the origin store.
        store_id (str): Id of the origin store.
        transaction_type (TransactionType): Type of the originating transaction.
        delta (float): Signed quantity change.
        order_id (str): Order the line item belongs to.
        line_item_id (str): Line item the intent was derived from.
        transaction_id (str | None): Persisted transaction, bound after save.
    """
    model_config = ConfigDict(frozen=True)

    variant_code: str
    product_sku: str
    store_code: str
    store_id: str
    transaction_type: TransactionType
    delta: float
    order_id: str
    line_item_id: str
    transaction_id: Optional[str] = None

    @property
    def idempotency_key(self) -> str:
        return f"{self.transaction_id}:{self.order_id}:{self.line_item_id}"

    def bind(self, transaction_id: str) -> "QuantityAlterationIntent":
        return self.model_copy(update={"transaction_id": transaction_id})


def derive_intents(transaction) -> List[QuantityAlterationIntent]:
    """
    Derives the stock intents of a transaction.

    Args:
        transaction: A TransactionInit, TransactionInput or Transaction.

    Returns:
        List[QuantityAlterationIntent]: One intent per line item of every order, in order.
    """
    direction = transaction.transaction_type.stock_direction
    transaction_id = getattr(transaction, "id", None)
    return [
        QuantityAlterationIntent(
            variant_code=line.product_code,
            product_sku=line.product_sku,
            store_code=order.origin.store_code,
            store_id=order.origin.store_id,
            transaction_type=transaction.transaction_type,
            delta=direction * line.quantity,
            order_id=order.id,
            line_item_id=line.id,
            transaction_id=transaction_id,
        )
        for order in transaction.products
        for line in order.products
    ]


class QuantityReconciler:
    """
    Applies stock intents through a StockLedger.

    Args:
        ledger (StockLedger): Collaborator performing the atomic stock update.
        retry_log (IntentLog | None): Where intents that fail to apply are recorded.
    """

    def __init__(self, ledger: StockLedger, retry_log: Optional[IntentLog] = None):
        self.ledger = ledger
        self.retry_log = retry_log

    def apply(self, intents: List[QuantityAlterationIntent]) -> List[QuantityAlterationIntent]:
        """
        Applies every intent, continuing past individual failures.

        Returns:
            List[QuantityAlterationIntent]: The intents that were applied (zero deltas are skipped).

        Raises:
            ReconciliationFailure: If at least one intent could not be applied. The failed
                intents have been recorded in the retry log when one is configured.
        """
        applied = []
        failed = []
        transaction_id = intents[0].transaction_id if intents else None
        log_prefix = f"[Transaction: {transaction_id}]"

        for intent in intents:
            if intent.delta == 0:
                log.debug(f"{log_prefix} No stock change for {intent.variant_code} ({intent.transaction_type.value}).")
                continue
            try:
                self.ledger.apply_stock_delta(
                    intent.store_id, intent.variant_code, intent.delta, intent.idempotency_key
                )
                applied.append(intent)
                log.info(f"{log_prefix} Stock {intent.store_code}/{intent.variant_code} adjusted by {intent.delta}.")
            except Exception as e:
                log.error(f"{log_prefix} Stock {intent.store_code}/{intent.variant_code} NOT adjusted: {e}")
                failed.append((intent, str(e)))

        if failed:
            self._record_failures(log_prefix, failed)
            raise ReconciliationFailure(
                f"{len(failed)} of {len(intents)} stock intents could not be applied.",
                transaction_id=transaction_id,
                applied=applied,
                failed=failed,
            )
        return applied

    def retry(self, intents: List[QuantityAlterationIntent]) -> List[QuantityAlterationIntent]:
        """Re-applies intents taken from the retry log; already applied intents are dropped by the ledger."""
        log.info(f"Retrying {len(intents)} stock intents.")
        return self.apply(intents)

    def _record_failures(self, log_prefix: str, failed) -> None:
        if self.retry_log is None:
            log.critical(f"{log_prefix} {len(failed)} stock intents lost. MANUAL RECONCILIATION REQUIRED!")
            return
        for intent, reason in failed:
            try:
                self.retry_log.record(intent, reason)
            except Exception as e:
                log.critical(
                    f"{log_prefix} Could not record intent {intent.idempotency_key} for retry: {e}. "
                    f"MANUAL RECONCILIATION REQUIRED!"
                )
