"""
repository.py — Persistence Collaborators

This module defines the interfaces the core consumes from its persistence
collaborators and provides thread-safe in-memory implementations of each.

Interfaces:
    - TransactionRepository: Stores and looks up transactions.
    - PromotionRepository: Stores promotions and returns the active catalog.
    - StockLedger: Applies a single stock delta atomically.
    - IntentLog: Records stock intents that could not be applied.

The in-memory stores keep records in their serialized JSON form, exactly as a
database column would, so every read goes through model validation and a
corrupted record surfaces as a PersistenceFailure instead of a half-built object.
"""

import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Tuple

import pydantic

from .errors import NotFound, PersistenceFailure, TransactionServiceError
from .logging_config import get_logger
from .models import Promotion, PromotionInput, Transaction, new_id

log = get_logger(__name__)


class TransactionRepository(Protocol):
    def save(self, transaction: Transaction) -> str: ...

    def update(self, transaction: Transaction) -> None: ...

    def find_by_id(self, transaction_id: str) -> Transaction: ...

    def find_by_ref(self, reference: str) -> List[Transaction]: ...

    def find_all(self) -> List[Transaction]: ...

    def delete(self, transaction_id: str) -> None: ...


class PromotionRepository(Protocol):
    def insert(self, promotion: PromotionInput) -> Promotion: ...

    def update(self, promotion: PromotionInput, promotion_id: str) -> Promotion: ...

    def find_by_id(self, promotion_id: str) -> Promotion: ...

    def find_all(self) -> List[Promotion]: ...

    def find_active_promotions(self, as_of: datetime) -> List[Promotion]: ...


class StockLedger(Protocol):
    def apply_stock_delta(self, store_id: str, variant_code: str, delta: float,
                          idempotency_key: Optional[str] = None) -> None: ...


class IntentLog(Protocol):
    def record(self, intent, reason: str) -> None: ...


# --- In-memory implementations ---

class InMemoryTransactionStore:
    """Transaction repository backed by a dict of JSON documents."""

    def __init__(self):
        self._records: Dict[str, str] = {}
        self._lock = threading.Lock()

    def save(self, transaction: Transaction) -> str:
        with self._lock:
            if transaction.id in self._records:
                raise PersistenceFailure(f"Transaction {transaction.id} already exists.")
            self._records[transaction.id] = transaction.model_dump_json()
        return transaction.id

    def update(self, transaction: Transaction) -> None:
        with self._lock:
            if transaction.id not in self._records:
                raise NotFound(f"Record {transaction.id} does not exist.")
            self._records[transaction.id] = transaction.model_dump_json()

    def find_by_id(self, transaction_id: str) -> Transaction:
        with self._lock:
            raw = self._records.get(transaction_id)
        if raw is None:
            raise NotFound(f"Record {transaction_id} does not exist.")
        return self._load(transaction_id, raw)

    def find_by_ref(self, reference: str) -> List[Transaction]:
        return [t for t in self.find_all() if _matches_reference(t, reference)]

    def find_all(self) -> List[Transaction]:
        with self._lock:
            records = list(self._records.items())
        return [self._load(transaction_id, raw) for transaction_id, raw in records]

    def delete(self, transaction_id: str) -> None:
        with self._lock:
            if self._records.pop(transaction_id, None) is None:
                raise NotFound(f"Record {transaction_id} does not exist.")

    def _load(self, transaction_id: str, raw: str) -> Transaction:
        try:
            return Transaction.model_validate_json(raw)
        except pydantic.ValidationError as e:
            log.error(f"[Transaction: {transaction_id}] Stored record has an invalid shape: {e}")
            raise PersistenceFailure(f"Stored transaction {transaction_id} is malformed.", cause=e) from e


def _matches_reference(transaction: Transaction, reference: str) -> bool:
    if transaction.id == reference:
        return True
    for order in transaction.products:
        if order.reference == reference:
            return True
        if any(line.product_sku == reference for line in order.products):
            return True
    return False


class InMemoryPromotionStore:
    """Promotion repository backed by a dict of JSON documents."""

    def __init__(self):
        self._records: Dict[str, str] = {}
        self._lock = threading.Lock()

    def insert(self, promotion: PromotionInput) -> Promotion:
        stored = Promotion(id=new_id(), **promotion.model_dump())
        with self._lock:
            self._records[stored.id] = stored.model_dump_json()
        return stored

    def update(self, promotion: PromotionInput, promotion_id: str) -> Promotion:
        stored = Promotion(id=promotion_id, **promotion.model_dump())
        with self._lock:
            if promotion_id not in self._records:
                raise NotFound(f"Promotion {promotion_id} does not exist.")
            self._records[promotion_id] = stored.model_dump_json()
        return stored

    def find_by_id(self, promotion_id: str) -> Promotion:
        with self._lock:
            raw = self._records.get(promotion_id)
        if raw is None:
            raise NotFound(f"Promotion {promotion_id} does not exist.")
        return Promotion.model_validate_json(raw)

    def find_all(self) -> List[Promotion]:
        with self._lock:
            records = list(self._records.values())
        return [Promotion.model_validate_json(raw) for raw in records]

    def find_active_promotions(self, as_of: datetime) -> List[Promotion]:
        return [p for p in self.find_all() if as_of <= p.valid_till]


class InMemoryStockLedger:
    """
    Stock levels keyed by (store_id, variant_code).

    Each delta is applied under a lock and recorded by idempotency key, so a
    redelivered intent is ignored instead of being counted twice.

    Applied keys are kept for the life of the instance and never expire, so
    memory grows with every intent applied. Fine for tests and the demo; a
    durable ledger should store the key with the stock row and prune it after
    the retry queue's retention window.
    """

    def __init__(self, levels: Optional[Dict[Tuple[str, str], float]] = None):
        self._levels: Dict[Tuple[str, str], float] = defaultdict(float, levels or {})
        self._applied_keys = set()
        self._lock = threading.Lock()

    def apply_stock_delta(self, store_id: str, variant_code: str, delta: float,
                          idempotency_key: Optional[str] = None) -> None:
        with self._lock:
            if idempotency_key is not None:
                if idempotency_key in self._applied_keys:
                    log.info(f"[Stock: {store_id}/{variant_code}] Duplicate intent {idempotency_key} ignored.")
                    return
                self._applied_keys.add(idempotency_key)
            self._levels[(store_id, variant_code)] += delta

    def level(self, store_id: str, variant_code: str) -> float:
        with self._lock:
            return self._levels.get((store_id, variant_code), 0.0)


class InMemoryIntentLog:
    """Retry log keeping failed intents in memory until drained."""

    def __init__(self):
        self.entries: list = []
        self._lock = threading.Lock()

    def record(self, intent, reason: str) -> None:
        with self._lock:
            self.entries.append((intent, reason))

    def drain(self) -> list:
        """Returns the recorded intents and clears the log."""
        with self._lock:
            intents = [intent for intent, _ in self.entries]
            self.entries.clear()
        return intents


@contextmanager
def persistence_guard(log_prefix: str, operation: str):
    """
    Wraps a collaborator call so that any non-structured failure surfaces as PersistenceFailure.

    Structured errors (NotFound, an already wrapped PersistenceFailure, ...) pass through unchanged.
    """
    try:
        yield
    except TransactionServiceError:
        raise
    except Exception as e:
        log.error(f"{log_prefix} {operation} failed: {e}")
        raise PersistenceFailure(f"Persistence error during {operation}, reason: {e}", cause=e) from e
