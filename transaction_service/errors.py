"""
errors.py — Error Taxonomy of the Transaction Service

Every failure leaving the core is one of the classes below. Each carries a
category and a human-readable message so the calling layer can render a
structured error without inspecting exception types.
"""

from typing import Optional


class TransactionServiceError(Exception):
    """Base class for all structured errors raised by the core."""

    category = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"category": self.category, "message": self.message}


class Unauthorized(TransactionServiceError):
    """The session lacks the authority required for an action."""

    category = "unauthorized"


class ValidationError(TransactionServiceError):
    """Payment/cost mismatch or a malformed status payload."""

    category = "validation"


class NotFound(TransactionServiceError):
    """A referenced transaction, order, line item or promotion does not exist."""

    category = "not_found"


class PersistenceFailure(TransactionServiceError):
    """
    A persistence collaborator failed.

    Attributes:
        cause (Exception | None): The underlying collaborator error.
    """

    category = "persistence"

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.cause = cause

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.cause is not None:
            data["cause"] = str(self.cause)
        return data


class ReconciliationFailure(TransactionServiceError):
    """
    Stock intents could not be applied after the transaction was persisted.

    The transaction record exists but stock levels are not fully adjusted.
    Nothing is rolled back; the failed intents are kept for manual or
    queued reconciliation.

    Attributes:
        transaction_id (str | None): The persisted transaction the intents belong to.
        applied (list): Intents that were applied successfully.
        failed (list): Tuples of (intent, reason) that could not be applied.
    """

    category = "reconciliation"

    def __init__(self, message: str, transaction_id=None, applied=None, failed=None):
        super().__init__(message)
        self.transaction_id = transaction_id
        self.applied = list(applied or [])
        self.failed = list(failed or [])

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["transaction_id"] = self.transaction_id
        data["failed_intents"] = [intent.idempotency_key for intent, _ in self.failed]
        return data
