"""
mock_stock_service.py — Mock Implementation of the Stock Service (REST API)

This module provides a simulated Stock Service for testing stock reconciliation.
It exposes a simple FastAPI application that mimics a stock ledger with
per-row atomic updates and idempotent delta application.

Simulation Scenarios:
    • Successful stock adjustment
    • Redelivered adjustment (same Idempotency-Key) → applied once
    • Unavailable store (HTTP 503) for store ids starting with "offline-"

Endpoints:
    POST /v1/stock/adjustments — Applies a stock delta.
    GET  /v1/stock/{store_id}/{variant_code} — Returns the current level.

Port:
    Default: 8002 (HTTP)
"""

import logging
import threading
from collections import defaultdict
from typing import Optional

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel

app = FastAPI(title="Mock Stock Service")
log = logging.getLogger(__name__)

_levels = defaultdict(float)
# Remembered idempotency keys are never evicted; call reset() between runs.
_applied = {}
_lock = threading.Lock()


class AdjustmentRequest(BaseModel):
    """
    Represents a stock adjustment payload.

    Attributes:
        storeId (str): Store whose stock changes.
        variantCode (str): Variant whose stock changes.
        delta (float): Signed quantity change.
    """
    storeId: str
    variantCode: str
    delta: float


def reset():
    """Clears all stock levels and remembered idempotency keys."""
    with _lock:
        _levels.clear()
        _applied.clear()


@app.post("/v1/stock/adjustments")
def adjust_stock(
        request: AdjustmentRequest,
        idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key")
):
    """
    Applies a stock delta.

    Args:
        request (AdjustmentRequest): The store, variant and delta.
        idempotency_key (str | None): Key of the intent; a repeated key returns the first result.

    Returns:
        dict: storeId, variantCode, level (resulting stock) and duplicate (True for a redelivery).

    Raises:
        HTTPException(503): If the store is simulated as offline.
    """
    log.info(f"[SS] Adjustment {request.storeId}/{request.variantCode} {request.delta} (Idempotency: {idempotency_key})")

    if request.storeId.startswith("offline-"):
        log.warning(f"[SS] Store {request.storeId} unavailable.")
        raise HTTPException(
            status_code=503,
            detail={"errorCode": "store_unavailable", "message": "Store ledger offline."}
        )

    key = (request.storeId, request.variantCode)
    with _lock:
        if idempotency_key and idempotency_key in _applied:
            return {**_applied[idempotency_key], "duplicate": True}
        _levels[key] += request.delta
        result = {"storeId": request.storeId, "variantCode": request.variantCode, "level": _levels[key]}
        if idempotency_key:
            _applied[idempotency_key] = result

    return {**result, "duplicate": False}


@app.get("/v1/stock/{store_id}/{variant_code}")
def get_level(store_id: str, variant_code: str):
    with _lock:
        return {"storeId": store_id, "variantCode": variant_code, "level": _levels.get((store_id, variant_code), 0.0)}


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8002)
