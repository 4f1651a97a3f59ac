"""
orders.py — Order and Line-Item Status Tracking

Order level:
    Queued → {Transit, Processing, InStore} → Fulfilled | Failed

    Every status change is appended to the order's `status_history`. Entries
    are never rewritten or removed and their timestamps never go backwards.
    By default any status may follow any other; in strict mode an order that
    is Fulfilled or Failed cannot change status again.

Line-item level (PickStatus):
    Pending → Processing → Picked, with Failed and Uncertain reachable from any
    non-terminal state. Only the current status is kept. In strict mode a unit
    that is Picked or Failed cannot change status again.

All operations return updated copies; the orders passed in are not mutated.
"""

from datetime import datetime
from typing import Optional, Union

import pydantic
from pydantic import TypeAdapter

from .config import STRICT_ORDER_TRANSITIONS
from .errors import NotFound, ValidationError
from .logging_config import get_logger
from .models import Order, OrderInit, OrderState, OrderStatus, PickStatus, Queued, utc_now

log = get_logger(__name__)

TERMINAL_ORDER_KINDS = frozenset({"fulfilled", "failed"})
TERMINAL_PICK_STATUSES = frozenset({PickStatus.PICKED, PickStatus.FAILED})
OPEN_ORDER_KINDS = frozenset({"queued", "transit", "processing", "in_store"})

_order_status_adapter = TypeAdapter(OrderStatus)


def parse_order_status(raw) -> OrderStatus:
    """
    Validates an order status payload.

    Args:
        raw: An OrderStatus instance or its tagged dict form, e.g. {"kind": "failed", "reason": "..."}.

    Raises:
        ValidationError: If the payload is not a recognized status variant.
    """
    try:
        return _order_status_adapter.validate_python(raw)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Unrecognized order status: {raw!r}") from e


def parse_pick_status(raw: Union[PickStatus, str]) -> PickStatus:
    """
    Validates a pick status.

    Raises:
        ValidationError: If `raw` is not one of pending, processing, picked, uncertain, failed.
    """
    try:
        return PickStatus(raw)
    except ValueError as e:
        raise ValidationError("Unable to update fields due to malformed inputs") from e


def is_terminal(status) -> bool:
    return status.kind in TERMINAL_ORDER_KINDS


class OrderStateMachine:
    """
    Applies status changes to orders and their line items.

    Args:
        strict (bool): Reject status changes out of terminal states.
    """

    def __init__(self, strict: bool = STRICT_ORDER_TRANSITIONS):
        self.strict = strict

    def open(self, order: OrderInit) -> Order:
        """Builds a Queued order whose history starts with the Queued entry at its creation date."""
        queued = Queued()
        return Order.model_validate({
            **order.model_dump(),
            "status": queued.model_dump(),
            "status_history": [OrderState(date=order.creation_date, status=queued).model_dump()],
        })

    def transition(self, order: Order, status, at: Optional[datetime] = None) -> Order:
        """
        Moves an order to a new status and appends it to the history.

        Args:
            order (Order): Current order.
            status: New OrderStatus (or its tagged dict form).
            at (datetime): Time of the change, defaults to now. Clamped so history stays ordered.

        Returns:
            Order: A copy with the new status and one more history entry.

        Raises:
            ValidationError: If the status is malformed, or strict mode forbids leaving a terminal state.
        """
        status = parse_order_status(status)
        if self.strict and is_terminal(order.status):
            raise ValidationError(
                f"Order {order.reference} is {order.status.kind} and cannot move to {status.kind}."
            )

        at = at or utc_now()
        if order.status_history and at < order.status_history[-1].date:
            at = order.status_history[-1].date

        history = [*order.status_history, OrderState(date=at, status=status)]
        log.info(f"[Order: {order.reference}] Status {order.status.kind} -> {status.kind}.")
        return order.model_copy(update={"status": status, "status_history": history})

    def set_pick_status(self, order: Order, product_id: str, item_id: str, status) -> Order:
        """
        Overwrites the pick status of one unit of a line item.

        Args:
            order (Order): The order holding the line item.
            product_id (str): Line item id.
            item_id (str): Product instance id within the line item.
            status: New PickStatus or its string value.

        Raises:
            NotFound: If the line item or instance does not exist in the order.
            ValidationError: If the status is unknown, or strict mode forbids the change.
        """
        status = parse_pick_status(status)

        line_index = next((i for i, line in enumerate(order.products) if line.id == product_id), None)
        if line_index is None:
            raise NotFound(f"Product {product_id} not found in order {order.reference}.")
        line = order.products[line_index]

        item_index = next((i for i, item in enumerate(line.instances) if item.id == item_id), None)
        if item_index is None:
            raise NotFound(f"Item {item_id} not found in product {product_id}.")
        item = line.instances[item_index]

        if self.strict and item.pick_status in TERMINAL_PICK_STATUSES and status != item.pick_status:
            raise ValidationError(
                f"Item {item_id} is {item.pick_status.value} and cannot move to {status.value}."
            )

        instances = list(line.instances)
        instances[item_index] = item.model_copy(update={"pick_status": status})
        products = list(order.products)
        products[line_index] = line.model_copy(update={"instances": instances})

        log.info(f"[Order: {order.reference}] Item {item_id} pick status {item.pick_status.value} -> {status.value}.")
        return order.model_copy(update={"products": products})
