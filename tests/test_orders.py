"""Tests for order and line-item status tracking."""
from datetime import timedelta

import pytest

from transaction_service.errors import NotFound, ValidationError
from transaction_service.models import (
    Failed, Fulfilled, InStore, PickStatus, Processing, Queued, Transit, TransitInformation,
)
from transaction_service.orders import OrderStateMachine, parse_order_status, parse_pick_status

from conftest import NOW, make_line, make_order


@pytest.fixture
def order():
    return OrderStateMachine().open(make_order(make_line("654321", 100, quantity=2), make_line("162534", 50)))


def test_open_starts_queued_with_one_history_entry(order):
    assert order.status == Queued()
    assert len(order.status_history) == 1
    assert order.status_history[0].date == NOW


def test_queued_to_fulfilled_appends_exactly_one_entry(order):
    before = [entry.model_copy(deep=True) for entry in order.status_history]

    fulfilled = OrderStateMachine().transition(order, Fulfilled(), at=NOW + timedelta(hours=1))

    assert len(fulfilled.status_history) == len(before) + 1
    assert fulfilled.status_history[:-1] == before
    assert fulfilled.status_history[-1].status == Fulfilled()
    assert fulfilled.status == Fulfilled()
    # The original order is untouched.
    assert order.status_history == before


def test_history_timestamps_never_go_backwards(order):
    machine = OrderStateMachine()
    later = machine.transition(order, InStore(), at=NOW + timedelta(hours=2))

    earlier = machine.transition(later, Fulfilled(), at=NOW + timedelta(hours=1))

    assert earlier.status_history[-1].date == NOW + timedelta(hours=2)


def test_permissive_mode_allows_leaving_terminal_state(order):
    machine = OrderStateMachine(strict=False)
    failed = machine.transition(order, Failed(reason="Damaged in transit"))

    reopened = machine.transition(failed, Queued())

    assert reopened.status == Queued()
    assert [e.status.kind for e in reopened.status_history] == ["queued", "failed", "queued"]


def test_strict_mode_rejects_leaving_terminal_state(order):
    machine = OrderStateMachine(strict=True)
    fulfilled = machine.transition(order, Fulfilled())

    with pytest.raises(ValidationError):
        machine.transition(fulfilled, Processing(started_at=NOW))


def test_transition_accepts_tagged_payload(order):
    payload = {
        "kind": "transit",
        "information": {"shipping_company": "NZ Post", "tracking_code": "TR123"},
    }

    moved = OrderStateMachine().transition(order, payload)

    assert moved.status == Transit(information=TransitInformation(shipping_company="NZ Post", tracking_code="TR123"))


def test_malformed_status_payload_is_validation_error():
    with pytest.raises(ValidationError):
        parse_order_status({"kind": "teleported"})
    with pytest.raises(ValidationError):
        parse_order_status({"kind": "failed"})


def test_set_pick_status_overwrites_single_unit(order):
    line = order.products[0]
    first, second = line.instances

    updated = OrderStateMachine().set_pick_status(order, line.id, first.id, "picked")

    instances = updated.products[0].instances
    assert instances[0].pick_status is PickStatus.PICKED
    assert instances[1].pick_status is PickStatus.PENDING
    assert order.products[0].instances[0].pick_status is PickStatus.PENDING


def test_set_pick_status_unknown_item_raises_not_found(order):
    with pytest.raises(NotFound):
        OrderStateMachine().set_pick_status(order, order.products[0].id, "nope", PickStatus.PICKED)
    with pytest.raises(NotFound):
        OrderStateMachine().set_pick_status(order, "nope", "nope", PickStatus.PICKED)


def test_strict_pick_status_rejects_leaving_picked(order):
    machine = OrderStateMachine(strict=True)
    line = order.products[1]
    item = line.instances[0]
    picked = machine.set_pick_status(order, line.id, item.id, PickStatus.PICKED)

    with pytest.raises(ValidationError):
        machine.set_pick_status(picked, line.id, item.id, PickStatus.UNCERTAIN)


@pytest.mark.parametrize("raw", ["pending", "processing", "picked", "uncertain", "failed"])
def test_parse_pick_status_known_values(raw):
    assert parse_pick_status(raw).value == raw


def test_parse_pick_status_unknown_value():
    with pytest.raises(ValidationError):
        parse_pick_status("lost")
