"""Order timeline replay.

An order's status, revision count and release flag are derivable from its
timeline alone. `replay` folds the event sequence from the empty state,
driving each status-changing event through OrderStateMachine so that an
illegal sequence is detected rather than silently accepted.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from marketplace_escrow.domain.enums import EventType, OrderStatus
from marketplace_escrow.domain.exceptions import InvalidTransitionError, LedgerInconsistencyError
from marketplace_escrow.domain.state_machine import OrderStateMachine, fire

# Timeline event -> state machine event. Events absent from this map
# (and not ORDER_CREATED) record settlement facts and leave status unchanged.
STATUS_EVENTS: dict[EventType, str] = {
    EventType.PAYMENT_CONFIRMED: "payment_confirmed",
    EventType.PROCESSING_STARTED: "seller_acknowledges",
    EventType.WORK_STARTED: "seller_starts_work",
    EventType.WORK_DELIVERED: "seller_delivers",
    EventType.REVISION_REQUESTED: "buyer_requests_revision",
    EventType.DELIVERY_ACCEPTED: "buyer_accepts",
    EventType.ORDER_CANCELLED: "buyer_cancels",
    EventType.DISPUTE_OPENED: "party_disputes",
    EventType.SETTLEMENT_FAILED: "settlement_failed",
    EventType.ADMIN_CANCELLED: "admin_cancels",
}

# Reverse lookup used by the order service when recording a transition.
EVENT_FOR_TRANSITION: dict[str, EventType] = {v: k for k, v in STATUS_EVENTS.items()}


@dataclass(frozen=True)
class TimelineEntry:
    """Read-only view of one timeline event, independent of the ORM."""

    order_id: str
    sequence: int
    event_type: EventType
    performed_by: str
    event_data: dict = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass(frozen=True)
class OrderProjection:
    """State reconstructed from a timeline."""

    status: OrderStatus
    revisions: int
    payment_released: bool
    captured: bool
    transferred: bool
    refunded: bool


def replay(order_id: str, entries: Iterable[TimelineEntry]) -> OrderProjection:
    """Fold an order's timeline from the empty state.

    Raises:
        LedgerInconsistencyError: the sequence does not start with
            ORDER_CREATED, has gaps or repeats, or contains a transition that
            is illegal from the state reached so far.
    """
    machine: OrderStateMachine | None = None
    revisions = 0
    captured = transferred = refunded = False
    expected_sequence = 1

    for entry in entries:
        if entry.sequence != expected_sequence:
            raise LedgerInconsistencyError(
                order_id, f"expected sequence {expected_sequence}, found {entry.sequence}"
            )
        expected_sequence += 1
        event_type = EventType(entry.event_type)

        if event_type is EventType.ORDER_CREATED:
            if machine is not None:
                raise LedgerInconsistencyError(order_id, "ORDER_CREATED recorded twice")
            machine = OrderStateMachine()
            continue
        if machine is None:
            raise LedgerInconsistencyError(
                order_id, f"{event_type.value} recorded before ORDER_CREATED"
            )

        if event_type in STATUS_EVENTS:
            try:
                fire(machine, STATUS_EVENTS[event_type])
            except InvalidTransitionError as err:
                raise LedgerInconsistencyError(order_id, err.message) from err
            if event_type is EventType.REVISION_REQUESTED:
                revisions += 1
        elif event_type is EventType.PAYMENT_CAPTURED:
            captured = True
        elif event_type is EventType.FUNDS_TRANSFERRED:
            transferred = True
        elif event_type is EventType.REFUND_ISSUED:
            refunded = True

    if machine is None:
        raise LedgerInconsistencyError(order_id, "timeline is empty")

    status = OrderStatus(machine.status)
    return OrderProjection(
        status=status,
        revisions=revisions,
        payment_released=status is OrderStatus.COMPLETED,
        captured=captured,
        transferred=transferred,
        refunded=refunded,
    )
