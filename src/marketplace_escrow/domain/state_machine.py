"""Offer and Order state machine guards.

Uses python-statemachine to enforce legal state transitions at the domain level.
The machines are instantiated per entity from its stored status and validate
an event before any field is written.

Offer transition table:
    pending          -> pending         (buyer_revises_amount)
    pending          -> pending_payment (buyer_initiates_payment)
    pending_payment  -> paid            (payment_authorized)
    paid             -> accepted        (seller_accepts)
    paid             -> rejected        (seller_rejects)
    pending          -> cancelled       (buyer_cancels)
    pending_payment  -> cancelled       (buyer_cancels)
    pending          -> expired         (deadline_passed)
    pending_payment  -> expired         (deadline_passed)

Order transition table:
    pending_payment  -> paid            (payment_confirmed)
    paid             -> processing      (seller_acknowledges)
    paid             -> in_progress     (seller_starts_work)
    processing       -> in_progress     (seller_starts_work)
    in_progress      -> delivered       (seller_delivers)
    in_revision      -> delivered       (seller_delivers)
    delivered        -> completed       (buyer_accepts)
    delivered        -> in_revision     (buyer_requests_revision)
    pending_payment  -> cancelled       (buyer_cancels)
    paid             -> disputed        (party_disputes)
    processing       -> disputed        (party_disputes)
    in_progress      -> disputed        (party_disputes)
    delivered        -> disputed        (settlement_failed)
    <non-terminal>   -> cancelled       (admin_cancels)
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from marketplace_escrow.domain.enums import SYSTEM_ACTOR, ActorRole, OfferStatus, OrderStatus
from marketplace_escrow.domain.exceptions import InvalidTransitionError

_BUYER = frozenset({ActorRole.BUYER})
_SELLER = frozenset({ActorRole.SELLER})
_SYSTEM = frozenset({ActorRole.SYSTEM})


class _GuardMixin:
    """Shared helpers for the entity state machines."""

    def _check_status(self, current_status: str) -> str:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(f"Unknown status '{current_status}'. Valid states: {valid}")
        return current_status

    @property
    def status(self) -> str:
        """Return the current state value as a string."""
        return str(self.current_state_value)

    def get_allowed_events(self) -> list[str]:
        """Return the event names that can fire from the current state."""
        return sorted(getattr(event, "id", None) or event.name for event in self.allowed_events)


class OfferStateMachine(_GuardMixin, StateMachine):
    """Guards the offer negotiation lifecycle."""

    # --- States ---
    PENDING = State("Pending", value=OfferStatus.PENDING.value, initial=True)
    PENDING_PAYMENT = State("Pending payment", value=OfferStatus.PENDING_PAYMENT.value)
    PAID = State("Paid", value=OfferStatus.PAID.value)
    ACCEPTED = State("Accepted", value=OfferStatus.ACCEPTED.value, final=True)
    REJECTED = State("Rejected", value=OfferStatus.REJECTED.value, final=True)
    CANCELLED = State("Cancelled", value=OfferStatus.CANCELLED.value, final=True)
    EXPIRED = State("Expired", value=OfferStatus.EXPIRED.value, final=True)

    # --- Events / Transitions ---

    # Negotiation
    buyer_revises_amount = PENDING.to.itself()

    # Payment
    buyer_initiates_payment = PENDING.to(PENDING_PAYMENT)
    payment_authorized = PENDING_PAYMENT.to(PAID)

    # Seller decision
    seller_accepts = PAID.to(ACCEPTED)
    seller_rejects = PAID.to(REJECTED)

    # Withdrawal
    buyer_cancels = PENDING.to(CANCELLED) | PENDING_PAYMENT.to(CANCELLED)
    deadline_passed = PENDING.to(EXPIRED) | PENDING_PAYMENT.to(EXPIRED)

    def __init__(self, current_status: str = OfferStatus.PENDING.value) -> None:
        super().__init__(start_value=self._check_status(str(current_status)))


class OrderStateMachine(_GuardMixin, StateMachine):
    """Guards the order lifecycle.

    Usage:
        sm = OrderStateMachine(current_status="delivered")
        sm.buyer_accepts()
        sm.status  # "completed"
    """

    # --- States ---
    PENDING_PAYMENT = State("Pending payment", value=OrderStatus.PENDING_PAYMENT.value, initial=True)
    PAID = State("Paid", value=OrderStatus.PAID.value)
    PROCESSING = State("Processing", value=OrderStatus.PROCESSING.value)
    IN_PROGRESS = State("In progress", value=OrderStatus.IN_PROGRESS.value)
    DELIVERED = State("Delivered", value=OrderStatus.DELIVERED.value)
    IN_REVISION = State("In revision", value=OrderStatus.IN_REVISION.value)
    COMPLETED = State("Completed", value=OrderStatus.COMPLETED.value, final=True)
    CANCELLED = State("Cancelled", value=OrderStatus.CANCELLED.value, final=True)
    DISPUTED = State("Disputed", value=OrderStatus.DISPUTED.value)

    # --- Events / Transitions ---

    # Funding
    payment_confirmed = PENDING_PAYMENT.to(PAID)

    # Work
    seller_acknowledges = PAID.to(PROCESSING)
    seller_starts_work = PAID.to(IN_PROGRESS) | PROCESSING.to(IN_PROGRESS)
    seller_delivers = IN_PROGRESS.to(DELIVERED) | IN_REVISION.to(DELIVERED)

    # Buyer review
    buyer_accepts = DELIVERED.to(COMPLETED)
    buyer_requests_revision = DELIVERED.to(IN_REVISION)

    # Cancellation
    buyer_cancels = PENDING_PAYMENT.to(CANCELLED)
    admin_cancels = (
        PENDING_PAYMENT.to(CANCELLED)
        | PAID.to(CANCELLED)
        | PROCESSING.to(CANCELLED)
        | IN_PROGRESS.to(CANCELLED)
        | DELIVERED.to(CANCELLED)
        | IN_REVISION.to(CANCELLED)
        | DISPUTED.to(CANCELLED)
    )

    # Disputes
    party_disputes = PAID.to(DISPUTED) | PROCESSING.to(DISPUTED) | IN_PROGRESS.to(DISPUTED)
    settlement_failed = DELIVERED.to(DISPUTED)

    def __init__(self, current_status: str = OrderStatus.PENDING_PAYMENT.value) -> None:
        super().__init__(start_value=self._check_status(str(current_status)))


# Which role may fire each event. SYSTEM covers processor callbacks,
# schedulers and administrative resolution.
OFFER_EVENT_ROLES: dict[str, frozenset[ActorRole]] = {
    "buyer_revises_amount": _BUYER,
    "buyer_initiates_payment": _BUYER,
    "payment_authorized": _SYSTEM | _BUYER,
    "seller_accepts": _SELLER,
    "seller_rejects": _SELLER,
    "buyer_cancels": _BUYER,
    "deadline_passed": _SYSTEM,
}

ORDER_EVENT_ROLES: dict[str, frozenset[ActorRole]] = {
    "payment_confirmed": _SYSTEM | _BUYER,
    "seller_acknowledges": _SELLER,
    "seller_starts_work": _SELLER,
    "seller_delivers": _SELLER,
    "buyer_accepts": _BUYER,
    "buyer_requests_revision": _BUYER,
    "buyer_cancels": _BUYER,
    "party_disputes": _BUYER | _SELLER,
    "settlement_failed": _SYSTEM,
    "admin_cancels": _SYSTEM,
}


def fire(machine: OfferStateMachine | OrderStateMachine, event_name: str) -> str:
    """Fire event_name on machine and return the new status.

    Raises:
        InvalidTransitionError: the event is unknown or illegal from the
            machine's current state.
    """
    entity = "offer" if isinstance(machine, OfferStateMachine) else "order"
    current = machine.status
    allowed = machine.get_allowed_events()
    roles = OFFER_EVENT_ROLES if entity == "offer" else ORDER_EVENT_ROLES
    if event_name not in roles or event_name not in allowed:
        raise InvalidTransitionError(current, event_name, allowed, entity=entity)
    try:
        getattr(machine, event_name)()
    except TransitionNotAllowed as err:
        raise InvalidTransitionError(current, event_name, allowed, entity=entity) from err
    return machine.status


def validate_transition(current_status: str, event_name: str, entity: str = "order") -> str:
    """Validate a transition and return the resulting status.

    Convenience wrapper that builds a throwaway machine for the entity kind.

    Raises:
        InvalidTransitionError: If the transition is illegal.
        ValueError: If the status is unknown.
    """
    machine = OfferStateMachine(current_status) if entity == "offer" else OrderStateMachine(current_status)
    return fire(machine, event_name)


def allowed_events_for(
    current_status: str,
    role: ActorRole | None,
    entity: str = "order",
) -> list[str]:
    """Return the events legal from current_status that role may fire."""
    if role is None:
        return []
    if entity == "offer":
        machine: OfferStateMachine | OrderStateMachine = OfferStateMachine(current_status)
        roles = OFFER_EVENT_ROLES
    else:
        machine = OrderStateMachine(current_status)
        roles = ORDER_EVENT_ROLES
    return [event for event in machine.get_allowed_events() if role in roles.get(event, ())]


def resolve_role(actor: str, buyer_id: str, seller_id: str) -> ActorRole | None:
    """Return the role actor plays for an entity with the given parties."""
    if actor == SYSTEM_ACTOR:
        return ActorRole.SYSTEM
    if actor == buyer_id:
        return ActorRole.BUYER
    if actor == seller_id:
        return ActorRole.SELLER
    return None
