"""Transaction and EscrowAccount state machine guards.

Uses python-statemachine to enforce legal state transitions at the domain
level. Services never assign a status directly: they fire a named event on a
temporary machine built at the current status and store the resulting value.
An illegal event raises InvalidStateTransitionError and nothing is written.

Transaction transition table:
    CREATED           -> AWAITING_PAYMENT   (open_for_payment)
    AWAITING_PAYMENT  -> PAYMENT_RECEIVED   (payment_received)
    PAYMENT_RECEIVED  -> IN_PROGRESS        (start_work)
    IN_PROGRESS       -> AWAITING_PROOF     (await_proof)
    UNDER_REVIEW      -> AWAITING_PROOF     (await_proof)
    IN_PROGRESS       -> UNDER_REVIEW       (begin_review)
    AWAITING_PROOF    -> UNDER_REVIEW       (begin_review)
    UNDER_REVIEW      -> COMPLETED          (complete)
    DISPUTED          -> COMPLETED          (complete)
    PAYMENT_RECEIVED.. UNDER_REVIEW -> DISPUTED   (dispute)
    AWAITING_PAYMENT.. DISPUTED     -> REFUNDED   (refund)
    CREATED, AWAITING_PAYMENT       -> CANCELLED  (cancel)

Escrow transition table:
    CREATED            -> AWAITING_FUNDS     (open)
    AWAITING_FUNDS     -> FUNDS_HELD         (funds_secured)
    FUNDS_HELD         -> READY_FOR_RELEASE  (conditions_met)
    DISPUTED           -> READY_FOR_RELEASE  (conditions_met)
    FUNDS_HELD         -> RELEASED           (fully_released)
    READY_FOR_RELEASE  -> RELEASED           (fully_released)
    FUNDS_HELD         -> DISPUTED           (dispute)
    READY_FOR_RELEASE  -> DISPUTED           (dispute)
    AWAITING_FUNDS .. DISPUTED -> REFUNDED   (fully_refunded)
    CREATED, AWAITING_FUNDS, FUNDS_HELD -> CANCELLED (cancel)
"""

from __future__ import annotations

from enum import StrEnum

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from paypledge.domain.enums import EscrowStatus, TransactionStatus
from paypledge.domain.exceptions import InvalidStateTransitionError


class _StatusMixin:
    """Shared construction from a stored status string."""

    def __init__(self, current_status: str = "CREATED") -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the status enum)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return the ids of the events that can fire from the current state.

        Ids are the attribute names (``start_work``); ``Event.name`` is a
        display label and differs from the id in python-statemachine 3.
        """
        return [event.id for event in self.allowed_events]


class TransactionStateMachine(_StatusMixin, StateMachine):
    """Guards the overall deal lifecycle, one level above the escrow account."""

    # --- States ---
    CREATED = State("CREATED", initial=True)
    AWAITING_PAYMENT = State("AWAITING_PAYMENT")
    PAYMENT_RECEIVED = State("PAYMENT_RECEIVED")
    IN_PROGRESS = State("IN_PROGRESS")
    AWAITING_PROOF = State("AWAITING_PROOF")
    UNDER_REVIEW = State("UNDER_REVIEW")
    DISPUTED = State("DISPUTED")
    COMPLETED = State("COMPLETED", final=True)
    CANCELLED = State("CANCELLED", final=True)
    REFUNDED = State("REFUNDED", final=True)

    # --- Events / Transitions ---

    # Funding
    open_for_payment = CREATED.to(AWAITING_PAYMENT)
    payment_received = AWAITING_PAYMENT.to(PAYMENT_RECEIVED)

    # Delivery
    start_work = PAYMENT_RECEIVED.to(IN_PROGRESS)
    await_proof = IN_PROGRESS.to(AWAITING_PROOF) | UNDER_REVIEW.to(AWAITING_PROOF)
    begin_review = IN_PROGRESS.to(UNDER_REVIEW) | AWAITING_PROOF.to(UNDER_REVIEW)

    # Settlement
    complete = UNDER_REVIEW.to(COMPLETED) | DISPUTED.to(COMPLETED)
    refund = (
        AWAITING_PAYMENT.to(REFUNDED)
        | PAYMENT_RECEIVED.to(REFUNDED)
        | IN_PROGRESS.to(REFUNDED)
        | AWAITING_PROOF.to(REFUNDED)
        | UNDER_REVIEW.to(REFUNDED)
        | DISPUTED.to(REFUNDED)
    )

    # Disputes
    dispute = (
        PAYMENT_RECEIVED.to(DISPUTED)
        | IN_PROGRESS.to(DISPUTED)
        | AWAITING_PROOF.to(DISPUTED)
        | UNDER_REVIEW.to(DISPUTED)
    )

    # Cancellation (guarded by the service: no funds captured)
    cancel = CREATED.to(CANCELLED) | AWAITING_PAYMENT.to(CANCELLED)


class EscrowStateMachine(_StatusMixin, StateMachine):
    """Guards the escrow account; READY_FOR_RELEASE is gated by can_release()."""

    # --- States ---
    CREATED = State("CREATED", initial=True)
    AWAITING_FUNDS = State("AWAITING_FUNDS")
    FUNDS_HELD = State("FUNDS_HELD")
    READY_FOR_RELEASE = State("READY_FOR_RELEASE")
    DISPUTED = State("DISPUTED")
    RELEASED = State("RELEASED", final=True)
    REFUNDED = State("REFUNDED", final=True)
    CANCELLED = State("CANCELLED", final=True)

    # --- Events / Transitions ---
    open = CREATED.to(AWAITING_FUNDS)
    funds_secured = AWAITING_FUNDS.to(FUNDS_HELD)
    conditions_met = FUNDS_HELD.to(READY_FOR_RELEASE) | DISPUTED.to(READY_FOR_RELEASE)
    fully_released = FUNDS_HELD.to(RELEASED) | READY_FOR_RELEASE.to(RELEASED)
    dispute = FUNDS_HELD.to(DISPUTED) | READY_FOR_RELEASE.to(DISPUTED)
    fully_refunded = (
        AWAITING_FUNDS.to(REFUNDED)
        | FUNDS_HELD.to(REFUNDED)
        | READY_FOR_RELEASE.to(REFUNDED)
        | DISPUTED.to(REFUNDED)
    )
    cancel = CREATED.to(CANCELLED) | AWAITING_FUNDS.to(CANCELLED) | FUNDS_HELD.to(CANCELLED)


_STATUS_ENUMS: dict[type[StateMachine], type[StrEnum]] = {
    TransactionStateMachine: TransactionStatus,
    EscrowStateMachine: EscrowStatus,
}


def can_fire(machine_cls: type[StateMachine], current_status: str, event_name: str) -> bool:
    """Return True if ``event_name`` is allowed from ``current_status``. No side effects."""
    sm = machine_cls(current_status=current_status)
    return event_name in sm.get_allowed_events()


def fire_transition(
    machine_cls: type[StateMachine], current_status: str, event_name: str
) -> StrEnum:
    """Fire a named event and return the new status as the model's status enum.

    Raises:
        InvalidStateTransitionError: If the event is unknown or not allowed
            from ``current_status``.
    """
    sm = machine_cls(current_status=current_status)
    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise InvalidStateTransitionError(current_status, event_name)
    try:
        event_method()
    except TransitionNotAllowed as err:
        raise InvalidStateTransitionError(current_status, event_name) from err
    return _STATUS_ENUMS[machine_cls](sm.status)
