"""Booking lifecycle rules.

The table below is the only source of truth for which status changes
exist and who may trigger them. It is pure: nothing here touches the
database or Stripe, so every edge can be checked exhaustively in tests.
"""
from dataclasses import dataclass
from typing import Dict, FrozenSet, Tuple
import enum

from app.core.exceptions import AuthorizationError, InvalidTransitionError, SessionInProgressError
from app.models.booking import BookingStatus


class BookingAction(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"
    MARK_PAID = "mark_paid"
    CONFIRM_START = "confirm_start"
    CONFIRM_END = "confirm_end"
    DISPUTE = "dispute"
    VERIFY_COMPLETE = "verify_complete"


class ActorRole(str, enum.Enum):
    STUDENT = "student"
    TUTOR = "tutor"
    PAYMENT_PROCESSOR = "payment_processor"


@dataclass(frozen=True)
class Transition:
    source: BookingStatus
    action: BookingAction
    target: BookingStatus
    actors: FrozenSet[ActorRole]
    # Fires only once both parties have confirmed
    requires_both_parties: bool = False


PARTIES = frozenset({ActorRole.STUDENT, ActorRole.TUTOR})

_TRANSITION_LIST = [
    Transition(BookingStatus.REQUESTED, BookingAction.APPROVE, BookingStatus.PENDING, frozenset({ActorRole.TUTOR})),
    Transition(BookingStatus.REQUESTED, BookingAction.REJECT, BookingStatus.REJECTED, frozenset({ActorRole.TUTOR})),
    Transition(BookingStatus.REQUESTED, BookingAction.CANCEL, BookingStatus.CANCELLED, frozenset({ActorRole.STUDENT})),
    Transition(BookingStatus.PENDING, BookingAction.MARK_PAID, BookingStatus.CONFIRMED, frozenset({ActorRole.PAYMENT_PROCESSOR})),
    Transition(BookingStatus.PENDING, BookingAction.CANCEL, BookingStatus.CANCELLED, PARTIES),
    Transition(BookingStatus.CONFIRMED, BookingAction.CANCEL, BookingStatus.CANCELLED, PARTIES),
    Transition(BookingStatus.CONFIRMED, BookingAction.CONFIRM_START, BookingStatus.IN_PROGRESS, PARTIES, requires_both_parties=True),
    Transition(BookingStatus.IN_PROGRESS, BookingAction.CONFIRM_END, BookingStatus.AWAITING_REVIEW, PARTIES, requires_both_parties=True),
    Transition(BookingStatus.IN_PROGRESS, BookingAction.DISPUTE, BookingStatus.DISPUTED, PARTIES),
    Transition(BookingStatus.AWAITING_REVIEW, BookingAction.DISPUTE, BookingStatus.DISPUTED, PARTIES),
    # The payer attests the lesson happened before escrow is released
    Transition(BookingStatus.AWAITING_REVIEW, BookingAction.VERIFY_COMPLETE, BookingStatus.COMPLETED, frozenset({ActorRole.STUDENT})),
]

TRANSITIONS: Dict[Tuple[BookingStatus, BookingAction], Transition] = {
    (t.source, t.action): t for t in _TRANSITION_LIST
}

# Status each action moves towards, used when reporting a rejected attempt
ACTION_TARGETS: Dict[BookingAction, BookingStatus] = {
    BookingAction.APPROVE: BookingStatus.PENDING,
    BookingAction.REJECT: BookingStatus.REJECTED,
    BookingAction.CANCEL: BookingStatus.CANCELLED,
    BookingAction.MARK_PAID: BookingStatus.CONFIRMED,
    BookingAction.CONFIRM_START: BookingStatus.IN_PROGRESS,
    BookingAction.CONFIRM_END: BookingStatus.AWAITING_REVIEW,
    BookingAction.DISPUTE: BookingStatus.DISPUTED,
    BookingAction.VERIFY_COMPLETE: BookingStatus.COMPLETED,
}

# PATCH /bookings/{id} speaks in target statuses
STATUS_REQUEST_ACTIONS: Dict[BookingStatus, BookingAction] = {
    BookingStatus.PENDING: BookingAction.APPROVE,
    BookingStatus.REJECTED: BookingAction.REJECT,
    BookingStatus.CANCELLED: BookingAction.CANCEL,
}

IN_SESSION_STATUSES = frozenset({BookingStatus.IN_PROGRESS, BookingStatus.AWAITING_REVIEW})


def resolve_transition(status: BookingStatus, action: BookingAction, actor: ActorRole) -> Transition:
    """Return the edge ``action`` takes from ``status``, or raise why it cannot be taken"""
    transition = TRANSITIONS.get((status, action))
    if transition is None:
        if action == BookingAction.CANCEL and status in IN_SESSION_STATUSES:
            raise SessionInProgressError()
        raise InvalidTransitionError(status.value, ACTION_TARGETS[action].value)

    if actor not in transition.actors:
        raise AuthorizationError(f"A {actor.value} cannot {action.value} a {status.value} booking")

    return transition


def action_for_status_request(status: BookingStatus, target: BookingStatus) -> BookingAction:
    """Map a requested target status onto the action that reaches it"""
    action = STATUS_REQUEST_ACTIONS.get(target)
    if action is None:
        raise InvalidTransitionError(status.value, target.value)
    return action


def is_terminal(status: BookingStatus) -> bool:
    return not any(t.source == status for t in _TRANSITION_LIST)
