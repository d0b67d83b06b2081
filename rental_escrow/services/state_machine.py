from __future__ import annotations

from datetime import datetime
from enum import Enum

from rental_escrow.services.errors import InvalidTransition


class BookingStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    AWAITING_PICKUP_INSPECTION = "awaiting_pickup_inspection"
    ACTIVE = "active"
    AWAITING_RETURN_INSPECTION = "awaiting_return_inspection"
    PENDING_OWNER_REVIEW = "pending_owner_review"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class RentalAction(str, Enum):
    APPROVE = "approve"
    AWAIT_PICKUP = "await_pickup"
    SUBMIT_PICKUP_INSPECTION = "submit_pickup_inspection"
    INITIATE_RETURN = "initiate_return"
    SUBMIT_RETURN_INSPECTION = "submit_return_inspection"
    CONFIRM_RETURN = "confirm_return"
    EXPIRE_CLAIM_WINDOW = "expire_claim_window"
    FILE_CLAIM = "file_claim"
    RESOLVE_CLAIM = "resolve_claim"
    CANCEL = "cancel"


TERMINAL_STATES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})

# Taken by the service itself, never requested by a party.
SYSTEM_ACTIONS = frozenset({RentalAction.AWAIT_PICKUP, RentalAction.EXPIRE_CLAIM_WINDOW})

# Statuses that reserve the equipment for the booked range.
RANGE_HOLDING_STATES = frozenset(
    {
        BookingStatus.APPROVED,
        BookingStatus.AWAITING_PICKUP_INSPECTION,
        BookingStatus.ACTIVE,
        BookingStatus.AWAITING_RETURN_INSPECTION,
        BookingStatus.PENDING_OWNER_REVIEW,
        BookingStatus.DISPUTED,
    }
)

# Cancellation from ACTIVE is listed here but is further guarded on the
# absence of a pickup inspection by the rental service.
STATE_TRANSITIONS: dict[BookingStatus, dict[RentalAction, BookingStatus]] = {
    BookingStatus.PENDING: {
        RentalAction.APPROVE: BookingStatus.APPROVED,
        RentalAction.CANCEL: BookingStatus.CANCELLED,
    },
    BookingStatus.APPROVED: {
        RentalAction.AWAIT_PICKUP: BookingStatus.AWAITING_PICKUP_INSPECTION,
        RentalAction.CANCEL: BookingStatus.CANCELLED,
    },
    BookingStatus.AWAITING_PICKUP_INSPECTION: {
        RentalAction.SUBMIT_PICKUP_INSPECTION: BookingStatus.ACTIVE,
        RentalAction.CANCEL: BookingStatus.CANCELLED,
    },
    BookingStatus.ACTIVE: {
        RentalAction.INITIATE_RETURN: BookingStatus.AWAITING_RETURN_INSPECTION,
        RentalAction.CANCEL: BookingStatus.CANCELLED,
    },
    BookingStatus.AWAITING_RETURN_INSPECTION: {
        RentalAction.SUBMIT_RETURN_INSPECTION: BookingStatus.PENDING_OWNER_REVIEW,
    },
    BookingStatus.PENDING_OWNER_REVIEW: {
        RentalAction.CONFIRM_RETURN: BookingStatus.COMPLETED,
        RentalAction.EXPIRE_CLAIM_WINDOW: BookingStatus.COMPLETED,
        RentalAction.FILE_CLAIM: BookingStatus.DISPUTED,
    },
    BookingStatus.DISPUTED: {
        RentalAction.RESOLVE_CLAIM: BookingStatus.COMPLETED,
    },
    BookingStatus.COMPLETED: {},
    BookingStatus.CANCELLED: {},
}

_missing = set(BookingStatus) - set(STATE_TRANSITIONS)
if _missing:
    raise RuntimeError(f"Transition table is missing states: {sorted(s.value for s in _missing)}")


def normalize_status(raw: str | BookingStatus | None) -> BookingStatus:
    if isinstance(raw, BookingStatus):
        return raw
    try:
        return BookingStatus((raw or "").strip())
    except ValueError as exc:
        raise RuntimeError(f"Unknown booking status stored: {raw!r}") from exc


def next_status(current: str | BookingStatus, action: RentalAction) -> BookingStatus:
    state = normalize_status(current)
    target = STATE_TRANSITIONS[state].get(action)
    if target is None:
        raise InvalidTransition(state.value, action.value)
    return target


def can_transition(current: str | BookingStatus, action: RentalAction) -> bool:
    return action in STATE_TRANSITIONS[normalize_status(current)]


def allowed_actions(current: str | BookingStatus, pickup_documented: bool = False) -> list[str]:
    """Actions a renter or owner may request from ``current``.

    Actions the service takes on its own are left out, as is cancellation
    once the pickup inspection exists.
    """
    actions = []
    for action in STATE_TRANSITIONS[normalize_status(current)]:
        if action in SYSTEM_ACTIONS:
            continue
        if action == RentalAction.CANCEL and pickup_documented:
            continue
        actions.append(action.value)
    return actions


def apply_transition(booking, action: RentalAction, now: datetime) -> BookingStatus:
    target = next_status(booking.Status, action)
    booking.Status = target.value
    booking.UpdatedAt = now
    if target == BookingStatus.ACTIVE and booking.ActivatedAt is None:
        booking.ActivatedAt = now
    if target == BookingStatus.COMPLETED:
        booking.CompletedAt = now
    return target
