from __future__ import annotations

import json
import logging
import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Iterator

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from rental_escrow.models.rental_models import BookingRequest, DamageClaim, Equipment, Inspection
from rental_escrow.services import event_service as events_mod
from rental_escrow.services.availability_service import check_availability, rental_days
from rental_escrow.services.errors import (
    ConflictError,
    ForbiddenError,
    InputValidationError,
    InvalidTransition,
    NotFoundError,
    PolicyViolation,
    UpstreamFailure,
)
from rental_escrow.services.escrow_service import (
    PAYMENT_PENDING,
    build_payment_record,
    hold_funds,
    is_captured,
    refund_funds,
    refund_key,
    release_funds,
    reprice_payment_record,
    serialize_payment,
)
from rental_escrow.services.inspection_service import (
    PICKUP,
    RETURN,
    booking_claim_deadline,
    build_inspection,
    claim_window_hours,
    find_inspection,
    serialize_inspection,
    validate_evidence,
)
from rental_escrow.services.payment_gateway import PaymentGateway
from rental_escrow.services.pricing_service import INSURANCE_PERCENTAGES, quote_for_equipment
from rental_escrow.services.state_machine import (
    RANGE_HOLDING_STATES,
    TERMINAL_STATES,
    BookingStatus,
    RentalAction,
    allowed_actions,
    apply_transition,
    next_status,
    normalize_status,
)

STATE_LOGGER = logging.getLogger("rental_escrow.state")
SWEEP_LOGGER = logging.getLogger("rental_escrow.sweep")

ROLE_RENTER = "renter"
ROLE_OWNER = "owner"
ROLE_SUPPORT = "support"
ROLES = {ROLE_RENTER, ROLE_OWNER, ROLE_SUPPORT}

_LOCKS_GUARD = threading.Lock()
# Entries vanish once no request holds or waits on the lock.
_BOOKING_LOCKS: weakref.WeakValueDictionary[int, threading.Lock] = weakref.WeakValueDictionary()
_EQUIPMENT_LOCKS: weakref.WeakValueDictionary[int, threading.Lock] = weakref.WeakValueDictionary()


@dataclass(frozen=True)
class Actor:
    actor_id: int
    role: str


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _lock_for(registry: weakref.WeakValueDictionary, key: int) -> threading.Lock:
    with _LOCKS_GUARD:
        lock = registry.get(key)
        if lock is None:
            lock = threading.Lock()
            registry[key] = lock
        return lock


@contextmanager
def booking_lock(booking_id: int) -> Iterator[None]:
    lock = _lock_for(_BOOKING_LOCKS, int(booking_id))
    with lock:
        yield


@contextmanager
def equipment_lock(equipment_id: int) -> Iterator[None]:
    lock = _lock_for(_EQUIPMENT_LOCKS, int(equipment_id))
    with lock:
        yield


def load_booking(db: Session, booking_id: int, for_update: bool = False) -> BookingRequest:
    stmt = (
        select(BookingRequest)
        .options(selectinload(BookingRequest.Inspections).selectinload(Inspection.ChecklistItems))
        .options(selectinload(BookingRequest.Payment))
        .options(selectinload(BookingRequest.Claim))
        .options(selectinload(BookingRequest.Equipment).selectinload(Equipment.RateOverrides))
        .where(BookingRequest.BookingID == booking_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    booking = db.execute(stmt).scalars().first()
    if booking is None:
        raise NotFoundError("Booking not found", bookingID=booking_id)
    return booking


def _current_status(db: Session, booking_id: int) -> str:
    value = db.execute(select(BookingRequest.Status).where(BookingRequest.BookingID == booking_id)).scalar()
    return value or "unknown"


def run_booking_transition(
    db: Session,
    booking_id: int,
    action: RentalAction | str,
    work: Callable[[BookingRequest, list[dict]], object],
):
    """Run ``work`` against a freshly loaded booking as one atomic unit.

    Transitions on the same booking are serialised; ``work`` appends the
    events it raises to the list it receives and they are dispatched only
    after the commit succeeds.
    """
    action_name = action.value if isinstance(action, RentalAction) else str(action)
    events: list[dict] = []
    with booking_lock(booking_id):
        try:
            booking = load_booking(db, booking_id, for_update=True)
            result = work(booking, events)
            db.commit()
        except StaleDataError as exc:
            db.rollback()
            current = _current_status(db, booking_id)
            STATE_LOGGER.warning("Concurrent update lost on booking %s during %s", booking_id, action_name)
            raise InvalidTransition(current, action_name, "Booking was changed by another request.") from exc
        except Exception:
            db.rollback()
            raise
    events_mod.dispatch_events(events)
    return result


def require_party(booking: BookingRequest, actor: Actor, *roles: str) -> None:
    allowed = set(roles)
    if ROLE_RENTER in allowed and actor.role == ROLE_RENTER and actor.actor_id == booking.RenterID:
        return
    if ROLE_OWNER in allowed and actor.role == ROLE_OWNER and actor.actor_id == booking.OwnerID:
        return
    if ROLE_SUPPORT in allowed and actor.role == ROLE_SUPPORT:
        return
    raise ForbiddenError(
        f"Only the {' or '.join(sorted(allowed))} may perform this action.",
        code=f"{'_or_'.join(sorted(allowed))}_only",
        bookingID=booking.BookingID,
        actorID=actor.actor_id,
    )


def _validate_dates(start_date: date, end_date: date, today: date) -> None:
    if end_date <= start_date:
        raise InputValidationError("End date must be after start date", code="invalid_date_range")
    if start_date < today:
        raise InputValidationError("Start date cannot be in the past", code="start_date_in_past")


def _require_available(db: Session, equipment_id: int, start_date: date, end_date: date, exclude_booking_id: int | None = None) -> None:
    availability = check_availability(db, equipment_id, start_date, end_date, exclude_booking_id)
    if not availability.available:
        raise ConflictError(
            "Selected dates are not available.",
            conflicts=[conflict.to_dict() for conflict in availability.conflicts],
            equipmentID=equipment_id,
        )


def _normalize_insurance(raw: str | None) -> str:
    value = (raw or "none").strip().lower()
    if value not in INSURANCE_PERCENTAGES:
        raise InputValidationError(f"Unknown insurance type: {raw}", code="invalid_insurance_type")
    return value


def create_booking(
    db: Session,
    actor: Actor,
    equipment_id: int,
    start_date: date,
    end_date: date,
    insurance_type: str | None = "none",
    now: datetime | None = None,
) -> BookingRequest:
    now = now or utc_now()
    if actor.role != ROLE_RENTER:
        raise ForbiddenError("Only renters can request bookings.", code="renter_only", actorID=actor.actor_id)
    equipment = db.get(Equipment, equipment_id)
    if equipment is None:
        raise NotFoundError("Equipment not found", equipmentID=equipment_id)
    if equipment.OwnerID == actor.actor_id:
        raise PolicyViolation("Owners cannot rent their own equipment.", code="own_equipment", equipmentID=equipment_id)

    insurance = _normalize_insurance(insurance_type)
    _validate_dates(start_date, end_date, now.date())

    try:
        _require_available(db, equipment_id, start_date, end_date)
        quote = quote_for_equipment(equipment, start_date, end_date, insurance)
        booking = BookingRequest(
            EquipmentID=equipment.EquipmentID,
            RenterID=actor.actor_id,
            OwnerID=equipment.OwnerID,
            StartDate=start_date,
            EndDate=end_date,
            Status=BookingStatus.PENDING.value,
            InsuranceType=insurance,
            TotalAmount=quote.total,
            CreatedAt=now,
            UpdatedAt=now,
        )
        db.add(booking)
        db.add(build_payment_record(booking, quote))
        db.flush()
        event = events_mod.emit_event(
            db,
            booking,
            events_mod.BOOKING_REQUESTED,
            actor.actor_id,
            now,
            {"startDate": start_date.isoformat(), "endDate": end_date.isoformat(), "total": str(quote.total)},
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    STATE_LOGGER.info("Booking %s requested by renter %s for equipment %s", booking.BookingID, actor.actor_id, equipment_id)
    events_mod.dispatch_events([event])
    return load_booking(db, booking.BookingID)


def reschedule_booking(
    db: Session,
    actor: Actor,
    booking_id: int,
    start_date: date,
    end_date: date,
    now: datetime | None = None,
) -> BookingRequest:
    now = now or utc_now()

    def _work(booking: BookingRequest, events: list[dict]) -> BookingRequest:
        require_party(booking, actor, ROLE_RENTER)
        if normalize_status(booking.Status) != BookingStatus.PENDING:
            raise InvalidTransition(booking.Status, "reschedule", "Only pending bookings can change dates.")
        _validate_dates(start_date, end_date, now.date())
        _require_available(db, booking.EquipmentID, start_date, end_date, exclude_booking_id=booking.BookingID)

        quote = quote_for_equipment(booking.Equipment, start_date, end_date, booking.InsuranceType)
        booking.StartDate = start_date
        booking.EndDate = end_date
        booking.TotalAmount = quote.total
        booking.UpdatedAt = now
        reprice_payment_record(booking.Payment, quote)
        events.append(
            events_mod.emit_event(
                db,
                booking,
                events_mod.BOOKING_RESCHEDULED,
                actor.actor_id,
                now,
                {"startDate": start_date.isoformat(), "endDate": end_date.isoformat(), "total": str(quote.total)},
            )
        )
        return booking

    return run_booking_transition(db, booking_id, "reschedule", _work)


def approve_booking(
    db: Session,
    actor: Actor,
    booking_id: int,
    gateway: PaymentGateway,
    now: datetime | None = None,
) -> BookingRequest:
    now = now or utc_now()
    equipment_id = db.execute(
        select(BookingRequest.EquipmentID).where(BookingRequest.BookingID == booking_id)
    ).scalar()
    if equipment_id is None:
        raise NotFoundError("Booking not found", bookingID=booking_id)

    events: list[dict] = []
    with equipment_lock(equipment_id), booking_lock(booking_id):
        captured = None
        try:
            # Row lock on the equipment serialises approvals across processes.
            db.execute(select(Equipment.EquipmentID).where(Equipment.EquipmentID == equipment_id).with_for_update())
            booking = load_booking(db, booking_id, for_update=True)
            require_party(booking, actor, ROLE_OWNER)

            status = normalize_status(booking.Status)
            if status != BookingStatus.PENDING:
                payment = booking.Payment
                if payment is not None and payment.PaymentStatus != PAYMENT_PENDING and status not in {BookingStatus.CANCELLED}:
                    db.rollback()
                    STATE_LOGGER.info("Approve replay on booking %s ignored; already %s", booking_id, status.value)
                    return load_booking(db, booking_id)
                raise InvalidTransition(status.value, RentalAction.APPROVE.value)

            next_status(booking.Status, RentalAction.APPROVE)
            availability = check_availability(db, booking.EquipmentID, booking.StartDate, booking.EndDate, exclude_booking_id=booking.BookingID)
            if not availability.available:
                raise ConflictError(
                    "These dates are no longer available.",
                    code="dates_no_longer_available",
                    conflicts=[conflict.to_dict() for conflict in availability.conflicts],
                    bookingID=booking.BookingID,
                )

            hold_funds(booking.Payment, gateway, now)
            # Kept outside the session; a rollback expires the payment row.
            captured = (booking.Payment.PaymentReference, booking.Payment.TotalAmount)

            apply_transition(booking, RentalAction.APPROVE, now)
            events.append(events_mod.emit_event(db, booking, events_mod.BOOKING_APPROVED, actor.actor_id, now))
            apply_transition(booking, RentalAction.AWAIT_PICKUP, now)
            events.append(events_mod.emit_event(db, booking, events_mod.PICKUP_INSPECTION_REQUIRED, None, now))
            db.commit()
        except StaleDataError as exc:
            db.rollback()
            _compensate_capture(booking_id, gateway, captured)
            raise InvalidTransition(_current_status(db, booking_id), RentalAction.APPROVE.value, "Booking was changed by another request.") from exc
        except Exception:
            db.rollback()
            _compensate_capture(booking_id, gateway, captured)
            raise

    STATE_LOGGER.info("Booking %s approved by owner %s", booking_id, actor.actor_id)
    events_mod.dispatch_events(events)
    return load_booking(db, booking_id)


def _compensate_capture(booking_id: int, gateway: PaymentGateway, captured: tuple | None) -> None:
    if captured is None:
        return
    reference, amount = captured
    try:
        result = gateway.refund(reference, amount, refund_key(booking_id, f"capture-reversal-{reference}"))
    except UpstreamFailure:
        STATE_LOGGER.exception("Approval of booking %s failed after capture and refund of %s failed", booking_id, reference)
        return
    if result.succeeded:
        STATE_LOGGER.warning("Approval of booking %s failed after capture; capture %s refunded", booking_id, reference)
    else:
        STATE_LOGGER.error("Approval of booking %s failed after capture and refund of %s was %s", booking_id, reference, result.status)


def submit_inspection(
    db: Session,
    actor: Actor,
    booking_id: int,
    evidence,
    now: datetime | None = None,
) -> tuple[BookingRequest, Inspection]:
    now = now or utc_now()
    inspection_type = evidence.inspectionType
    if inspection_type not in (PICKUP, RETURN):
        raise InputValidationError(f"Unknown inspection type: {inspection_type}", code="invalid_inspection_type")
    action = RentalAction.SUBMIT_PICKUP_INSPECTION if inspection_type == PICKUP else RentalAction.SUBMIT_RETURN_INSPECTION

    def _work(booking: BookingRequest, events: list[dict]) -> tuple[BookingRequest, Inspection]:
        require_party(booking, actor, ROLE_RENTER)

        existing = find_inspection(booking, inspection_type)
        if existing is not None:
            STATE_LOGGER.info("Replay of %s inspection on booking %s returns existing record", inspection_type, booking.BookingID)
            return booking, existing

        next_status(booking.Status, action)
        if inspection_type == RETURN and find_inspection(booking, PICKUP) is None:
            raise PolicyViolation(
                "A return inspection requires a pickup inspection first.",
                code="pickup_inspection_missing",
                bookingID=booking.BookingID,
            )
        validate_evidence(evidence)

        inspection = build_inspection(booking, evidence, actor.actor_id, now)
        db.add(inspection)
        apply_transition(booking, action, now)
        if inspection_type == PICKUP:
            events.append(events_mod.emit_event(db, booking, events_mod.RENTAL_STARTED, actor.actor_id, now))
        else:
            deadline = booking_claim_deadline(booking)
            events.append(
                events_mod.emit_event(
                    db,
                    booking,
                    events_mod.RETURN_SUBMITTED,
                    actor.actor_id,
                    now,
                    {"claimDeadline": deadline.isoformat() if deadline else None},
                )
            )
        return booking, inspection

    booking, inspection = run_booking_transition(db, booking_id, action, _work)
    return load_booking(db, booking.BookingID), inspection


def initiate_return(db: Session, actor: Actor, booking_id: int, now: datetime | None = None) -> BookingRequest:
    now = now or utc_now()

    def _work(booking: BookingRequest, events: list[dict]) -> BookingRequest:
        require_party(booking, actor, ROLE_RENTER, ROLE_OWNER)
        apply_transition(booking, RentalAction.INITIATE_RETURN, now)
        events.append(events_mod.emit_event(db, booking, events_mod.RETURN_INITIATED, actor.actor_id, now))
        return booking

    return run_booking_transition(db, booking_id, RentalAction.INITIATE_RETURN, _work)


def settle_expired_claim_window(
    db: Session,
    booking: BookingRequest,
    gateway: PaymentGateway,
    now: datetime,
    events: list[dict],
) -> bool:
    """Complete a booking whose claim window ran out with no claim filed.

    Returns False without touching anything when the booking is not in
    owner review, already has a claim, or the window is still open, so it
    is safe to call any number of times.
    """
    if normalize_status(booking.Status) != BookingStatus.PENDING_OWNER_REVIEW:
        return False
    if booking.Claim is not None:
        return False
    deadline = booking_claim_deadline(booking)
    if deadline is None or now < deadline:
        return False

    apply_transition(booking, RentalAction.EXPIRE_CLAIM_WINDOW, now)
    breakdown = release_funds(booking, booking.Payment, gateway, now)
    events.append(
        events_mod.emit_event(
            db,
            booking,
            events_mod.CLAIM_WINDOW_EXPIRED,
            None,
            now,
            {"claimDeadline": deadline.isoformat(), **breakdown.to_dict()},
        )
    )
    STATE_LOGGER.info("Claim window for booking %s expired at %s; booking completed", booking.BookingID, deadline)
    return True


def _claim_window_expired(booking: BookingRequest, now: datetime) -> bool:
    if normalize_status(booking.Status) != BookingStatus.PENDING_OWNER_REVIEW or booking.Claim is not None:
        return False
    deadline = booking_claim_deadline(booking)
    return deadline is not None and now >= deadline


def settle_if_expired(db: Session, booking_id: int, gateway: PaymentGateway, now: datetime) -> bool:
    def _work(booking: BookingRequest, events: list[dict]) -> bool:
        return settle_expired_claim_window(db, booking, gateway, now, events)

    return run_booking_transition(db, booking_id, RentalAction.EXPIRE_CLAIM_WINDOW, _work)


def get_booking(db: Session, booking_id: int, gateway: PaymentGateway, now: datetime | None = None) -> BookingRequest:
    now = now or utc_now()
    booking = load_booking(db, booking_id)
    if _claim_window_expired(booking, now):
        try:
            settle_if_expired(db, booking_id, gateway, now)
        except UpstreamFailure:
            # The periodic sweep retries; the read still answers.
            SWEEP_LOGGER.warning("Lazy claim-window settlement failed for booking %s", booking_id, exc_info=True)
        booking = load_booking(db, booking_id)
    return booking


def list_bookings(db: Session, actor: Actor, gateway: PaymentGateway, now: datetime | None = None) -> list[BookingRequest]:
    now = now or utc_now()
    stmt = select(BookingRequest.BookingID).order_by(BookingRequest.CreatedAt.desc(), BookingRequest.BookingID.desc())
    if actor.role != ROLE_SUPPORT:
        stmt = stmt.where(or_(BookingRequest.RenterID == actor.actor_id, BookingRequest.OwnerID == actor.actor_id))
    booking_ids = db.execute(stmt).scalars().all()
    return [get_booking(db, booking_id, gateway, now) for booking_id in booking_ids]


def confirm_return(
    db: Session,
    actor: Actor,
    booking_id: int,
    gateway: PaymentGateway,
    now: datetime | None = None,
) -> BookingRequest:
    now = now or utc_now()

    def _work(booking: BookingRequest, events: list[dict]) -> BookingRequest:
        require_party(booking, actor, ROLE_OWNER)
        if settle_expired_claim_window(db, booking, gateway, now, events):
            return booking
        apply_transition(booking, RentalAction.CONFIRM_RETURN, now)
        breakdown = release_funds(booking, booking.Payment, gateway, now)
        events.append(events_mod.emit_event(db, booking, events_mod.RENTAL_COMPLETED, actor.actor_id, now, breakdown.to_dict()))
        return booking

    run_booking_transition(db, booking_id, RentalAction.CONFIRM_RETURN, _work)
    return load_booking(db, booking_id)


def cancel_booking(
    db: Session,
    actor: Actor,
    booking_id: int,
    gateway: PaymentGateway,
    reason: str | None = None,
    now: datetime | None = None,
) -> BookingRequest:
    now = now or utc_now()

    def _work(booking: BookingRequest, events: list[dict]) -> BookingRequest:
        require_party(booking, actor, ROLE_RENTER, ROLE_OWNER)
        status = normalize_status(booking.Status)
        if status in TERMINAL_STATES:
            raise InvalidTransition(status.value, RentalAction.CANCEL.value)
        if find_inspection(booking, PICKUP) is not None:
            raise PolicyViolation(
                "Cancellation is not allowed once the pickup inspection is documented; use the return flow.",
                code="cancellation_after_pickup",
                bookingID=booking.BookingID,
                currentStatus=status.value,
            )

        apply_transition(booking, RentalAction.CANCEL, now)
        booking.CancellationReason = (reason or "").strip() or None
        refunded = refund_funds(booking, booking.Payment, gateway, now)
        events.append(
            events_mod.emit_event(
                db,
                booking,
                events_mod.BOOKING_CANCELLED,
                actor.actor_id,
                now,
                {"reason": booking.CancellationReason, "refundAmount": str(refunded), "cancelledBy": actor.role},
            )
        )
        return booking

    run_booking_transition(db, booking_id, RentalAction.CANCEL, _work)
    return load_booking(db, booking_id)


def sweep_expired_claim_windows(db: Session, gateway: PaymentGateway, now: datetime | None = None) -> dict:
    now = now or utc_now()
    booking_ids = db.execute(
        select(BookingRequest.BookingID)
        .where(BookingRequest.Status == BookingStatus.PENDING_OWNER_REVIEW.value)
        .order_by(BookingRequest.BookingID)
    ).scalars().all()

    completed: list[int] = []
    failed: list[int] = []
    for booking_id in booking_ids:
        try:
            if settle_if_expired(db, booking_id, gateway, now):
                completed.append(booking_id)
        except (UpstreamFailure, InvalidTransition) as exc:
            SWEEP_LOGGER.warning("Claim-window sweep skipped booking %s: %s", booking_id, exc)
            failed.append(booking_id)

    if completed or failed:
        SWEEP_LOGGER.info("Claim-window sweep completed=%s failed=%s", completed, failed)
    return {"checked": len(booking_ids), "completed": completed, "failed": failed}


def serialize_claim(claim: DamageClaim | None) -> dict | None:
    if claim is None:
        return None

    def _json_list(raw: str | None) -> list:
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
        except (ValueError, json.JSONDecodeError):
            return []
        return parsed if isinstance(parsed, list) else []

    return {
        "claimID": claim.ClaimID,
        "bookingID": claim.BookingID,
        "filedBy": claim.FiledBy,
        "damageDescription": claim.DamageDescription,
        "estimatedCost": float(claim.EstimatedCost) if claim.EstimatedCost is not None else None,
        "evidencePhotos": _json_list(claim.EvidencePhotos),
        "repairQuotes": _json_list(claim.RepairQuotes),
        "degradedItems": _json_list(claim.DegradedItems),
        "status": claim.Status,
        "agreedCost": float(claim.AgreedCost) if claim.AgreedCost is not None else None,
        "resolutionNotes": claim.ResolutionNotes,
        "filedAt": claim.FiledAt,
        "resolvedAt": claim.ResolvedAt,
    }


def serialize_claim_window(booking: BookingRequest, now: datetime) -> dict | None:
    deadline = booking_claim_deadline(booking)
    if deadline is None:
        return None
    return {
        "deadline": deadline,
        "hours": claim_window_hours(booking.Equipment),
        "open": normalize_status(booking.Status) == BookingStatus.PENDING_OWNER_REVIEW and now < deadline,
    }


def serialize_booking(booking: BookingRequest, now: datetime | None = None) -> dict:
    now = now or utc_now()
    status = normalize_status(booking.Status)
    return {
        "bookingID": booking.BookingID,
        "equipmentID": booking.EquipmentID,
        "equipmentTitle": booking.Equipment.Title if booking.Equipment else None,
        "renterID": booking.RenterID,
        "ownerID": booking.OwnerID,
        "startDate": booking.StartDate,
        "endDate": booking.EndDate,
        "days": rental_days(booking.StartDate, booking.EndDate),
        "status": status.value,
        "holdsDates": status in RANGE_HOLDING_STATES,
        "allowedActions": allowed_actions(status, find_inspection(booking, PICKUP) is not None),
        "insuranceType": booking.InsuranceType,
        "totalAmount": float(booking.TotalAmount) if booking.TotalAmount is not None else None,
        "cancellationReason": booking.CancellationReason,
        "createdAt": booking.CreatedAt,
        "activatedAt": booking.ActivatedAt,
        "completedAt": booking.CompletedAt,
        "updatedAt": booking.UpdatedAt,
        "version": booking.Version,
        "escrowHeld": is_captured(booking.Payment),
        "payment": serialize_payment(booking.Payment),
        "inspections": [serialize_inspection(inspection) for inspection in booking.Inspections],
        "claim": serialize_claim(booking.Claim),
        "claimWindow": serialize_claim_window(booking, now),
    }
