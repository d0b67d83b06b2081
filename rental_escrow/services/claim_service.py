from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy.orm import Session

from rental_escrow.models.rental_models import BookingRequest, DamageClaim
from rental_escrow.services import event_service as events_mod
from rental_escrow.services.errors import InputValidationError, InvalidTransition, NotFoundError, PolicyViolation
from rental_escrow.services.escrow_service import release_funds
from rental_escrow.services.inspection_service import booking_claim_deadline, compare_booking_inspections, is_claim_window_open
from rental_escrow.services.payment_gateway import PaymentGateway
from rental_escrow.services.pricing_service import ZERO, to_money
from rental_escrow.services.rental_service import (
    ROLE_OWNER,
    ROLE_RENTER,
    ROLE_SUPPORT,
    Actor,
    load_booking,
    require_party,
    run_booking_transition,
    settle_expired_claim_window,
    utc_now,
)
from rental_escrow.services.state_machine import BookingStatus, RentalAction, apply_transition, next_status, normalize_status

CLAIMS_LOGGER = logging.getLogger("rental_escrow.claims")

CLAIM_PENDING = "pending"
CLAIM_DISPUTED = "disputed"
CLAIM_RESOLVED = "resolved"
CLAIM_REJECTED = "rejected"

CLAIM_TRANSITIONS = {
    CLAIM_PENDING: {CLAIM_DISPUTED, CLAIM_RESOLVED, CLAIM_REJECTED},
    # Only an external (support) decision moves a disputed claim on.
    CLAIM_DISPUTED: {CLAIM_RESOLVED, CLAIM_REJECTED},
    CLAIM_RESOLVED: set(),
    CLAIM_REJECTED: set(),
}

_WINDOW_CLOSED = object()


def _require_claim(booking: BookingRequest) -> DamageClaim:
    if booking.Claim is None:
        raise NotFoundError("No damage claim filed for this booking.", bookingID=booking.BookingID)
    return booking.Claim


def _move_claim(claim: DamageClaim, target: str) -> None:
    if target not in CLAIM_TRANSITIONS.get(claim.Status, set()):
        raise InvalidTransition(claim.Status, f"mark claim {target}", f"Claim is {claim.Status} and cannot become {target}.", claimID=claim.ClaimID)
    claim.Status = target


def file_claim(
    db: Session,
    actor: Actor,
    booking_id: int,
    payload,
    gateway: PaymentGateway,
    now: datetime | None = None,
) -> BookingRequest:
    now = now or utc_now()

    description = (payload.damageDescription or "").strip()
    if not description:
        raise InputValidationError("Damage description required", code="missing_description")
    if payload.estimatedCost is None or payload.estimatedCost < 0:
        raise InputValidationError("Estimated cost must be zero or more", code="invalid_estimated_cost")

    def _work(booking: BookingRequest, events: list[dict]):
        require_party(booking, actor, ROLE_OWNER)
        if booking.Claim is not None:
            raise PolicyViolation(
                "A damage claim was already filed for this booking.",
                code="claim_already_filed",
                bookingID=booking.BookingID,
                claimID=booking.Claim.ClaimID,
            )

        status = normalize_status(booking.Status)
        if status == BookingStatus.PENDING_OWNER_REVIEW and not is_claim_window_open(booking, now):
            settle_expired_claim_window(db, booking, gateway, now, events)
            return _WINDOW_CLOSED
        if status == BookingStatus.COMPLETED:
            deadline = booking_claim_deadline(booking)
            if deadline is not None and now >= deadline:
                return _WINDOW_CLOSED
        next_status(booking.Status, RentalAction.FILE_CLAIM)

        report = compare_booking_inspections(booking)
        claim = DamageClaim(
            Booking=booking,
            FiledBy=actor.actor_id,
            DamageDescription=description,
            EstimatedCost=to_money(payload.estimatedCost),
            EvidencePhotos=json.dumps([ref for ref in payload.evidencePhotos if ref]),
            RepairQuotes=json.dumps([ref for ref in payload.repairQuotes if ref]),
            DegradedItems=json.dumps(report.to_dict()["items"] if report else []),
            Status=CLAIM_PENDING,
            FiledAt=now,
        )
        db.add(claim)
        apply_transition(booking, RentalAction.FILE_CLAIM, now)
        events.append(
            events_mod.emit_event(
                db,
                booking,
                events_mod.CLAIM_FILED,
                actor.actor_id,
                now,
                {
                    "estimatedCost": str(claim.EstimatedCost),
                    "degraded": bool(report and report.degraded),
                },
            )
        )
        CLAIMS_LOGGER.info("Owner %s filed claim on booking %s for %s", actor.actor_id, booking.BookingID, claim.EstimatedCost)
        return booking

    result = run_booking_transition(db, booking_id, RentalAction.FILE_CLAIM, _work)
    if result is _WINDOW_CLOSED:
        raise PolicyViolation("Claim window expired. This return has been auto-accepted.", code="claim_window_closed", bookingID=booking_id)
    return load_booking(db, booking_id)


def _finalize_claim(
    db: Session,
    booking: BookingRequest,
    claim: DamageClaim,
    outcome: str,
    agreed_cost,
    notes: str | None,
    actor: Actor,
    gateway: PaymentGateway,
    now: datetime,
    events: list[dict],
) -> None:
    next_status(booking.Status, RentalAction.RESOLVE_CLAIM)
    _move_claim(claim, outcome)
    claim.AgreedCost = to_money(agreed_cost) if outcome == CLAIM_RESOLVED else ZERO
    claim.ResolutionNotes = (notes or "").strip() or None
    claim.ResolvedAt = now

    apply_transition(booking, RentalAction.RESOLVE_CLAIM, now)
    breakdown = release_funds(booking, booking.Payment, gateway, now, claim.AgreedCost)
    events.append(
        events_mod.emit_event(
            db,
            booking,
            events_mod.CLAIM_RESOLVED,
            actor.actor_id,
            now,
            {"outcome": outcome, "agreedCost": str(claim.AgreedCost), **breakdown.to_dict()},
        )
    )
    CLAIMS_LOGGER.info("Claim %s on booking %s closed as %s by %s %s", claim.ClaimID, booking.BookingID, outcome, actor.role, actor.actor_id)


def respond_to_claim(
    db: Session,
    actor: Actor,
    booking_id: int,
    decision: str,
    gateway: PaymentGateway,
    notes: str | None = None,
    now: datetime | None = None,
) -> BookingRequest:
    now = now or utc_now()
    if decision not in {"accept", "dispute"}:
        raise InputValidationError(f"Unknown claim decision: {decision}", code="invalid_claim_decision")

    def _work(booking: BookingRequest, events: list[dict]) -> BookingRequest:
        require_party(booking, actor, ROLE_RENTER)
        claim = _require_claim(booking)
        if claim.Status != CLAIM_PENDING:
            raise InvalidTransition(claim.Status, f"{decision} claim", f"Claim is {claim.Status}; the renter can only answer a pending claim.", claimID=claim.ClaimID)

        if decision == "accept":
            _finalize_claim(db, booking, claim, CLAIM_RESOLVED, claim.EstimatedCost, notes, actor, gateway, now, events)
            return booking

        _move_claim(claim, CLAIM_DISPUTED)
        claim.ResolutionNotes = (notes or "").strip() or None
        booking.UpdatedAt = now
        events.append(events_mod.emit_event(db, booking, events_mod.CLAIM_DISPUTED, actor.actor_id, now, {"claimID": claim.ClaimID}))
        CLAIMS_LOGGER.info("Renter %s disputed claim %s on booking %s; funds stay held", actor.actor_id, claim.ClaimID, booking.BookingID)
        return booking

    run_booking_transition(db, booking_id, RentalAction.RESOLVE_CLAIM, _work)
    return load_booking(db, booking_id)


def resolve_claim(
    db: Session,
    actor: Actor,
    booking_id: int,
    outcome: str,
    gateway: PaymentGateway,
    agreed_cost=None,
    notes: str | None = None,
    now: datetime | None = None,
) -> BookingRequest:
    now = now or utc_now()
    if outcome not in {CLAIM_RESOLVED, CLAIM_REJECTED}:
        raise InputValidationError(f"Unknown claim outcome: {outcome}", code="invalid_claim_outcome")
    if outcome == CLAIM_RESOLVED and (agreed_cost is None or agreed_cost < 0):
        raise InputValidationError("An agreed cost is required to resolve a claim", code="missing_agreed_cost")

    def _work(booking: BookingRequest, events: list[dict]) -> BookingRequest:
        require_party(booking, actor, ROLE_SUPPORT, ROLE_OWNER)
        claim = _require_claim(booking)
        if actor.role == ROLE_OWNER and (outcome != CLAIM_REJECTED or claim.Status != CLAIM_PENDING):
            raise PolicyViolation(
                "Owners can only withdraw their own pending claim.",
                code="owner_may_only_withdraw",
                bookingID=booking.BookingID,
                claimID=claim.ClaimID,
            )
        _finalize_claim(db, booking, claim, outcome, agreed_cost, notes, actor, gateway, now, events)
        return booking

    run_booking_transition(db, booking_id, RentalAction.RESOLVE_CLAIM, _work)
    return load_booking(db, booking_id)
