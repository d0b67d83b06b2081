from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from rental_escrow import settings
from rental_escrow.models.rental_models import BookingRequest
from rental_escrow.services.state_machine import RANGE_HOLDING_STATES


@dataclass
class ConflictReason:
    type: str
    message: str
    conflicting_booking_ids: list[int] = field(default_factory=list)
    conflicting_dates: list[date] = field(default_factory=list)

    def to_dict(self) -> dict:
        payload = {"type": self.type, "message": self.message}
        if self.type == "overlap":
            payload["conflictingBookingIDs"] = list(self.conflicting_booking_ids)
            payload["conflictingDates"] = [value.isoformat() for value in self.conflicting_dates]
        return payload


@dataclass
class AvailabilityResult:
    available: bool
    conflicts: list[ConflictReason] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "available": self.available,
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
        }


def rental_days(start_date: date, end_date: date) -> int:
    # Calendar dates carry no time part, so the ceiling is the day delta.
    return (end_date - start_date).days


def ranges_overlap(start_a: date, end_a: date, start_b: date, end_b: date) -> bool:
    return start_a < end_b and start_b < end_a


def find_overlapping_bookings(
    db: Session,
    equipment_id: int,
    start_date: date,
    end_date: date,
    exclude_booking_id: int | None = None,
) -> list[BookingRequest]:
    stmt = (
        select(BookingRequest)
        .where(BookingRequest.EquipmentID == equipment_id)
        .where(BookingRequest.Status.in_([state.value for state in RANGE_HOLDING_STATES]))
        .where(BookingRequest.StartDate < end_date)
        .where(BookingRequest.EndDate > start_date)
        .order_by(BookingRequest.StartDate)
    )
    if exclude_booking_id is not None:
        stmt = stmt.where(BookingRequest.BookingID != exclude_booking_id)
    rows = db.execute(stmt).scalars().all()
    return [row for row in rows if ranges_overlap(start_date, end_date, row.StartDate, row.EndDate)]


def check_availability(
    db: Session,
    equipment_id: int,
    start_date: date,
    end_date: date,
    exclude_booking_id: int | None = None,
) -> AvailabilityResult:
    conflicts: list[ConflictReason] = []

    days = rental_days(start_date, end_date)
    if days < settings.MIN_RENTAL_DAYS:
        conflicts.append(
            ConflictReason(
                type="minimum_days",
                message=f"Minimum rental period is {settings.MIN_RENTAL_DAYS} day{'s' if settings.MIN_RENTAL_DAYS != 1 else ''}",
            )
        )
    if days > settings.MAX_RENTAL_DAYS:
        conflicts.append(
            ConflictReason(
                type="maximum_days",
                message=f"Maximum rental period is {settings.MAX_RENTAL_DAYS} days",
            )
        )

    if days > 0:
        overlapping = find_overlapping_bookings(db, equipment_id, start_date, end_date, exclude_booking_id)
        if overlapping:
            conflicts.append(
                ConflictReason(
                    type="overlap",
                    message="Selected dates overlap with existing bookings",
                    conflicting_booking_ids=[booking.BookingID for booking in overlapping],
                    conflicting_dates=[booking.StartDate for booking in overlapping],
                )
            )

    return AvailabilityResult(available=not conflicts, conflicts=conflicts)
