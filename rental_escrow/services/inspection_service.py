from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from rental_escrow import settings
from rental_escrow.models.rental_models import BookingRequest, Equipment, Inspection, InspectionChecklistItem
from rental_escrow.services.errors import InputValidationError

PICKUP = "pickup"
RETURN = "return"

MIN_PHOTOS = 3
MIN_CHECKLIST_ITEMS = 1

CONDITION_SCALE = {
    "good": 3,
    "fair": 2,
    "damaged": 1,
}


@dataclass(frozen=True)
class DegradedItem:
    name: str
    from_status: str
    to_status: str

    def to_dict(self) -> dict:
        return {"name": self.name, "from": self.from_status, "to": self.to_status}


@dataclass
class ComparisonReport:
    degraded: bool
    items: list[DegradedItem] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"degraded": self.degraded, "items": [item.to_dict() for item in self.items]}


def _normalize_item_name(raw: str | None) -> str:
    return " ".join((raw or "").split()).lower()


def _normalize_condition(raw: str | None) -> str:
    return (raw or "").strip().lower()


def validate_evidence(evidence) -> None:
    """Reject an inspection submission that lacks the minimum evidence.

    Every problem is collected so the caller can fix the submission in one
    round trip.
    """
    problems: list[str] = []

    photos = [ref for ref in (evidence.photos or []) if ref and str(ref).strip()]
    if len(photos) < MIN_PHOTOS:
        problems.append(f"At least {MIN_PHOTOS} photos are required (got {len(photos)}).")

    items = evidence.checklistItems or []
    if len(items) < MIN_CHECKLIST_ITEMS:
        problems.append(f"At least {MIN_CHECKLIST_ITEMS} checklist item is required.")
    for index, item in enumerate(items):
        if not _normalize_item_name(item.itemName):
            problems.append(f"Checklist item {index + 1} has no name.")
        if _normalize_condition(item.status) not in CONDITION_SCALE:
            problems.append(f"Checklist item {index + 1} has invalid status '{item.status}'.")

    if not evidence.confirmed:
        problems.append("The condition confirmation must be checked.")

    if problems:
        raise InputValidationError("Inspection evidence is incomplete.", code="insufficient_evidence", problems=problems)


def build_inspection(booking: BookingRequest, evidence, submitted_by: int, now: datetime) -> Inspection:
    geolocation = getattr(evidence, "geolocation", None)
    inspection = Inspection(
        Booking=booking,
        InspectionType=evidence.inspectionType,
        Photos=json.dumps([str(ref).strip() for ref in evidence.photos if ref and str(ref).strip()]),
        ConditionNotes=evidence.conditionNotes,
        VerifiedByRenter=submitted_by == booking.RenterID,
        VerifiedByOwner=submitted_by == booking.OwnerID,
        Latitude=geolocation.latitude if geolocation else None,
        Longitude=geolocation.longitude if geolocation else None,
        SubmittedBy=submitted_by,
        Timestamp=now,
    )
    for item in evidence.checklistItems:
        inspection.ChecklistItems.append(
            InspectionChecklistItem(
                ItemName=" ".join(item.itemName.split()),
                Status=_normalize_condition(item.status),
                Notes=item.notes,
            )
        )
    return inspection


def find_inspection(booking: BookingRequest, inspection_type: str) -> Inspection | None:
    for inspection in booking.Inspections:
        if inspection.InspectionType == inspection_type:
            return inspection
    return None


def compare_inspections(pickup: Inspection, returned: Inspection) -> ComparisonReport:
    baseline: dict[str, InspectionChecklistItem] = {}
    for item in pickup.ChecklistItems:
        baseline.setdefault(_normalize_item_name(item.ItemName), item)

    degraded: list[DegradedItem] = []
    seen: set[str] = set()
    for item in returned.ChecklistItems:
        key = _normalize_item_name(item.ItemName)
        if key in seen:
            continue
        seen.add(key)
        before = baseline.get(key)
        if before is None:
            continue
        before_value = CONDITION_SCALE.get(_normalize_condition(before.Status))
        after_value = CONDITION_SCALE.get(_normalize_condition(item.Status))
        if before_value is None or after_value is None:
            continue
        if after_value < before_value:
            degraded.append(DegradedItem(name=before.ItemName, from_status=before.Status, to_status=item.Status))

    return ComparisonReport(degraded=bool(degraded), items=degraded)


def compare_booking_inspections(booking: BookingRequest) -> ComparisonReport | None:
    pickup = find_inspection(booking, PICKUP)
    returned = find_inspection(booking, RETURN)
    if pickup is None or returned is None:
        return None
    return compare_inspections(pickup, returned)


def claim_window_hours(equipment: Equipment | None) -> int:
    hours = equipment.DepositRefundTimelineHours if equipment is not None else None
    return int(hours) if hours else settings.DEFAULT_CLAIM_WINDOW_HOURS


def claim_deadline(return_inspection: Inspection, equipment: Equipment | None) -> datetime:
    return return_inspection.Timestamp + timedelta(hours=claim_window_hours(equipment))


def booking_claim_deadline(booking: BookingRequest) -> datetime | None:
    returned = find_inspection(booking, RETURN)
    if returned is None:
        return None
    return claim_deadline(returned, booking.Equipment)


def is_claim_window_open(booking: BookingRequest, now: datetime) -> bool:
    deadline = booking_claim_deadline(booking)
    return deadline is not None and now < deadline


def serialize_inspection(inspection: Inspection) -> dict:
    try:
        photos = json.loads(inspection.Photos or "[]")
    except (ValueError, json.JSONDecodeError):
        photos = []
    return {
        "inspectionID": inspection.InspectionID,
        "bookingID": inspection.BookingID,
        "inspectionType": inspection.InspectionType,
        "photos": photos if isinstance(photos, list) else [],
        "checklistItems": [
            {"itemName": item.ItemName, "status": item.Status, "notes": item.Notes}
            for item in inspection.ChecklistItems
        ],
        "conditionNotes": inspection.ConditionNotes,
        "verifiedByOwner": bool(inspection.VerifiedByOwner),
        "verifiedByRenter": bool(inspection.VerifiedByRenter),
        "geolocation": (
            {"latitude": inspection.Latitude, "longitude": inspection.Longitude}
            if inspection.Latitude is not None and inspection.Longitude is not None
            else None
        ),
        "submittedBy": inspection.SubmittedBy,
        "timestamp": inspection.Timestamp,
    }
