import os
import tempfile
import threading
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy.exc import OperationalError

_DEFAULT_DB = os.path.join(tempfile.gettempdir(), "rental-escrow-tests.db")
os.environ.setdefault("RENTAL_ESCROW_DB_URL", f"sqlite+pysqlite:///{_DEFAULT_DB}")

from rental_escrow.db.base import Base  # noqa: E402
from rental_escrow.db.session import build_engine, build_session_factory  # noqa: E402
from rental_escrow.models.rental_models import Equipment, EquipmentRateOverride  # noqa: E402
from rental_escrow.schemas.claims import FileClaimRequest  # noqa: E402
from rental_escrow.schemas.inspections import ChecklistItemDto, SubmitInspectionRequest  # noqa: E402
from rental_escrow.services.payment_gateway import PaymentResult  # noqa: E402
from rental_escrow.services.rental_service import (  # noqa: E402
    ROLE_OWNER,
    ROLE_RENTER,
    ROLE_SUPPORT,
    Actor,
    approve_booking,
    create_booking,
    initiate_return,
    submit_inspection,
)


def fail_next_commit(db):
    """Make the next commit on ``db`` fail as if the database dropped out."""
    original = db.commit

    def _commit():
        db.commit = original
        raise OperationalError("COMMIT", {}, Exception("database is locked"))

    db.commit = _commit


OWNER = Actor(actor_id=10, role=ROLE_OWNER)
RENTER = Actor(actor_id=20, role=ROLE_RENTER)
OTHER_RENTER = Actor(actor_id=21, role=ROLE_RENTER)
SUPPORT = Actor(actor_id=99, role=ROLE_SUPPORT)

# Booking dates in tests sit after this instant.
BOOKED_AT = datetime(2024, 5, 1, 9, 0, 0)


class TempDatabase:
    """A throwaway SQLite file with the full schema."""

    def __init__(self):
        handle, self.path = tempfile.mkstemp(prefix="rental-escrow-", suffix=".db")
        os.close(handle)
        self.engine = build_engine(f"sqlite+pysqlite:///{self.path}")
        Base.metadata.create_all(self.engine)
        self.Session = build_session_factory(self.engine)

    def close(self):
        self.engine.dispose()
        try:
            os.remove(self.path)
        except OSError:
            pass


class FakePaymentGateway:
    def __init__(self):
        self.captures = []
        self.refunds = []
        self.fail_capture = False
        self.fail_refund = False
        self.replayed_refunds = []
        self._refunds_by_key = {}
        self._lock = threading.Lock()

    def capture(self, amount, reference):
        with self._lock:
            if self.fail_capture:
                return PaymentResult(status="declined", message="card declined")
            provider_ref = f"cap-{len(self.captures) + 1}"
            self.captures.append({"amount": Decimal(amount), "reference": reference, "providerRef": provider_ref})
            return PaymentResult(status="succeeded", reference=provider_ref)

    def refund(self, payment_ref, amount, idempotency_key=None):
        with self._lock:
            if self.fail_refund:
                return PaymentResult(status="failed", message="refund rejected")
            if idempotency_key is not None and idempotency_key in self._refunds_by_key:
                self.replayed_refunds.append(idempotency_key)
                return self._refunds_by_key[idempotency_key]
            self.refunds.append({"paymentRef": payment_ref, "amount": Decimal(amount), "idempotencyKey": idempotency_key})
            result = PaymentResult(status="succeeded", reference=f"ref-{len(self.refunds)}")
            if idempotency_key is not None:
                self._refunds_by_key[idempotency_key] = result
            return result

    @property
    def refunded_total(self):
        return sum((entry["amount"] for entry in self.refunds), Decimal("0"))


def make_equipment(
    db,
    owner_id=OWNER.actor_id,
    daily_rate="25.00",
    deposit_amount="100.00",
    deposit_percentage=None,
    claim_window_hours=48,
    title="Cordless Drill",
    custom_rates=None,
):
    equipment = Equipment(
        OwnerID=owner_id,
        Title=title,
        DailyRate=Decimal(daily_rate),
        DamageDepositAmount=Decimal(deposit_amount) if deposit_amount is not None else None,
        DamageDepositPercentage=Decimal(deposit_percentage) if deposit_percentage is not None else None,
        DepositRefundTimelineHours=claim_window_hours,
        CreatedAt=BOOKED_AT,
        UpdatedAt=BOOKED_AT,
    )
    for rate_date, rate in (custom_rates or {}).items():
        equipment.RateOverrides.append(EquipmentRateOverride(RateDate=rate_date, CustomRate=Decimal(rate)))
    db.add(equipment)
    db.commit()
    return equipment


def evidence(inspection_type, items=None, photos=3, confirmed=True):
    items = items if items is not None else {"tire": "good", "frame": "good"}
    return SubmitInspectionRequest(
        inspectionType=inspection_type,
        photos=[f"photos/{inspection_type}-{index}.jpg" for index in range(photos)],
        checklistItems=[ChecklistItemDto(itemName=name, status=status) for name, status in items.items()],
        conditionNotes=f"{inspection_type} walkthrough",
        confirmed=confirmed,
    )


def claim_payload(estimated_cost=40.0, description="Cracked housing"):
    return FileClaimRequest(
        damageDescription=description,
        estimatedCost=estimated_cost,
        evidencePhotos=["photos/damage-1.jpg"],
        repairQuotes=["quotes/repair-shop.pdf"],
    )


def book(db, equipment, start=date(2024, 6, 1), end=date(2024, 6, 4), renter=RENTER, insurance="none"):
    return create_booking(db, renter, equipment.EquipmentID, start, end, insurance, now=BOOKED_AT)


def book_and_approve(db, gateway, equipment, **kwargs):
    booking = book(db, equipment, **kwargs)
    return approve_booking(db, OWNER, booking.BookingID, gateway, now=BOOKED_AT)


def advance_to_owner_review(db, gateway, equipment, returned_at, return_items=None, **kwargs):
    """Drive a booking through approval, pickup and return."""
    booking = book_and_approve(db, gateway, equipment, **kwargs)
    picked_up = datetime.combine(booking.StartDate, datetime.min.time()).replace(hour=8)
    submit_inspection(db, RENTER, booking.BookingID, evidence("pickup"), now=picked_up)
    initiate_return(db, RENTER, booking.BookingID, now=returned_at)
    booking, _ = submit_inspection(db, RENTER, booking.BookingID, evidence("return", return_items), now=returned_at)
    return booking
