import logging
from datetime import date

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from rental_escrow import settings
from rental_escrow.db.deps import get_rental_db
from rental_escrow.models.rental_models import Equipment
from rental_escrow.schemas.bookings import CancelRequest, CreateBookingDto, RescheduleRequest
from rental_escrow.schemas.claims import ClaimResolutionRequest, ClaimResponseRequest, FileClaimRequest
from rental_escrow.schemas.inspections import SubmitInspectionRequest
from rental_escrow.services.availability_service import check_availability
from rental_escrow.services.claim_service import file_claim, resolve_claim, respond_to_claim
from rental_escrow.services.errors import NotFoundError, RentalError
from rental_escrow.services.escrow_service import compute_release, is_captured, serialize_payment
from rental_escrow.services.event_service import list_pending_notifications, mark_notification_sent
from rental_escrow.services.inspection_service import compare_booking_inspections, serialize_inspection
from rental_escrow.services.payment_gateway import PaymentGateway, get_payment_gateway
from rental_escrow.services.pricing_service import quote_for_equipment
from rental_escrow.services.rental_service import (
    ROLE_OWNER,
    ROLE_RENTER,
    ROLE_SUPPORT,
    ROLES,
    Actor,
    approve_booking,
    cancel_booking,
    confirm_return,
    create_booking,
    get_booking,
    initiate_return,
    list_bookings,
    load_booking,
    require_party,
    reschedule_booking,
    serialize_booking,
    serialize_claim,
    serialize_claim_window,
    submit_inspection,
    sweep_expired_claim_windows,
    utc_now,
)
from rental_escrow.services.state_machine import BookingStatus, normalize_status

API_LOGGER = logging.getLogger("rental_escrow.api")

app = FastAPI(title="Rental Escrow")

_CORS_ALLOW_CREDENTIALS = settings.CORS_ALLOW_CREDENTIALS
if "*" in settings.CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RentalError)
async def _handle_rental_error(request: Request, exc: RentalError):
    if exc.status_code >= 500:
        API_LOGGER.warning("%s on %s: %s", exc.kind, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(OperationalError)
async def _handle_storage_error(request: Request, exc: OperationalError):
    API_LOGGER.error("Storage unavailable on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={
            "kind": "UpstreamFailure",
            "code": "storage_unavailable",
            "message": "Storage is unavailable.",
            "details": {},
        },
    )


def _require_actor(x_actor_id: str | None, x_actor_role: str | None) -> Actor:
    raw_id = str(x_actor_id or "").strip()
    if not raw_id.isdigit() or int(raw_id) <= 0:
        raise HTTPException(status_code=401, detail="Missing or invalid actor identity.")
    role = str(x_actor_role or "").strip().lower()
    if role not in ROLES:
        raise HTTPException(status_code=401, detail="Missing or invalid actor role.")
    return Actor(actor_id=int(raw_id), role=role)


def get_actor(
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
) -> Actor:
    return _require_actor(x_actor_id, x_actor_role)


def _require_support(actor: Actor) -> None:
    if actor.role != ROLE_SUPPORT:
        raise HTTPException(status_code=403, detail="Support role required.")


def _viewable_booking(db: Session, booking_id: int, actor: Actor, gateway: PaymentGateway):
    # Authorize before the read can settle an expired claim window.
    require_party(load_booking(db, booking_id), actor, ROLE_RENTER, ROLE_OWNER, ROLE_SUPPORT)
    return get_booking(db, booking_id, gateway)


def _get_equipment_or_404(db: Session, equipment_id: int) -> Equipment:
    equipment = db.get(Equipment, equipment_id)
    if not equipment:
        raise NotFoundError("Equipment not found", equipmentID=equipment_id)
    return equipment


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_rental_db)):
    try:
        db.execute(text("SELECT 1"))
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc
    return {"status": "ok", "db": "ok"}


@app.get("/api/equipment/{equipment_id}/availability")
def get_equipment_availability(
    equipment_id: int,
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    exclude_booking_id: int | None = Query(None, alias="excludeBookingID"),
    db: Session = Depends(get_rental_db),
):
    _get_equipment_or_404(db, equipment_id)
    result = check_availability(db, equipment_id, start_date, end_date, exclude_booking_id)
    return {
        "equipmentID": equipment_id,
        "startDate": start_date,
        "endDate": end_date,
        **result.to_dict(),
    }


@app.get("/api/equipment/{equipment_id}/quote")
def get_equipment_quote(
    equipment_id: int,
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    insurance_type: str = Query("none", alias="insuranceType"),
    db: Session = Depends(get_rental_db),
):
    equipment = _get_equipment_or_404(db, equipment_id)
    quote = quote_for_equipment(equipment, start_date, end_date, insurance_type)
    return {"equipmentID": equipment_id, "insuranceType": insurance_type, **quote.to_dict()}


@app.post("/api/bookings")
def create_booking_request(
    payload: CreateBookingDto,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
):
    booking = create_booking(db, actor, payload.equipmentID, payload.startDate, payload.endDate, payload.insuranceType)
    return serialize_booking(booking)


@app.get("/api/bookings")
def get_bookings(
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    now = utc_now()
    return [serialize_booking(booking, now) for booking in list_bookings(db, actor, gateway, now)]


@app.get("/api/bookings/{booking_id}")
def get_booking_request(
    booking_id: int,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    return serialize_booking(_viewable_booking(db, booking_id, actor, gateway))


@app.put("/api/bookings/{booking_id}/dates")
def reschedule_booking_request(
    booking_id: int,
    payload: RescheduleRequest,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
):
    booking = reschedule_booking(db, actor, booking_id, payload.startDate, payload.endDate)
    return serialize_booking(booking)


@app.post("/api/bookings/{booking_id}/approve")
def approve_booking_request(
    booking_id: int,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    booking = approve_booking(db, actor, booking_id, gateway)
    return serialize_booking(booking)


@app.post("/api/bookings/{booking_id}/inspections")
def submit_booking_inspection(
    booking_id: int,
    payload: SubmitInspectionRequest,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
):
    booking, inspection = submit_inspection(db, actor, booking_id, payload)
    return {
        "inspection": serialize_inspection(inspection),
        "booking": serialize_booking(booking),
    }


@app.get("/api/bookings/{booking_id}/inspections")
def get_booking_inspections(
    booking_id: int,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    booking = _viewable_booking(db, booking_id, actor, gateway)
    return [serialize_inspection(inspection) for inspection in booking.Inspections]


@app.get("/api/bookings/{booking_id}/inspections/comparison")
def get_inspection_comparison(
    booking_id: int,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    booking = _viewable_booking(db, booking_id, actor, gateway)
    report = compare_booking_inspections(booking)
    if report is None:
        raise HTTPException(status_code=404, detail="Both pickup and return inspections are required for comparison.")
    return {"bookingID": booking_id, **report.to_dict()}


@app.post("/api/bookings/{booking_id}/return")
def initiate_booking_return(
    booking_id: int,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
):
    return serialize_booking(initiate_return(db, actor, booking_id))


@app.post("/api/bookings/{booking_id}/confirm-return")
def confirm_booking_return(
    booking_id: int,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    return serialize_booking(confirm_return(db, actor, booking_id, gateway))


@app.post("/api/bookings/{booking_id}/cancel")
def cancel_booking_request(
    booking_id: int,
    payload: CancelRequest | None = None,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    reason = payload.reason if payload else None
    return serialize_booking(cancel_booking(db, actor, booking_id, gateway, reason))


@app.post("/api/bookings/{booking_id}/claims")
def file_booking_claim(
    booking_id: int,
    payload: FileClaimRequest,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    return serialize_booking(file_claim(db, actor, booking_id, payload, gateway))


@app.get("/api/bookings/{booking_id}/claim")
def get_booking_claim(
    booking_id: int,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    booking = _viewable_booking(db, booking_id, actor, gateway)
    if booking.Claim is None:
        raise HTTPException(status_code=404, detail="No damage claim filed for this booking.")
    return serialize_claim(booking.Claim)


@app.post("/api/bookings/{booking_id}/claim/respond")
def respond_booking_claim(
    booking_id: int,
    payload: ClaimResponseRequest,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    booking = respond_to_claim(db, actor, booking_id, payload.decision, gateway, payload.notes)
    return serialize_booking(booking)


@app.post("/api/bookings/{booking_id}/claim/resolve")
def resolve_booking_claim(
    booking_id: int,
    payload: ClaimResolutionRequest,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    booking = resolve_claim(db, actor, booking_id, payload.outcome, gateway, payload.agreedCost, payload.notes)
    return serialize_booking(booking)


@app.get("/api/bookings/{booking_id}/escrow")
def get_booking_escrow(
    booking_id: int,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    now = utc_now()
    booking = _viewable_booking(db, booking_id, actor, gateway)
    payment = booking.Payment
    projected = None
    if is_captured(payment) and normalize_status(booking.Status) not in {BookingStatus.COMPLETED, BookingStatus.CANCELLED}:
        pending_deduction = booking.Claim.EstimatedCost if booking.Claim is not None else None
        projected = compute_release(payment, pending_deduction).to_dict()
    return {
        "bookingID": booking.BookingID,
        "status": booking.Status,
        "payment": serialize_payment(payment),
        "projectedRelease": projected,
        "claimWindow": serialize_claim_window(booking, now),
    }


@app.post("/api/claim-windows/sweep")
def sweep_claim_windows(
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    _require_support(actor)
    return sweep_expired_claim_windows(db, gateway)


@app.get("/api/notifications/pending")
def get_pending_notifications(
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
):
    _require_support(actor)
    return list_pending_notifications(db)


@app.post("/api/notifications/{notification_id}/sent")
def mark_notification_delivered(
    notification_id: int,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
):
    _require_support(actor)
    notification = mark_notification_sent(db, notification_id, utc_now())
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notification
