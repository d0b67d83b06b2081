from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from rental_escrow import settings
from rental_escrow.models.rental_models import BookingRequest, EscrowPayment
from rental_escrow.services.errors import PolicyViolation, UpstreamFailure
from rental_escrow.services.payment_gateway import PaymentGateway
from rental_escrow.services.pricing_service import ZERO, BookingQuote, to_money
from rental_escrow.services.state_machine import BookingStatus, normalize_status

ESCROW_LOGGER = logging.getLogger("rental_escrow.escrow")

PAYMENT_PENDING = "pending"
PAYMENT_SUCCEEDED = "succeeded"
PAYMENT_REFUNDED = "refunded"
PAYMENT_PARTIALLY_REFUNDED = "partially_refunded"

ESCROW_HELD = "held"
ESCROW_RELEASED_TO_OWNER = "released_to_owner"
ESCROW_REFUNDED_TO_RENTER = "refunded_to_renter"
ESCROW_SPLIT = "split"

_RELEASABLE_BOOKING_STATES = {BookingStatus.COMPLETED, BookingStatus.CANCELLED}


@dataclass(frozen=True)
class ReleaseBreakdown:
    owner_payout: Decimal
    deposit_returned: Decimal
    claim_deduction: Decimal
    platform_retained: Decimal

    def to_dict(self) -> dict:
        return {
            "ownerPayout": float(self.owner_payout),
            "depositReturned": float(self.deposit_returned),
            "claimDeduction": float(self.claim_deduction),
            "platformRetained": float(self.platform_retained),
        }


def build_payment_record(booking: BookingRequest, quote: BookingQuote) -> EscrowPayment:
    return EscrowPayment(
        Booking=booking,
        TotalAmount=quote.total,
        Subtotal=quote.subtotal,
        ServiceFee=quote.service_fee,
        InsuranceAmount=quote.insurance,
        DepositAmount=quote.deposit,
        PaymentStatus=PAYMENT_PENDING,
        EscrowStatus=None,
    )


def reprice_payment_record(payment: EscrowPayment, quote: BookingQuote) -> None:
    if payment.PaymentStatus != PAYMENT_PENDING:
        raise PolicyViolation("Captured payments cannot be repriced.", code="payment_already_captured", bookingID=payment.BookingID)
    payment.TotalAmount = quote.total
    payment.Subtotal = quote.subtotal
    payment.ServiceFee = quote.service_fee
    payment.InsuranceAmount = quote.insurance
    payment.DepositAmount = quote.deposit


def is_captured(payment: EscrowPayment | None) -> bool:
    return payment is not None and payment.PaymentStatus == PAYMENT_SUCCEEDED and payment.EscrowStatus == ESCROW_HELD


def refund_key(booking_id: int, purpose: str) -> str:
    """Idempotency key for a refund.

    Each booking refunds at most once per purpose, so a transition retried
    after a failed commit sends the same key and the provider does not pay
    the renter a second time.
    """
    return f"booking-{booking_id}-{purpose}"


def hold_funds(payment: EscrowPayment, gateway: PaymentGateway, now: datetime) -> None:
    if is_captured(payment):
        return
    if payment.PaymentStatus != PAYMENT_PENDING:
        raise PolicyViolation(
            f"Payment is {payment.PaymentStatus} and cannot be captured.",
            code="payment_not_capturable",
            bookingID=payment.BookingID,
        )

    amount = to_money(payment.TotalAmount)
    result = gateway.capture(amount, f"booking-{payment.BookingID}")
    if not result.succeeded:
        ESCROW_LOGGER.warning("Capture failed for booking %s: %s", payment.BookingID, result.message or result.status)
        raise UpstreamFailure(
            "Payment capture failed.",
            code="payment_capture_failed",
            bookingID=payment.BookingID,
            providerStatus=result.status,
        )

    payment.PaymentStatus = PAYMENT_SUCCEEDED
    payment.EscrowStatus = ESCROW_HELD
    payment.PaymentReference = result.reference
    payment.CapturedAt = now
    ESCROW_LOGGER.info("Captured %s into escrow for booking %s", amount, payment.BookingID)


def compute_release(payment: EscrowPayment, claim_deduction=None, owner_fee_share=None) -> ReleaseBreakdown:
    """Split captured funds between owner, renter and platform.

    The deduction is capped at the deposit, so ``deposit_returned +
    claim_deduction`` always equals the deposit and the three shares always
    add up to the captured total.
    """
    share = Decimal(str(settings.OWNER_SERVICE_FEE_SHARE if owner_fee_share is None else owner_fee_share))
    deposit = to_money(payment.DepositAmount)
    requested = to_money(claim_deduction)
    if requested < ZERO:
        requested = ZERO

    deposit_returned = max(deposit - requested, ZERO)
    deduction = deposit - deposit_returned

    service_fee = to_money(payment.ServiceFee)
    owner_fee = to_money(service_fee * share)
    owner_payout = to_money(payment.Subtotal) + owner_fee + deduction
    platform_retained = to_money(payment.TotalAmount) - owner_payout - deposit_returned
    return ReleaseBreakdown(
        owner_payout=to_money(owner_payout),
        deposit_returned=to_money(deposit_returned),
        claim_deduction=to_money(deduction),
        platform_retained=to_money(platform_retained),
    )


def _require_releasable(booking: BookingRequest) -> None:
    if normalize_status(booking.Status) not in _RELEASABLE_BOOKING_STATES:
        raise PolicyViolation(
            f"Escrow cannot leave held while booking is {booking.Status}.",
            code="escrow_locked",
            bookingID=booking.BookingID,
        )


def release_funds(
    booking: BookingRequest,
    payment: EscrowPayment,
    gateway: PaymentGateway,
    now: datetime,
    claim_deduction=None,
) -> ReleaseBreakdown:
    _require_releasable(booking)
    if payment.EscrowStatus != ESCROW_HELD:
        raise PolicyViolation(
            f"Escrow is {payment.EscrowStatus or 'not funded'} and cannot be released.",
            code="escrow_not_held",
            bookingID=booking.BookingID,
        )

    breakdown = compute_release(payment, claim_deduction)
    if breakdown.deposit_returned > ZERO:
        result = gateway.refund(payment.PaymentReference, breakdown.deposit_returned, refund_key(booking.BookingID, "deposit-release"))
        if not result.succeeded:
            raise UpstreamFailure(
                "Deposit refund failed.",
                code="deposit_refund_failed",
                bookingID=booking.BookingID,
                providerStatus=result.status,
            )
        payment.PaymentStatus = PAYMENT_PARTIALLY_REFUNDED

    payment.OwnerPayout = breakdown.owner_payout
    payment.DepositReturned = breakdown.deposit_returned
    payment.ClaimDeduction = breakdown.claim_deduction
    payment.RefundAmount = breakdown.deposit_returned
    payment.PlatformRetained = breakdown.platform_retained
    payment.EscrowStatus = ESCROW_SPLIT if breakdown.claim_deduction > ZERO else ESCROW_RELEASED_TO_OWNER
    payment.ReleasedAt = now
    ESCROW_LOGGER.info(
        "Released escrow for booking %s: owner=%s renter=%s deduction=%s",
        booking.BookingID,
        breakdown.owner_payout,
        breakdown.deposit_returned,
        breakdown.claim_deduction,
    )
    return breakdown


def refund_funds(booking: BookingRequest, payment: EscrowPayment | None, gateway: PaymentGateway, now: datetime) -> Decimal:
    _require_releasable(booking)
    if not is_captured(payment):
        # Nothing was captured yet, so there is nothing to give back.
        return ZERO

    amount = to_money(payment.TotalAmount)
    result = gateway.refund(payment.PaymentReference, amount, refund_key(booking.BookingID, "cancel-refund"))
    if not result.succeeded:
        raise UpstreamFailure(
            "Refund failed.",
            code="refund_failed",
            bookingID=booking.BookingID,
            providerStatus=result.status,
        )

    payment.PaymentStatus = PAYMENT_REFUNDED
    payment.EscrowStatus = ESCROW_REFUNDED_TO_RENTER
    payment.RefundAmount = amount
    payment.DepositReturned = to_money(payment.DepositAmount)
    payment.OwnerPayout = ZERO
    payment.ClaimDeduction = ZERO
    payment.PlatformRetained = ZERO
    payment.ReleasedAt = now
    ESCROW_LOGGER.info("Refunded %s to renter for booking %s", amount, booking.BookingID)
    return amount


def serialize_payment(payment: EscrowPayment | None) -> dict | None:
    if payment is None:
        return None

    def _money(value):
        return float(value) if value is not None else None

    return {
        "paymentID": payment.PaymentID,
        "bookingID": payment.BookingID,
        "totalAmount": _money(payment.TotalAmount),
        "subtotal": _money(payment.Subtotal),
        "serviceFee": _money(payment.ServiceFee),
        "insuranceAmount": _money(payment.InsuranceAmount),
        "depositAmount": _money(payment.DepositAmount),
        "paymentStatus": payment.PaymentStatus,
        "escrowStatus": payment.EscrowStatus,
        "ownerPayout": _money(payment.OwnerPayout),
        "depositReturned": _money(payment.DepositReturned),
        "claimDeduction": _money(payment.ClaimDeduction),
        "refundAmount": _money(payment.RefundAmount),
        "platformRetained": _money(payment.PlatformRetained),
        "capturedAt": payment.CapturedAt,
        "releasedAt": payment.ReleasedAt,
    }
