from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping

from rental_escrow import settings
from rental_escrow.models.rental_models import Equipment
from rental_escrow.services.availability_service import rental_days
from rental_escrow.services.errors import InputValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

INSURANCE_PERCENTAGES = {
    "none": Decimal("0"),
    "basic": Decimal("5"),
    "premium": Decimal("10"),
}


def to_money(value) -> Decimal:
    if value is None:
        return ZERO
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class BookingQuote:
    days: int
    daily_rate: Decimal
    subtotal: Decimal
    service_fee: Decimal
    insurance: Decimal
    deposit: Decimal
    total: Decimal

    def to_dict(self) -> dict:
        return {
            "days": self.days,
            "dailyRate": float(self.daily_rate),
            "subtotal": float(self.subtotal),
            "serviceFee": float(self.service_fee),
            "insurance": float(self.insurance),
            "deposit": float(self.deposit),
            "total": float(self.total),
        }


def compute_deposit(equipment: Equipment) -> Decimal:
    if equipment.DamageDepositAmount:
        return to_money(equipment.DamageDepositAmount)
    if equipment.DamageDepositPercentage:
        rate = Decimal(str(equipment.DailyRate or 0))
        return to_money(rate * Decimal(str(equipment.DamageDepositPercentage)) / Decimal("100"))
    return ZERO


def compute_insurance(subtotal: Decimal, insurance_type: str | None) -> Decimal:
    key = (insurance_type or "none").strip().lower()
    if key not in INSURANCE_PERCENTAGES:
        raise InputValidationError(f"Unknown insurance type: {insurance_type}", code="invalid_insurance_type")
    return to_money(subtotal * INSURANCE_PERCENTAGES[key] / Decimal("100"))


def compute_booking_total(
    daily_rate,
    start_date: date,
    end_date: date,
    insurance_type: str | None = "none",
    deposit=None,
    custom_rates: Mapping[date, Decimal] | None = None,
) -> BookingQuote:
    days = rental_days(start_date, end_date)
    if days < 1:
        raise InputValidationError("End date must be after start date", code="invalid_date_range")

    flat_rate = Decimal(str(daily_rate))
    subtotal = Decimal("0")
    for offset in range(days):
        day = start_date + timedelta(days=offset)
        override = (custom_rates or {}).get(day)
        subtotal += Decimal(str(override)) if override else flat_rate
    subtotal = to_money(subtotal)

    service_fee = to_money(subtotal * settings.SERVICE_FEE_RATE)
    insurance = compute_insurance(subtotal, insurance_type)
    deposit_amount = to_money(deposit)
    total = to_money(subtotal + service_fee + insurance + deposit_amount)
    return BookingQuote(
        days=days,
        daily_rate=to_money(flat_rate),
        subtotal=subtotal,
        service_fee=service_fee,
        insurance=insurance,
        deposit=deposit_amount,
        total=total,
    )


def quote_for_equipment(equipment: Equipment, start_date: date, end_date: date, insurance_type: str | None) -> BookingQuote:
    custom_rates = {
        override.RateDate: override.CustomRate
        for override in equipment.RateOverrides
        if start_date <= override.RateDate < end_date
    }
    return compute_booking_total(
        equipment.DailyRate,
        start_date,
        end_date,
        insurance_type,
        compute_deposit(equipment),
        custom_rates,
    )
