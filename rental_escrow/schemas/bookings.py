from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class CreateBookingDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    startDate: date
    endDate: date
    insuranceType: Literal["none", "basic", "premium"] = "none"


class RescheduleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    startDate: date
    endDate: date


class CancelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: Optional[str] = None
