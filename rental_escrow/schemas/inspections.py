from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict


class ChecklistItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemName: str
    status: str
    notes: Optional[str] = None


class GeolocationDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    latitude: float
    longitude: float


class SubmitInspectionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    inspectionType: Literal["pickup", "return"]
    photos: List[str] = []
    checklistItems: List[ChecklistItemDto] = []
    conditionNotes: Optional[str] = None
    confirmed: bool = False
    geolocation: Optional[GeolocationDto] = None
