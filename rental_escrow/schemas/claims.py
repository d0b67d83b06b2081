from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict


class FileClaimRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    damageDescription: str
    estimatedCost: float
    evidencePhotos: List[str] = []
    repairQuotes: List[str] = []


class ClaimResponseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    decision: Literal["accept", "dispute"]
    notes: Optional[str] = None


class ClaimResolutionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    outcome: Literal["resolved", "rejected"]
    agreedCost: Optional[float] = None
    notes: Optional[str] = None
