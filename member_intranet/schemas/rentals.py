from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class CreateRentalRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemID: int
    quantity: int = 1
    startDate: date
    endDate: date
    purpose: str


class AvailabilityQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    quantity: int = 1
    startDate: date
    endDate: date


class DecisionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    decision: Literal["approve", "reject"]
    reason: Optional[str] = None


class RejectRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: Optional[str] = None


class ConfirmReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    condition: str
    notes: Optional[str] = None


class LegacyCheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemID: int
    quantity: int = 1
    purpose: Optional[str] = None
    expectedReturn: Optional[date] = None
