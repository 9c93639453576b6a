from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CreateRentalItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    quantity: int = Field(default=1, ge=1)


class CreateRentalDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    customerID: int
    rentalAddress: str = Field(min_length=5, max_length=500)
    startDate: date
    advancePayment: float = Field(default=0, ge=0)
    notes: Optional[str] = None
    items: List[CreateRentalItemDto] = Field(min_length=1)


class ReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    returnDate: date
    paymentMade: float = Field(default=0, ge=0)
    creditToApply: float = Field(default=0, ge=0)
    refundAmount: float = Field(default=0, ge=0)
    notes: Optional[str] = None


class AddPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: float = Field(ge=0.01)
    paymentDate: Optional[date] = None
    notes: Optional[str] = None
