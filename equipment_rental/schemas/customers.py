import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


PHONE_PATTERN = re.compile(r"^\+?[0-9\s\-()]*$")


def _check_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    value = value.strip()
    if len(value) < 10:
        raise ValueError("Phone number must be at least 10 digits.")
    if not PHONE_PATTERN.match(value):
        raise ValueError("Invalid phone number format.")
    return value


class CustomerCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(min_length=2, max_length=255)
    address: str = Field(min_length=5, max_length=500)
    phoneNumber: str
    idProofUrl: Optional[str] = None
    customerPhotoUrl: Optional[str] = None
    mediatorName: Optional[str] = None
    mediatorPhotoUrl: Optional[str] = None

    @field_validator("phoneNumber")
    @classmethod
    def validate_phone(cls, value: str) -> str:
        return _check_phone(value)


class CustomerUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = Field(default=None, min_length=2, max_length=255)
    address: Optional[str] = Field(default=None, min_length=5, max_length=500)
    phoneNumber: Optional[str] = None
    idProofUrl: Optional[str] = None
    customerPhotoUrl: Optional[str] = None
    mediatorName: Optional[str] = None
    mediatorPhotoUrl: Optional[str] = None

    @field_validator("name", "address", "phoneNumber")
    @classmethod
    def reject_null(cls, value: Optional[str]) -> str:
        if value is None:
            raise ValueError("Field cannot be null; omit it to keep the current value.")
        return value

    @field_validator("phoneNumber")
    @classmethod
    def validate_phone(cls, value: str) -> str:
        return _check_phone(value)
