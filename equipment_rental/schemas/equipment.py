from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


EquipmentCategory = Literal["Centering Plate", "Compactor", "Cutter", "Crane", "Other"]


class EquipmentUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: Optional[int] = None
    name: Optional[str] = Field(default=None, min_length=2, max_length=255)
    category: Optional[EquipmentCategory] = None
    ratePerDay: Optional[float] = Field(default=None, gt=0)
    totalManaged: Optional[int] = Field(default=None, ge=0)
    photoUrl: Optional[str] = None

    @field_validator("name", "category", "ratePerDay", "totalManaged")
    @classmethod
    def reject_null(cls, value):
        if value is None:
            raise ValueError("Field cannot be null; omit it to keep the current value.")
        return value


class MaintenanceUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    maintenanceCount: int = Field(ge=0)
