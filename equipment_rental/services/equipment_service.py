from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.rental_models import EQUIPMENT_CATEGORIES, Equipment, RentalItem
from services.errors import EquipmentNotFound, RentalValidationError


_FIELD_MAP = {
    "name": "Name",
    "category": "Category",
    "ratePerDay": "RatePerDay",
    "totalManaged": "TotalManaged",
    "photoUrl": "PhotoUrl",
}
_REQUIRED_FIELDS = {"name", "category", "ratePerDay", "totalManaged"}


def _map_equipment_field(field: str) -> str | None:
    return _FIELD_MAP.get(field)


def get_equipment_or_raise(db: Session, equipment_id: int) -> Equipment:
    equipment = db.get(Equipment, equipment_id)
    if not equipment:
        raise EquipmentNotFound(equipment_id)
    return equipment


def list_equipment(db: Session) -> list[Equipment]:
    return list(db.execute(select(Equipment).order_by(Equipment.Name)).scalars().all())


def apply_equipment_fields(equipment: Equipment, values: dict) -> None:
    for field, value in values.items():
        column = _map_equipment_field(field)
        if column is None:
            continue
        if value is None and field in _REQUIRED_FIELDS:
            raise RentalValidationError(f"{field} cannot be empty.")
        setattr(equipment, column, value)

    if not equipment.Name:
        raise RentalValidationError("Equipment name is required.")
    if equipment.Category not in EQUIPMENT_CATEGORIES:
        raise RentalValidationError(f"Unknown equipment category: {equipment.Category}")
    if float(equipment.RatePerDay or 0) <= 0:
        raise RentalValidationError("Rate per day must be positive.")

    committed = int(equipment.OnRent or 0) + int(equipment.OnMaintenance or 0)
    if int(equipment.TotalManaged or 0) < committed:
        raise RentalValidationError(
            f"Total managed cannot be below units on rent or in maintenance ({committed})."
        )
    equipment.UpdatedAt = datetime.now()


def create_equipment(db: Session, values: dict) -> Equipment:
    equipment = Equipment(Category="Other", OnRent=0, OnMaintenance=0, TotalManaged=0, CreatedAt=datetime.now())
    apply_equipment_fields(equipment, values)
    db.add(equipment)
    return equipment


def delete_equipment(db: Session, equipment_id: int) -> None:
    equipment = get_equipment_or_raise(db, equipment_id)
    if int(equipment.OnRent or 0) > 0:
        raise RentalValidationError("Equipment with units on rent cannot be deleted.")
    rented_before = db.execute(
        select(RentalItem.RentalItemID).where(RentalItem.EquipmentID == equipment_id).limit(1)
    ).first()
    if rented_before:
        # Rental lines keep pointing at this row.
        raise RentalValidationError("Equipment with rental history cannot be deleted.")
    db.delete(equipment)


def serialize_equipment(equipment: Equipment) -> dict:
    return {
        "equipmentID": equipment.EquipmentID,
        "name": equipment.Name,
        "category": equipment.Category,
        "ratePerDay": float(equipment.RatePerDay or 0),
        "totalManaged": int(equipment.TotalManaged or 0),
        "available": equipment.Available,
        "onRent": int(equipment.OnRent or 0),
        "onMaintenance": int(equipment.OnMaintenance or 0),
        "photoUrl": equipment.PhotoUrl,
        "createdAt": equipment.CreatedAt,
        "updatedAt": equipment.UpdatedAt,
    }
