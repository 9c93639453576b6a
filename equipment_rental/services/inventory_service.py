from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Mapping

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.rental_models import Equipment, Rental, RentalItem
from services.errors import EquipmentNotFound, InsufficientStock, RentalValidationError


INVENTORY_LOGGER = logging.getLogger("equipment_rental.inventory")


def available_quantity(total_managed: int, on_rent: int, on_maintenance: int) -> int:
    return max(0, int(total_managed or 0) - int(on_rent or 0) - int(on_maintenance or 0))


@dataclass(frozen=True)
class StockSnapshot:
    equipment_id: int
    name: str
    rate_per_day: float
    total_managed: int
    on_rent: int
    on_maintenance: int

    @property
    def available(self) -> int:
        return available_quantity(self.total_managed, self.on_rent, self.on_maintenance)


def snapshot_equipment(equipment: Equipment) -> StockSnapshot:
    return StockSnapshot(
        equipment_id=equipment.EquipmentID,
        name=equipment.Name,
        rate_per_day=float(equipment.RatePerDay or 0),
        total_managed=int(equipment.TotalManaged or 0),
        on_rent=int(equipment.OnRent or 0),
        on_maintenance=int(equipment.OnMaintenance or 0),
    )


def plan_reservation(stock: Mapping[int, StockSnapshot], requested: Mapping[int, int]) -> dict[int, int]:
    next_on_rent: dict[int, int] = {}
    for equipment_id, quantity in requested.items():
        snapshot = stock.get(equipment_id)
        if snapshot is None:
            raise EquipmentNotFound(equipment_id)
        if quantity > snapshot.available:
            raise InsufficientStock(equipment_id, snapshot.name, quantity, snapshot.available)
        next_on_rent[equipment_id] = snapshot.on_rent + quantity
    return next_on_rent


def plan_release(stock: Mapping[int, StockSnapshot], returned: Mapping[int, int]) -> dict[int, int]:
    next_on_rent: dict[int, int] = {}
    for equipment_id, quantity in returned.items():
        snapshot = stock.get(equipment_id)
        if snapshot is None:
            raise EquipmentNotFound(equipment_id)
        remaining = snapshot.on_rent - quantity
        if remaining < 0:
            INVENTORY_LOGGER.warning(
                "Clamped on-rent count equipment=%s on_rent=%s returned=%s",
                equipment_id,
                snapshot.on_rent,
                quantity,
            )
            remaining = 0
        next_on_rent[equipment_id] = remaining
    return next_on_rent


def apply_on_rent(rows: Mapping[int, Equipment], next_on_rent: Mapping[int, int]) -> None:
    now = datetime.now()
    for equipment_id, on_rent in next_on_rent.items():
        row = rows[equipment_id]
        row.OnRent = on_rent
        row.UpdatedAt = now


def validate_maintenance_count(equipment: Equipment, count: int) -> None:
    ceiling = int(equipment.TotalManaged or 0) - int(equipment.OnRent or 0)
    if count < 0:
        raise RentalValidationError("Maintenance count cannot be negative.")
    if count > ceiling:
        raise RentalValidationError(f"Cannot exceed available stock for maintenance ({max(ceiling, 0)}).")


def set_maintenance(db: Session, equipment_id: int, count: int) -> Equipment:
    equipment = db.get(Equipment, equipment_id)
    if not equipment:
        raise EquipmentNotFound(equipment_id)
    validate_maintenance_count(equipment, int(count))
    previous = int(equipment.OnMaintenance or 0)
    equipment.OnMaintenance = int(count)
    equipment.UpdatedAt = datetime.now()
    INVENTORY_LOGGER.info("Maintenance updated equipment=%s from=%s to=%s", equipment_id, previous, count)
    return equipment


def inventory_summary(rows: Iterable[Equipment]) -> dict:
    totals = {"totalManaged": 0, "available": 0, "onRent": 0, "onMaintenance": 0, "lines": 0}
    for row in rows:
        totals["lines"] += 1
        totals["totalManaged"] += int(row.TotalManaged or 0)
        totals["onRent"] += int(row.OnRent or 0)
        totals["onMaintenance"] += int(row.OnMaintenance or 0)
        totals["available"] += row.Available
    return totals


def reconcile_on_rent(db: Session) -> list[dict]:
    expected = dict(
        db.execute(
            select(RentalItem.EquipmentID, func.sum(RentalItem.Quantity))
            .join(Rental, Rental.RentalID == RentalItem.RentalID)
            .where(Rental.Status == "Active")
            .group_by(RentalItem.EquipmentID)
        ).all()
    )
    drift = []
    for equipment in db.execute(select(Equipment).order_by(Equipment.EquipmentID)).scalars().all():
        on_active_rentals = int(expected.get(equipment.EquipmentID) or 0)
        recorded = int(equipment.OnRent or 0)
        overcommitted = recorded + int(equipment.OnMaintenance or 0) > int(equipment.TotalManaged or 0)
        if recorded != on_active_rentals or overcommitted:
            drift.append(
                {
                    "equipmentID": equipment.EquipmentID,
                    "name": equipment.Name,
                    "onRent": recorded,
                    "onActiveRentals": on_active_rentals,
                    "onMaintenance": int(equipment.OnMaintenance or 0),
                    "totalManaged": int(equipment.TotalManaged or 0),
                    "overcommitted": overcommitted,
                }
            )
    return drift
