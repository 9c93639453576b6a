from __future__ import annotations

from datetime import datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.rental_models import Customer, Rental
from services.billing import available_credit, balance, round_money
from services.errors import CustomerNotFound, RentalValidationError
from services.rental_service import snapshot_rental


_FIELD_MAP = {
    "name": "Name",
    "address": "Address",
    "phoneNumber": "PhoneNumber",
    "idProofUrl": "IdProofUrl",
    "customerPhotoUrl": "CustomerPhotoUrl",
    "mediatorName": "MediatorName",
    "mediatorPhotoUrl": "MediatorPhotoUrl",
}
_REQUIRED_FIELDS = {"name", "address", "phoneNumber"}


def get_customer_or_raise(db: Session, customer_id: int, *, include_deleted: bool = True) -> Customer:
    customer = db.get(Customer, customer_id)
    if not customer or (customer.IsDeleted and not include_deleted):
        raise CustomerNotFound(customer_id)
    return customer


def list_customers(db: Session, *, include_deleted: bool = False) -> list[Customer]:
    stmt = select(Customer).order_by(Customer.CreatedAt.desc(), Customer.CustomerID.desc())
    if not include_deleted:
        stmt = stmt.where(Customer.IsDeleted == False)  # noqa: E712
    return list(db.execute(stmt).scalars().all())


def create_customer(db: Session, values: dict) -> Customer:
    now = datetime.now()
    customer = Customer(IsDeleted=False, CreatedAt=now, UpdatedAt=now)
    for field, value in values.items():
        column = _FIELD_MAP.get(field)
        if column:
            setattr(customer, column, value)
    db.add(customer)
    return customer


def update_customer(db: Session, customer_id: int, values: dict) -> Customer:
    # Rentals keep the name they were created with.
    customer = get_customer_or_raise(db, customer_id, include_deleted=False)
    for field, value in values.items():
        column = _FIELD_MAP.get(field)
        if column:
            if value is None and field in _REQUIRED_FIELDS:
                raise RentalValidationError(f"{field} cannot be empty.")
            setattr(customer, column, value)
    customer.UpdatedAt = datetime.now()
    return customer


def soft_delete_customer(db: Session, customer_id: int) -> Customer:
    customer = get_customer_or_raise(db, customer_id, include_deleted=False)
    customer.IsDeleted = True
    customer.DeletedAt = datetime.now()
    customer.UpdatedAt = customer.DeletedAt
    return customer


def customer_stats(rentals: Iterable[Rental]) -> dict:
    snapshots = [snapshot_rental(rental) for rental in rentals]
    settled = [snapshot for snapshot in snapshots if snapshot.status in {"Closed", "Payment Due"}]
    total_business = round_money(sum(snapshot.total_calculated or 0 for snapshot in settled))
    settled_paid = round_money(sum(snapshot.total_paid for snapshot in settled))
    return {
        "totalRentals": len(snapshots),
        "activeRentals": sum(1 for snapshot in snapshots if snapshot.status == "Active"),
        "totalBusiness": total_business,
        "totalPaid": round_money(sum(snapshot.total_paid for snapshot in snapshots)),
        "outstandingBalance": max(0.0, balance(total_business, settled_paid)),
        "availableCredit": available_credit(snapshots),
    }


def serialize_customer(customer: Customer) -> dict:
    return {
        "customerID": customer.CustomerID,
        "name": customer.Name,
        "address": customer.Address,
        "phoneNumber": customer.PhoneNumber,
        "idProofUrl": customer.IdProofUrl,
        "customerPhotoUrl": customer.CustomerPhotoUrl,
        "mediatorName": customer.MediatorName,
        "mediatorPhotoUrl": customer.MediatorPhotoUrl,
        "isDeleted": bool(customer.IsDeleted),
        "deletedAt": customer.DeletedAt,
        "createdAt": customer.CreatedAt,
        "updatedAt": customer.UpdatedAt,
    }
