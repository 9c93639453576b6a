from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from db.transaction import run_transaction
from models.rental_models import Customer, Equipment, Rental, RentalItem, RentalPayment
from services.audit_service import log_audit
from services.billing import (
    LedgerEntry,
    LineItem,
    PaymentLedger,
    RentalSnapshot,
    ReturnPlan,
    ReturnTerms,
    available_credit,
    balance,
    plan_credit_source_update,
    plan_payment,
    plan_return,
    resolve_status,
    round_money,
    running_bill,
)
from services.errors import CustomerNotFound, EquipmentNotFound, RentalNotFound, RentalValidationError
from services.inventory_service import apply_on_rent, plan_release, plan_reservation, snapshot_equipment


@dataclass(frozen=True)
class Actor:
    user_id: int | None = None
    display_name: str | None = None


def ledger_from_rental(rental: Rental) -> PaymentLedger:
    advance_rows = [payment for payment in rental.Payments if payment.Kind == "Advance"]
    if advance_rows:
        advance = sum(float(payment.Amount or 0) for payment in advance_rows)
    else:
        advance = float(rental.AdvancePayment or 0)
    entries = [
        LedgerEntry(
            amount=float(payment.Amount or 0),
            date=payment.PaymentDate,
            note=payment.Notes,
            kind=payment.Kind or "Payment",
        )
        for payment in rental.Payments
        if payment.Kind != "Advance"
    ]
    return PaymentLedger(advance_payment=round_money(advance), entries=entries)


def snapshot_rental(rental: Rental) -> RentalSnapshot:
    items = tuple(
        LineItem(
            equipment_id=item.EquipmentID,
            equipment_name=item.EquipmentName,
            quantity=int(item.Quantity or 0),
            rate_per_day=float(item.RatePerDay or 0),
        )
        for item in rental.RentalItems
    )
    total_calculated = rental.TotalCalculatedAmount
    return RentalSnapshot(
        rental_id=rental.RentalID,
        customer_id=rental.CustomerID,
        start_date=rental.StartDate,
        end_date=rental.EndDate,
        status=rental.Status,
        items=items,
        ledger=ledger_from_rental(rental),
        total_calculated=float(total_calculated) if total_calculated is not None else None,
    )


def _rental_query():
    return select(Rental).options(selectinload(Rental.RentalItems), selectinload(Rental.Payments))


def load_rental(db: Session, rental_id: int) -> Rental:
    rental = db.execute(_rental_query().where(Rental.RentalID == rental_id)).scalars().first()
    if not rental:
        raise RentalNotFound(rental_id)
    return rental


def list_rentals(db: Session, customer_id: int | None = None) -> list[Rental]:
    stmt = _rental_query().order_by(Rental.CreatedAt.desc(), Rental.RentalID.desc())
    if customer_id is not None:
        stmt = stmt.where(Rental.CustomerID == customer_id)
    return list(db.execute(stmt).scalars().all())


def _load_equipment(db: Session, equipment_ids: Iterable[int]) -> dict[int, Equipment]:
    rows: dict[int, Equipment] = {}
    for equipment_id in equipment_ids:
        equipment = db.get(Equipment, equipment_id)
        if not equipment:
            raise EquipmentNotFound(equipment_id)
        rows[equipment_id] = equipment
    return rows


def _other_customer_rentals(db: Session, customer_id: int, rental_id: int) -> list[Rental]:
    return list(
        db.execute(
            _rental_query()
            .where(Rental.CustomerID == customer_id)
            .where(Rental.RentalID != rental_id)
        ).scalars().all()
    )


def _append_payment(rental: Rental, entry: LedgerEntry, created_at: datetime) -> None:
    rental.Payments.append(
        RentalPayment(
            Amount=entry.amount,
            PaymentDate=entry.date,
            Notes=entry.note,
            Kind=entry.kind,
            CreatedAt=created_at,
        )
    )


def _merge_requested_items(items: Iterable[tuple[int, int]]) -> dict[int, int]:
    requested: dict[int, int] = {}
    for equipment_id, quantity in items:
        quantity = int(quantity)
        if quantity < 1:
            raise RentalValidationError("Quantity must be at least 1.")
        requested[int(equipment_id)] = requested.get(int(equipment_id), 0) + quantity
    if not requested:
        raise RentalValidationError("At least one equipment item is required.")
    return requested


def create_rental(
    db: Session,
    *,
    customer_id: int,
    rental_address: str,
    start_date: date,
    items: Iterable[tuple[int, int]],
    advance_payment: float = 0,
    notes: str | None = None,
    actor: Actor | None = None,
) -> Rental:
    actor = actor or Actor()
    requested = _merge_requested_items(items)
    advance = round_money(advance_payment)
    if advance < 0:
        raise RentalValidationError("Advance payment cannot be negative.")

    def work(session: Session) -> Rental:
        customer = session.get(Customer, customer_id)
        if not customer or customer.IsDeleted:
            raise CustomerNotFound(customer_id)
        rows = _load_equipment(session, requested.keys())
        stock = {equipment_id: snapshot_equipment(row) for equipment_id, row in rows.items()}
        next_on_rent = plan_reservation(stock, requested)

        now = datetime.now()
        rental = Rental(
            CustomerID=customer.CustomerID,
            CustomerName=customer.Name,
            RentalAddress=rental_address,
            StartDate=start_date,
            EndDate=None,
            Status="Active",
            AdvancePayment=advance,
            TotalPaidAmount=advance,
            TotalCalculatedAmount=None,
            Notes=notes,
            CreatedAt=now,
            UpdatedAt=now,
        )
        for equipment_id, quantity in requested.items():
            rental.RentalItems.append(
                RentalItem(
                    EquipmentID=equipment_id,
                    EquipmentName=stock[equipment_id].name,
                    Quantity=quantity,
                    RatePerDay=stock[equipment_id].rate_per_day,
                )
            )
        if advance > 0:
            note = f"Advance payment by {actor.display_name}" if actor.display_name else "Advance payment"
            _append_payment(rental, LedgerEntry(amount=advance, date=start_date, note=note, kind="Advance"), now)

        apply_on_rent(rows, next_on_rent)
        session.add(rental)
        session.flush()
        log_audit(
            session,
            "Rental",
            rental.RentalID,
            "CreateRental",
            f"customer={customer.CustomerID} items={dict(requested)} advance={advance:.2f}",
            user_id=actor.user_id,
        )
        return rental

    return run_transaction(db, work, label="create rental")


def process_return(db: Session, rental_id: int, terms: ReturnTerms, actor: Actor | None = None) -> tuple[Rental, ReturnPlan]:
    actor = actor or Actor()

    def work(session: Session) -> tuple[Rental, ReturnPlan]:
        rental = load_rental(session, rental_id)
        rows = _load_equipment(session, {item.EquipmentID for item in rental.RentalItems})
        others: list[Rental] = []
        if (terms.credit_to_apply or 0) > 0:
            others = _other_customer_rentals(session, rental.CustomerID, rental.RentalID)
        source_snapshots = {other.RentalID: snapshot_rental(other) for other in others}

        plan = plan_return(snapshot_rental(rental), terms, list(source_snapshots.values()))
        stock = {equipment_id: snapshot_equipment(row) for equipment_id, row in rows.items()}
        next_on_rent = plan_release(stock, plan.released)

        now = datetime.now()
        sources = {other.RentalID: other for other in others}
        for draw in plan.credit_draws:
            source = sources[draw.source_rental_id]
            paid = plan_credit_source_update(source_snapshots[draw.source_rental_id], draw)
            _append_payment(source, draw.entry, now)
            source.TotalPaidAmount = paid
            if source.Status != "Closed":
                source.Status = resolve_status(source.EndDate, source.TotalCalculatedAmount, paid)
            source.UpdatedAt = now
            log_audit(
                session,
                "Rental",
                source.RentalID,
                "CreditTransferOut",
                f"amount={draw.amount:.2f} to={rental.RentalID}",
                user_id=actor.user_id,
            )

        for entry in plan.new_entries:
            _append_payment(rental, entry, now)
        rental.EndDate = plan.end_date
        rental.TotalCalculatedAmount = plan.quote.amount
        rental.TotalPaidAmount = plan.total_paid
        rental.Status = plan.status
        if plan.notes:
            rental.Notes = (rental.Notes + "\n" if rental.Notes else "") + plan.notes
        rental.UpdatedAt = now

        apply_on_rent(rows, next_on_rent)
        log_audit(
            session,
            "Rental",
            rental.RentalID,
            "Return",
            f"days={plan.quote.duration_days} amount={plan.quote.amount:.2f} paid={plan.total_paid:.2f} status={plan.status}",
            user_id=actor.user_id,
        )
        return rental, plan

    return run_transaction(db, work, label="settle return")


def add_payment(
    db: Session,
    rental_id: int,
    amount: float,
    payment_date: date | None = None,
    notes: str | None = None,
    actor: Actor | None = None,
) -> Rental:
    actor = actor or Actor()

    def work(session: Session) -> Rental:
        rental = load_rental(session, rental_id)
        plan = plan_payment(snapshot_rental(rental), amount, payment_date or date.today(), notes, actor.display_name)
        now = datetime.now()
        _append_payment(rental, plan.entry, now)
        rental.TotalPaidAmount = plan.total_paid
        rental.Status = plan.status
        rental.UpdatedAt = now
        log_audit(
            session,
            "Rental",
            rental.RentalID,
            "AddPayment",
            f"amount={plan.entry.amount:.2f} paid={plan.total_paid:.2f} status={plan.status}",
            user_id=actor.user_id,
        )
        return rental

    return run_transaction(db, work, label="add payment")


def preview_return(db: Session, rental_id: int, return_date: date) -> dict:
    rental = load_rental(db, rental_id)
    snapshot = snapshot_rental(rental)
    others = [snapshot_rental(other) for other in _other_customer_rentals(db, rental.CustomerID, rental.RentalID)]
    quote = running_bill(snapshot, return_date)
    balance_due = balance(quote.amount, snapshot.total_paid)
    return {
        "rentalID": rental.RentalID,
        "startDate": snapshot.start_date,
        "returnDate": snapshot.end_date or max(return_date, snapshot.start_date),
        "durationDays": quote.duration_days,
        "dailyRate": quote.daily_rate,
        "totalAmount": quote.amount,
        "totalPaid": snapshot.total_paid,
        "balanceDue": balance_due,
        "suggestedPayment": max(0.0, balance_due),
        "availableCredit": available_credit(others),
    }


def serialize_rental(rental: Rental, as_of: date | None = None) -> dict:
    snapshot = snapshot_rental(rental)
    total_paid = snapshot.total_paid
    payload = {
        "rentalID": rental.RentalID,
        "customerID": rental.CustomerID,
        "customerName": rental.CustomerName,
        "rentalAddress": rental.RentalAddress,
        "startDate": rental.StartDate,
        "endDate": rental.EndDate,
        "status": rental.Status,
        "advancePayment": float(rental.AdvancePayment or 0),
        "totalPaidAmount": total_paid,
        "totalCalculatedAmount": snapshot.total_calculated,
        "balance": balance(snapshot.total_calculated, total_paid) if snapshot.total_calculated is not None else None,
        "notes": rental.Notes,
        "createdAt": rental.CreatedAt,
        "updatedAt": rental.UpdatedAt,
        "items": [
            {
                "rentalItemID": item.RentalItemID,
                "equipmentID": item.EquipmentID,
                "equipmentName": item.EquipmentName,
                "quantity": int(item.Quantity or 0),
                "ratePerDay": float(item.RatePerDay or 0),
            }
            for item in rental.RentalItems
        ],
        "payments": [
            {
                "paymentID": payment.PaymentID,
                "amount": float(payment.Amount or 0),
                "date": payment.PaymentDate,
                "notes": payment.Notes,
                "kind": payment.Kind,
            }
            for payment in rental.Payments
        ],
    }
    if rental.EndDate is None:
        bill = running_bill(snapshot, as_of or date.today())
        payload["runningBill"] = bill.amount
        payload["runningDays"] = bill.duration_days
    return payload
