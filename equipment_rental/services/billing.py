"""Rental billing: rent accrual, payment ledger, credit transfer and settlement planning.

Everything here is pure. Callers take snapshots of the rows they read inside a
transaction, ask a ``plan_*`` function what should change, and then apply the
returned plan to the ORM objects (see ``services.rental_service``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Sequence

from services.errors import InsufficientCredit, InvalidTransition, RentalValidationError


BALANCE_TOLERANCE = 0.01
CREDIT_SOURCE_STATES = {"Closed", "Payment Due"}

BILLING_LOGGER = logging.getLogger("equipment_rental.billing")


def round_money(value: float | int | None) -> float:
    return round(float(value or 0) + 0.0, 2)


@dataclass(frozen=True)
class LineItem:
    equipment_id: int
    equipment_name: str
    quantity: int
    rate_per_day: float


@dataclass(frozen=True)
class RentQuote:
    duration_days: int
    daily_rate: float
    amount: float


def rental_duration_days(start_date: date, end_date: date) -> int:
    if end_date < start_date:
        end_date = start_date
    return max(1, (end_date - start_date).days + 1)


def daily_rate(items: Iterable[LineItem]) -> float:
    return round_money(sum(float(item.rate_per_day) * int(item.quantity) for item in items))


def calculate_rent(start_date: date, end_date: date, items: Sequence[LineItem]) -> RentQuote:
    """Bill whole days, counting both the start and the return day."""
    duration = rental_duration_days(start_date, end_date)
    rate = daily_rate(items)
    return RentQuote(duration_days=duration, daily_rate=rate, amount=round_money(rate * duration))


@dataclass(frozen=True)
class LedgerEntry:
    amount: float
    date: date
    note: str | None = None
    kind: str = "Payment"


@dataclass
class PaymentLedger:
    advance_payment: float = 0.0
    entries: list[LedgerEntry] = field(default_factory=list)

    def append_entry(self, amount: float, entry_date: date, note: str | None = None, kind: str = "Payment") -> LedgerEntry:
        entry = LedgerEntry(amount=round_money(amount), date=entry_date, note=note, kind=kind)
        self.entries.append(entry)
        return entry

    def total_paid(self) -> float:
        return round_money(float(self.advance_payment or 0) + sum(entry.amount for entry in self.entries))

    def copy(self) -> "PaymentLedger":
        return PaymentLedger(advance_payment=self.advance_payment, entries=list(self.entries))


def balance(total_calculated: float | None, total_paid: float) -> float:
    return round_money(float(total_calculated or 0) - float(total_paid or 0))


def resolve_status(end_date: date | None, total_calculated: float | None, total_paid: float) -> str:
    if end_date is None:
        return "Active"
    if balance(total_calculated, total_paid) <= BALANCE_TOLERANCE:
        return "Closed"
    return "Payment Due"


@dataclass(frozen=True)
class RentalSnapshot:
    rental_id: int
    customer_id: int
    start_date: date
    end_date: date | None
    status: str
    items: tuple[LineItem, ...]
    ledger: PaymentLedger
    total_calculated: float | None = None

    @property
    def total_paid(self) -> float:
        return self.ledger.total_paid()

    @property
    def balance(self) -> float:
        return balance(self.total_calculated, self.total_paid)


def running_bill(rental: RentalSnapshot, as_of: date) -> RentQuote:
    end = rental.end_date or as_of
    return calculate_rent(rental.start_date, end, rental.items)


# Credit transfer


@dataclass(frozen=True)
class CreditDraw:
    source_rental_id: int
    amount: float
    entry: LedgerEntry


def credit_surplus(source: RentalSnapshot) -> float:
    if source.status not in CREDIT_SOURCE_STATES:
        return 0.0
    return round_money(max(0.0, -source.balance))


def available_credit(sources: Iterable[RentalSnapshot], exclude_rental_id: int | None = None) -> float:
    return round_money(
        sum(credit_surplus(source) for source in sources if source.rental_id != exclude_rental_id)
    )


def plan_credit_draw(
    sources: Iterable[RentalSnapshot],
    requested: float,
    destination_rental_id: int,
    draw_date: date,
) -> list[CreditDraw]:
    """Split ``requested`` across overpaid rentals, oldest start date first.

    Each source gives at most its own surplus. Asking for more than the
    sources hold at read time raises ``InsufficientCredit`` before anything
    is drawn.
    """
    requested = round_money(requested)
    if requested < 0:
        raise RentalValidationError("Credit to apply cannot be negative.")
    if requested == 0:
        return []

    candidates = sorted(
        (source for source in sources if source.rental_id != destination_rental_id),
        key=lambda source: (source.start_date, source.rental_id),
    )
    total_available = available_credit(candidates)
    if requested > total_available + BALANCE_TOLERANCE:
        raise InsufficientCredit(requested, total_available)

    draws: list[CreditDraw] = []
    remaining = requested
    for source in candidates:
        if remaining <= 0:
            break
        surplus = credit_surplus(source)
        if surplus <= 0:
            continue
        drawn = round_money(min(remaining, surplus))
        if drawn <= 0:
            continue
        entry = LedgerEntry(
            amount=-drawn,
            date=draw_date,
            note=f"Credit transferred to rental #{destination_rental_id}",
            kind="Credit Out",
        )
        draws.append(CreditDraw(source_rental_id=source.rental_id, amount=drawn, entry=entry))
        remaining = round_money(remaining - drawn)

    if remaining > BALANCE_TOLERANCE:
        raise InsufficientCredit(requested, round_money(requested - remaining))
    return draws


# Settlement


@dataclass(frozen=True)
class ReturnTerms:
    return_date: date
    payment_made: float = 0.0
    credit_to_apply: float = 0.0
    refund_amount: float = 0.0
    notes: str | None = None
    actor_name: str | None = None


@dataclass
class ReturnPlan:
    rental_id: int
    end_date: date
    quote: RentQuote
    new_entries: list[LedgerEntry]
    credit_draws: list[CreditDraw]
    total_paid: float
    status: str
    released: dict[int, int]
    notes: str | None

    @property
    def balance(self) -> float:
        return balance(self.quote.amount, self.total_paid)

    @property
    def credit_applied(self) -> float:
        return round_money(sum(draw.amount for draw in self.credit_draws))


def _by_actor(label: str, actor_name: str | None) -> str:
    return f"{label} by {actor_name}" if actor_name else label


def plan_return(rental: RentalSnapshot, terms: ReturnTerms, credit_sources: Sequence[RentalSnapshot] = ()) -> ReturnPlan:
    if rental.status != "Active" or rental.end_date is not None:
        raise InvalidTransition(rental.status, "return")
    if terms.return_date < rental.start_date:
        raise RentalValidationError("Return date cannot be before the rental start date.")
    for label, value in (
        ("Payment made", terms.payment_made),
        ("Credit to apply", terms.credit_to_apply),
        ("Refund amount", terms.refund_amount),
    ):
        if value is not None and value < 0:
            raise RentalValidationError(f"{label} cannot be negative.")

    quote = calculate_rent(rental.start_date, terms.return_date, rental.items)
    draws = plan_credit_draw(credit_sources, terms.credit_to_apply or 0, rental.rental_id, terms.return_date)

    ledger = rental.ledger.copy()
    new_entries: list[LedgerEntry] = []
    credit_applied = round_money(sum(draw.amount for draw in draws))
    if credit_applied > 0:
        sources = ", ".join(f"#{draw.source_rental_id}" for draw in draws)
        new_entries.append(
            ledger.append_entry(credit_applied, terms.return_date, f"Credit applied from rental {sources}", "Credit In")
        )
    payment_made = round_money(terms.payment_made)
    if payment_made > 0:
        new_entries.append(
            ledger.append_entry(payment_made, terms.return_date, _by_actor("Payment at return", terms.actor_name), "Payment")
        )
    refund = round_money(terms.refund_amount)
    if refund > 0:
        if refund > ledger.total_paid() + BALANCE_TOLERANCE:
            raise RentalValidationError("Refund cannot exceed the amount paid on this rental.")
        new_entries.append(
            ledger.append_entry(-refund, terms.return_date, _by_actor("Refund to customer", terms.actor_name), "Refund")
        )

    total_paid = ledger.total_paid()
    status = resolve_status(terms.return_date, quote.amount, total_paid)

    released: dict[int, int] = {}
    for item in rental.items:
        released[item.equipment_id] = released.get(item.equipment_id, 0) + int(item.quantity)

    BILLING_LOGGER.info(
        "Planned return rental=%s days=%s amount=%.2f paid=%.2f status=%s credit=%.2f",
        rental.rental_id,
        quote.duration_days,
        quote.amount,
        total_paid,
        status,
        credit_applied,
    )
    return ReturnPlan(
        rental_id=rental.rental_id,
        end_date=terms.return_date,
        quote=quote,
        new_entries=new_entries,
        credit_draws=draws,
        total_paid=total_paid,
        status=status,
        released=released,
        notes=terms.notes,
    )


@dataclass
class PaymentPlan:
    rental_id: int
    entry: LedgerEntry
    total_paid: float
    status: str


def plan_payment(rental: RentalSnapshot, amount: float, payment_date: date, note: str | None = None, actor_name: str | None = None) -> PaymentPlan:
    amount = round_money(amount)
    if amount <= 0:
        raise RentalValidationError("Payment amount must be positive.")
    ledger = rental.ledger.copy()
    entry = ledger.append_entry(amount, payment_date, note or _by_actor("Payment", actor_name), "Payment")
    total_paid = ledger.total_paid()
    if rental.status == "Closed":
        status = "Closed"
    else:
        status = resolve_status(rental.end_date, rental.total_calculated, total_paid)
    return PaymentPlan(rental_id=rental.rental_id, entry=entry, total_paid=total_paid, status=status)


def plan_credit_source_update(source: RentalSnapshot, draw: CreditDraw) -> float:
    """Paid amount of a credit source once ``draw`` is booked against it."""
    ledger = source.ledger.copy()
    ledger.append_entry(draw.entry.amount, draw.entry.date, draw.entry.note, draw.entry.kind)
    total_paid = ledger.total_paid()
    if balance(source.total_calculated, total_paid) > BALANCE_TOLERANCE:
        # Only reachable if the snapshot disagreed with the surplus check.
        raise InsufficientCredit(draw.amount, credit_surplus(source))
    return total_paid
