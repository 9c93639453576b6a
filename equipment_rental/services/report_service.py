from __future__ import annotations

import threading
import time
from collections import defaultdict
from datetime import date, datetime
from typing import Any, Callable, Iterable

from models.rental_models import EQUIPMENT_CATEGORIES, Customer, Equipment, Rental
from services.billing import balance, calculate_rent, round_money, running_bill
from services.rental_service import serialize_rental, snapshot_rental


DASHBOARD_MONTHS = 6
TOP_CUSTOMERS_LIMIT = 5


class ViewCache:
    """Process-local cache for read-only projections.

    Writers call ``invalidate()`` after committing; readers rebuild on the
    next request.
    """

    def __init__(self, ttl_seconds: int = 60):
        self.ttl_seconds = ttl_seconds
        self._entries: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get_or_build(self, key: str, builder: Callable[[], Any]) -> Any:
        now = time.time()
        with self._lock:
            cached = self._entries.get(key)
            if cached and cached[1] > now:
                return cached[0]
        value = builder()
        with self._lock:
            self._entries[key] = (value, now + self.ttl_seconds)
        return value

    def invalidate(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)


def _month_keys(today: date, count: int) -> list[tuple[int, int]]:
    keys = []
    year, month = today.year, today.month
    for _ in range(count):
        keys.append((year, month))
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(keys))


def _month_label(key: tuple[int, int]) -> str:
    return date(key[0], key[1], 1).strftime("%b %Y")


def _as_date(value: date | datetime | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    return value


def dashboard_analytics(
    customers: Iterable[Customer],
    rentals: Iterable[Rental],
    equipment: Iterable[Equipment],
    today: date | None = None,
) -> dict:
    today = today or date.today()
    customers = [customer for customer in customers if not customer.IsDeleted]
    rentals = list(rentals)
    equipment = list(equipment)
    snapshots = [snapshot_rental(rental) for rental in rentals]
    month_keys = _month_keys(today, DASHBOARD_MONTHS)

    total_revenue = round_money(sum(snapshot.total_paid for snapshot in snapshots))
    outstanding = round_money(
        sum(
            max(0.0, balance(snapshot.total_calculated, snapshot.total_paid))
            for snapshot in snapshots
            if snapshot.total_calculated is not None
        )
    )
    running = round_money(sum(running_bill(snapshot, today).amount for snapshot in snapshots if snapshot.end_date is None))

    revenue_by_month: dict[tuple[int, int], float] = defaultdict(float)
    rentals_by_month: dict[tuple[int, int], int] = defaultdict(int)
    for snapshot in snapshots:
        if snapshot.end_date is not None and snapshot.total_calculated is not None:
            revenue_by_month[(snapshot.end_date.year, snapshot.end_date.month)] += snapshot.total_calculated
        rentals_by_month[(snapshot.start_date.year, snapshot.start_date.month)] += 1

    customers_by_month: dict[tuple[int, int], int] = defaultdict(int)
    for customer in customers:
        created = _as_date(customer.CreatedAt)
        if created:
            customers_by_month[(created.year, created.month)] += 1

    popularity: dict[str, int] = defaultdict(int)
    for snapshot in snapshots:
        for item in snapshot.items:
            popularity[item.equipment_name] += item.quantity

    by_category = {category: {"totalManaged": 0, "onRent": 0} for category in EQUIPMENT_CATEGORIES}
    for row in equipment:
        bucket = by_category.setdefault(row.Category or "Other", {"totalManaged": 0, "onRent": 0})
        bucket["totalManaged"] += int(row.TotalManaged or 0)
        bucket["onRent"] += int(row.OnRent or 0)

    business_by_customer: dict[int, dict] = {}
    for snapshot, rental in zip(snapshots, rentals):
        entry = business_by_customer.setdefault(
            snapshot.customer_id,
            {"customerID": snapshot.customer_id, "name": rental.CustomerName, "totalBusiness": 0.0, "rentals": 0},
        )
        entry["rentals"] += 1
        entry["totalBusiness"] = round_money(entry["totalBusiness"] + (snapshot.total_calculated or 0))
    top_customers = sorted(business_by_customer.values(), key=lambda item: (-item["totalBusiness"], item["name"]))

    current_month = (today.year, today.month)
    return {
        "totalRevenue": total_revenue,
        "outstandingBalance": outstanding,
        "runningBills": running,
        "activeRentals": sum(1 for snapshot in snapshots if snapshot.status == "Active"),
        "totalCustomers": len(customers),
        "newCustomersThisMonth": customers_by_month.get(current_month, 0),
        "monthlyRevenue": [
            {"name": _month_label(key), "revenue": round_money(revenue_by_month.get(key, 0.0))} for key in month_keys
        ],
        "monthlyRentals": [{"name": _month_label(key), "rentals": rentals_by_month.get(key, 0)} for key in month_keys],
        "newCustomersByMonth": [
            {"name": _month_label(key), "customers": customers_by_month.get(key, 0)} for key in month_keys
        ],
        "equipmentPopularity": [
            {"name": name, "quantity": quantity}
            for name, quantity in sorted(popularity.items(), key=lambda item: (-item[1], item[0]))
        ],
        "utilizationByCategory": [
            {
                "category": category,
                "totalManaged": values["totalManaged"],
                "onRent": values["onRent"],
                "utilization": round(values["onRent"] * 100.0 / values["totalManaged"], 1) if values["totalManaged"] else 0.0,
            }
            for category, values in by_category.items()
        ],
        "topCustomers": top_customers[:TOP_CUSTOMERS_LIMIT],
    }


def build_invoice(rental: Rental, customer: Customer | None, as_of: date | None = None) -> dict:
    snapshot = snapshot_rental(rental)
    end = snapshot.end_date or as_of or date.today()
    quote = calculate_rent(snapshot.start_date, end, snapshot.items)
    total_amount = snapshot.total_calculated if snapshot.total_calculated is not None else quote.amount
    total_paid = snapshot.total_paid
    rental_payload = serialize_rental(rental, as_of=end)
    return {
        "invoiceNumber": f"INV-{rental.RentalID:05d}",
        "issuedOn": as_of or date.today(),
        "isFinal": snapshot.end_date is not None,
        "customer": {
            "customerID": rental.CustomerID,
            "name": rental.CustomerName,
            "address": customer.Address if customer else None,
            "phoneNumber": customer.PhoneNumber if customer else None,
        },
        "rentalAddress": rental.RentalAddress,
        "startDate": snapshot.start_date,
        "endDate": end,
        "durationDays": quote.duration_days,
        "lines": [
            {
                "equipmentName": item.equipment_name,
                "quantity": item.quantity,
                "ratePerDay": item.rate_per_day,
                "days": quote.duration_days,
                "lineTotal": round_money(item.rate_per_day * item.quantity * quote.duration_days),
            }
            for item in snapshot.items
        ],
        "totalAmount": round_money(total_amount),
        "advancePayment": snapshot.ledger.advance_payment,
        "totalPaid": total_paid,
        "balanceDue": balance(total_amount, total_paid),
        "payments": rental_payload["payments"],
        "status": rental.Status,
    }
