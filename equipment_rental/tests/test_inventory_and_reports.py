import base64
import sys
import tempfile
import unittest
from datetime import date, datetime
from pathlib import Path


APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from models.rental_models import Customer, Equipment, Rental, RentalItem, RentalPayment
from services.errors import EquipmentNotFound, InsufficientStock, StorageUploadError
from services.inventory_service import StockSnapshot, inventory_summary, plan_release, plan_reservation
from services.report_service import ViewCache, build_invoice, dashboard_analytics
from services.storage_service import upload_data_url, upload_file


def _stock(equipment_id=1, total=5, on_rent=0, on_maintenance=0):
    return StockSnapshot(
        equipment_id=equipment_id,
        name="Cutter",
        rate_per_day=80.0,
        total_managed=total,
        on_rent=on_rent,
        on_maintenance=on_maintenance,
    )


def _rental(rental_id, *, customer_id=1, start, end=None, status="Active", total=None, advance=0.0, quantity=1, created=None):
    rental = Rental(
        RentalID=rental_id,
        CustomerID=customer_id,
        CustomerName=f"Customer {customer_id}",
        RentalAddress="7 Canal Street",
        StartDate=start,
        EndDate=end,
        Status=status,
        AdvancePayment=advance,
        TotalPaidAmount=advance,
        TotalCalculatedAmount=total,
        CreatedAt=created or datetime(start.year, start.month, start.day),
    )
    rental.RentalItems.append(RentalItem(EquipmentID=1, EquipmentName="Cutter", Quantity=quantity, RatePerDay=80.0))
    if advance:
        rental.Payments.append(RentalPayment(Amount=advance, PaymentDate=start, Kind="Advance"))
    return rental


class StockPlanningTests(unittest.TestCase):
    def test_reservation_respects_maintenance(self):
        stock = {1: _stock(total=5, on_rent=2, on_maintenance=1)}
        self.assertEqual(plan_reservation(stock, {1: 2}), {1: 4})
        with self.assertRaises(InsufficientStock) as ctx:
            plan_reservation(stock, {1: 3})
        self.assertEqual(ctx.exception.available, 2)

    def test_reservation_of_unknown_equipment(self):
        with self.assertRaises(EquipmentNotFound):
            plan_reservation({}, {9: 1})

    def test_release_clamps_at_zero(self):
        with self.assertLogs("equipment_rental.inventory", level="WARNING"):
            self.assertEqual(plan_release({1: _stock(on_rent=1)}, {1: 3}), {1: 0})

    def test_summary_totals(self):
        rows = [
            Equipment(Name="Cutter", TotalManaged=5, OnRent=2, OnMaintenance=1),
            Equipment(Name="Crane", TotalManaged=1, OnRent=1, OnMaintenance=0),
        ]
        summary = inventory_summary(rows)
        self.assertEqual(summary["totalManaged"], 6)
        self.assertEqual(summary["available"], 2)
        self.assertEqual(summary["onRent"], 3)
        self.assertEqual(summary["lines"], 2)


class ViewCacheTests(unittest.TestCase):
    def test_builds_once_until_invalidated(self):
        cache = ViewCache(ttl_seconds=60)
        calls = []

        def build():
            calls.append(1)
            return {"count": len(calls)}

        self.assertEqual(cache.get_or_build("dashboard", build), {"count": 1})
        self.assertEqual(cache.get_or_build("dashboard", build), {"count": 1})
        cache.invalidate()
        self.assertEqual(cache.get_or_build("dashboard", build), {"count": 2})


class StorageTests(unittest.TestCase):
    def test_data_url_upload_is_written(self):
        payload = "data:image/png;base64," + base64.b64encode(b"\x89PNG-bytes").decode("ascii")
        with tempfile.TemporaryDirectory() as tmp:
            url = upload_data_url(payload, "customers", "id proof.png", uploads_dir=Path(tmp))
            stored = Path(tmp) / "customers" / url.rsplit("/", 1)[-1]
            self.assertEqual(stored.read_bytes(), b"\x89PNG-bytes")

    def test_unknown_prefix_is_rejected(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(StorageUploadError):
                upload_file("a.png", b"x", "image/png", "../etc", uploads_dir=Path(tmp))

    def test_bad_base64_is_rejected(self):
        with self.assertRaises(StorageUploadError):
            upload_data_url("data:image/png;base64,@@@", "equipment")


class DashboardTests(unittest.TestCase):
    def test_monthly_series_cover_six_months(self):
        customers = [
            Customer(CustomerID=1, Name="A", IsDeleted=False, CreatedAt=datetime(2024, 6, 3)),
            Customer(CustomerID=2, Name="B", IsDeleted=True, CreatedAt=datetime(2024, 6, 4)),
        ]
        rentals = [
            _rental(1, start=date(2024, 5, 1), end=date(2024, 5, 5), status="Closed", total=400.0, advance=400.0),
            _rental(2, start=date(2024, 6, 10), quantity=2),
        ]
        equipment = [Equipment(Name="Cutter", Category="Cutter", TotalManaged=4, OnRent=2, OnMaintenance=0)]

        result = dashboard_analytics(customers, rentals, equipment, today=date(2024, 6, 15))

        self.assertEqual([row["name"] for row in result["monthlyRevenue"]][-2:], ["May 2024", "Jun 2024"])
        self.assertEqual(len(result["monthlyRentals"]), 6)
        self.assertEqual(result["monthlyRevenue"][-2]["revenue"], 400.0)
        self.assertEqual(result["totalCustomers"], 1)
        self.assertEqual(result["newCustomersThisMonth"], 1)
        self.assertEqual(result["activeRentals"], 1)
        self.assertEqual(result["runningBills"], 960.0)
        self.assertEqual(result["equipmentPopularity"][0], {"name": "Cutter", "quantity": 3})
        cutter = next(row for row in result["utilizationByCategory"] if row["category"] == "Cutter")
        self.assertEqual(cutter["utilization"], 50.0)


class InvoiceTests(unittest.TestCase):
    def test_invoice_for_returned_rental(self):
        rental = _rental(12, start=date(2024, 2, 1), end=date(2024, 2, 3), status="Payment Due", total=240.0, advance=100.0)
        customer = Customer(CustomerID=1, Name="Customer 1", Address="7 Canal Street", PhoneNumber="9876543210")

        invoice = build_invoice(rental, customer, as_of=date(2024, 2, 10))

        self.assertEqual(invoice["invoiceNumber"], "INV-00012")
        self.assertTrue(invoice["isFinal"])
        self.assertEqual(invoice["durationDays"], 3)
        self.assertEqual(invoice["lines"][0]["lineTotal"], 240.0)
        self.assertEqual(invoice["balanceDue"], 140.0)


if __name__ == "__main__":
    unittest.main()
