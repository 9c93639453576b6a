import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient
from sqlalchemy.orm.exc import StaleDataError


os.environ.setdefault("RENTAL_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SESSION_SIGNING_SECRET", "x" * 48)
os.environ.setdefault("DB_CREATE_ALL", "false")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import RentalDesk as app_module
from db.base import Base
from db.session import build_engine, build_sessionmaker
from services import storage_service, user_access_service
from services.user_access_service import reset_login_guard, upsert_user


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        self.engine = build_engine("sqlite+pysqlite:///:memory:")
        Base.metadata.create_all(self.engine)
        self.SessionLocal = build_sessionmaker(self.engine)

        with self.SessionLocal() as db:
            upsert_user(db, "desk@example.com", display_name="Desk Staff", password="secret123", role="Admin")
            db.commit()

        def override_get_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        app_module.app.dependency_overrides[app_module.get_db] = override_get_db
        app_module.VIEW_CACHE.invalidate()
        reset_login_guard()
        self.client = TestClient(app_module.app)

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def login(self):
        response = self.client.post(
            "/api/auth/login",
            json={"email": "desk@example.com", "password": "secret123"},
        )
        self.assertEqual(response.status_code, 200)
        return response.json()["sessionToken"]


class SecurityTests(ApiTestCase):
    def test_health_endpoints_do_not_require_login(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").status_code, 200)

    def test_api_requires_session(self):
        self.assertEqual(self.client.get("/api/customers").status_code, 401)
        self.assertEqual(self.client.get("/api/dashboard").status_code, 401)

    def test_login_logout_revokes_session_token(self):
        token = self.login()
        headers = {"X-Session-Token": token}

        me_before = self.client.get("/api/auth/me", headers=headers)
        self.assertEqual(me_before.status_code, 200)
        self.assertEqual(me_before.json()["user"]["displayName"], "Desk Staff")

        logout = self.client.post("/api/auth/logout", headers=headers)
        self.assertEqual(logout.status_code, 200)

        me_after = self.client.get("/api/auth/me", headers=headers)
        self.assertEqual(me_after.status_code, 401)

    def test_login_persists_with_cookie_session(self):
        login = self.client.post(
            "/api/auth/login",
            json={"email": "Desk@Example.com", "password": "secret123"},
        )
        self.assertEqual(login.status_code, 200)
        self.assertIn("equipment_rental_session=", login.headers.get("set-cookie", ""))

        me = self.client.get("/api/auth/me")
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json()["user"]["role"], "Admin")

    def test_wrong_password_is_rejected(self):
        response = self.client.post(
            "/api/auth/login",
            json={"email": "desk@example.com", "password": "nope-nope"},
        )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"], "InvalidCredentials")

    def test_unexpected_login_fields_are_rejected(self):
        response = self.client.post(
            "/api/auth/login",
            json={"email": "desk@example.com", "password": "secret123", "role": "Admin"},
        )
        self.assertEqual(response.status_code, 400)

    def test_repeated_failures_are_throttled(self):
        with mock.patch.object(user_access_service, "AUTH_MAX_ATTEMPTS_PER_ACCOUNT", 3):
            for _ in range(3):
                failed = self.client.post(
                    "/api/auth/login",
                    json={"email": "desk@example.com", "password": "wrong-pass"},
                )
                self.assertEqual(failed.status_code, 401)

            throttled = self.client.post(
                "/api/auth/login",
                json={"email": "desk@example.com", "password": "secret123"},
            )
        self.assertEqual(throttled.status_code, 429)
        self.assertTrue(throttled.json()["retryable"])
        self.assertGreater(int(throttled.headers["retry-after"]), 0)


class RentalFlowTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.headers = {"X-Session-Token": self.login()}

    def _create_customer(self):
        response = self.client.post(
            "/api/customers",
            json={"name": "Meera Constructions", "address": "44 Lake View Road", "phoneNumber": "+91 99887 76655"},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200)
        return response.json()

    def _create_equipment(self, total=4):
        response = self.client.post(
            "/api/equipment",
            json={"name": "Plate Compactor", "category": "Compactor", "ratePerDay": 150, "totalManaged": total},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200)
        return response.json()

    def test_invalid_phone_number_is_rejected(self):
        response = self.client.post(
            "/api/customers",
            json={"name": "Meera", "address": "44 Lake View Road", "phoneNumber": "call me"},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 422)

    def test_rental_create_return_and_invoice(self):
        customer = self._create_customer()
        equipment = self._create_equipment()
        self.assertEqual(equipment["available"], 4)

        created = self.client.post(
            "/api/rentals",
            json={
                "customerID": customer["customerID"],
                "rentalAddress": "Plot 9, Ring Road",
                "startDate": "2024-01-01",
                "advancePayment": 200,
                "items": [{"equipmentID": equipment["equipmentID"], "quantity": 2}],
            },
            headers=self.headers,
        )
        self.assertEqual(created.status_code, 200)
        rental = created.json()
        self.assertEqual(rental["status"], "Active")
        self.assertEqual(rental["customerName"], "Meera Constructions")

        item = self.client.get(f"/api/equipment/{equipment['equipmentID']}", headers=self.headers).json()
        self.assertEqual(item["onRent"], 2)
        self.assertEqual(item["available"], 2)

        preview = self.client.get(
            f"/api/rentals/{rental['rentalID']}/return-preview",
            params={"returnDate": "2024-01-03"},
            headers=self.headers,
        ).json()
        self.assertEqual(preview["totalAmount"], 900.0)
        self.assertEqual(preview["suggestedPayment"], 700.0)

        returned = self.client.post(
            f"/api/rentals/{rental['rentalID']}/return",
            json={"returnDate": "2024-01-03", "paymentMade": 700},
            headers=self.headers,
        )
        self.assertEqual(returned.status_code, 200)
        body = returned.json()
        self.assertEqual(body["status"], "Closed")
        self.assertEqual(body["settlement"]["durationDays"], 3)
        self.assertEqual(body["payments"][-1]["notes"], "Payment at return by Desk Staff")

        again = self.client.post(
            f"/api/rentals/{rental['rentalID']}/return",
            json={"returnDate": "2024-01-04"},
            headers=self.headers,
        )
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["error"], "InvalidTransition")

        invoice = self.client.get(f"/api/rentals/{rental['rentalID']}/invoice", headers=self.headers).json()
        self.assertEqual(invoice["invoiceNumber"], f"INV-{rental['rentalID']:05d}")
        self.assertEqual(invoice["totalAmount"], 900.0)
        self.assertEqual(invoice["balanceDue"], 0.0)

        summary = self.client.get("/api/equipment/summary", headers=self.headers).json()
        self.assertEqual(summary["onRent"], 0)
        self.assertEqual(summary["available"], 4)

        stats = self.client.get(f"/api/customers/{customer['customerID']}/stats", headers=self.headers).json()
        self.assertEqual(stats["totalBusiness"], 900.0)
        self.assertEqual(stats["outstandingBalance"], 0.0)

    def test_overbooking_returns_conflict(self):
        customer = self._create_customer()
        equipment = self._create_equipment(total=5)
        response = self.client.post(
            "/api/rentals",
            json={
                "customerID": customer["customerID"],
                "rentalAddress": "Plot 9, Ring Road",
                "startDate": "2024-01-01",
                "items": [{"equipmentID": equipment["equipmentID"], "quantity": 6}],
            },
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"], "InsufficientStock")
        self.assertEqual(self.client.get("/api/rentals", headers=self.headers).json(), [])

    def test_admin_drift_report_is_clean_after_rentals(self):
        customer = self._create_customer()
        equipment = self._create_equipment()
        self.client.post(
            "/api/rentals",
            json={
                "customerID": customer["customerID"],
                "rentalAddress": "Plot 9, Ring Road",
                "startDate": "2024-01-01",
                "items": [{"equipmentID": equipment["equipmentID"], "quantity": 3}],
            },
            headers=self.headers,
        )
        report = self.client.get("/api/equipment/drift", headers=self.headers).json()
        self.assertTrue(report["ok"])
        self.assertEqual(report["drift"], [])

    def test_null_for_required_fields_is_rejected(self):
        customer = self._create_customer()
        equipment = self._create_equipment()

        customer_update = self.client.put(
            f"/api/customers/{customer['customerID']}",
            json={"name": None},
            headers=self.headers,
        )
        self.assertEqual(customer_update.status_code, 422)

        equipment_update = self.client.put(
            f"/api/equipment/{equipment['equipmentID']}",
            json={"category": None},
            headers=self.headers,
        )
        self.assertEqual(equipment_update.status_code, 422)

        kept = self.client.get(f"/api/equipment/{equipment['equipmentID']}", headers=self.headers).json()
        self.assertEqual(kept["category"], "Compactor")

    def test_partial_update_keeps_other_fields(self):
        equipment = self._create_equipment()
        response = self.client.put(
            f"/api/equipment/{equipment['equipmentID']}",
            json={"ratePerDay": 175},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["ratePerDay"], 175.0)
        self.assertEqual(response.json()["name"], "Plate Compactor")

    def test_returned_equipment_cannot_be_deleted(self):
        customer = self._create_customer()
        equipment = self._create_equipment()
        rental = self.client.post(
            "/api/rentals",
            json={
                "customerID": customer["customerID"],
                "rentalAddress": "Plot 9, Ring Road",
                "startDate": "2024-01-01",
                "items": [{"equipmentID": equipment["equipmentID"], "quantity": 1}],
            },
            headers=self.headers,
        ).json()
        self.client.post(
            f"/api/rentals/{rental['rentalID']}/return",
            json={"returnDate": "2024-01-02", "paymentMade": 300},
            headers=self.headers,
        )

        response = self.client.delete(f"/api/equipment/{equipment['equipmentID']}", headers=self.headers)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "RentalValidationError")
        self.assertEqual(self.client.get(f"/api/equipment/{equipment['equipmentID']}", headers=self.headers).status_code, 200)
        invoice = self.client.get(f"/api/rentals/{rental['rentalID']}/invoice", headers=self.headers).json()
        self.assertEqual(invoice["lines"][0]["equipmentName"], "Plate Compactor")

    def test_stale_commit_is_reported_as_retryable_conflict(self):
        equipment = self._create_equipment()

        def conflicting_get_db():
            db = self.SessionLocal()
            db.commit = mock.Mock(side_effect=StaleDataError("UPDATE statement on table 'Equipment' expected to update 1 row(s); 0 were matched."))
            try:
                yield db
            finally:
                db.close()

        app_module.app.dependency_overrides[app_module.get_db] = conflicting_get_db
        response = self.client.post(
            f"/api/equipment/{equipment['equipmentID']}/maintenance",
            json={"maintenanceCount": 1},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"], "TransactionConflict")
        self.assertTrue(response.json()["retryable"])

    def test_unknown_rental_is_not_found(self):
        response = self.client.get("/api/rentals/999", headers=self.headers)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"], "RentalNotFound")

    def test_maintenance_above_free_units_is_rejected(self):
        equipment = self._create_equipment(total=3)
        response = self.client.post(
            f"/api/equipment/{equipment['equipmentID']}/maintenance",
            json={"maintenanceCount": 4},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 400)

        accepted = self.client.post(
            f"/api/equipment/{equipment['equipmentID']}/maintenance",
            json={"maintenanceCount": 1},
            headers=self.headers,
        )
        self.assertEqual(accepted.status_code, 200)
        self.assertEqual(accepted.json()["available"], 2)

    def test_deleted_customer_drops_out_of_list(self):
        customer = self._create_customer()
        deleted = self.client.delete(f"/api/customers/{customer['customerID']}", headers=self.headers)
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(self.client.get("/api/customers", headers=self.headers).json(), [])
        kept = self.client.get(f"/api/customers/{customer['customerID']}", headers=self.headers).json()
        self.assertTrue(kept["isDeleted"])

    def test_dashboard_counts_customers_and_active_rentals(self):
        customer = self._create_customer()
        equipment = self._create_equipment()
        self.client.post(
            "/api/rentals",
            json={
                "customerID": customer["customerID"],
                "rentalAddress": "Plot 9, Ring Road",
                "startDate": "2024-01-01",
                "items": [{"equipmentID": equipment["equipmentID"], "quantity": 1}],
            },
            headers=self.headers,
        )
        dashboard = self.client.get("/api/dashboard", headers=self.headers).json()
        self.assertEqual(dashboard["totalCustomers"], 1)
        self.assertEqual(dashboard["activeRentals"], 1)
        self.assertEqual(len(dashboard["monthlyRevenue"]), 6)

    def test_image_upload_is_stored_under_kind(self):
        with tempfile.TemporaryDirectory() as tmp:
            with mock.patch.object(storage_service, "UPLOADS_DIR", Path(tmp)):
                response = self.client.post(
                    "/api/uploads/equipment",
                    files={"file": ("plate photo.png", b"\x89PNG\r\n\x1a\nfake", "image/png")},
                    headers=self.headers,
                )
                self.assertEqual(response.status_code, 200)
                url = response.json()["url"]
                self.assertTrue(url.startswith("/uploads/equipment/"))
                self.assertTrue(url.endswith("_plate_photo.png"))
                self.assertTrue((Path(tmp) / "equipment" / url.rsplit("/", 1)[-1]).exists())

    def test_upload_rejects_non_images(self):
        response = self.client.post(
            "/api/uploads/customers",
            files={"file": ("notes.txt", b"hello", "text/plain")},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "StorageUploadError")


if __name__ == "__main__":
    unittest.main()
