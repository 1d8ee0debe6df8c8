import importlib
import os
import sys
import unittest


class PayrollsApiTestCase(unittest.TestCase):
    def setUp(self):
        os.environ["DATABASE_URL"] = "sqlite:///:memory:"
        if "app" in sys.modules:
            self.app_module = importlib.reload(sys.modules["app"])
        else:
            self.app_module = importlib.import_module("app")

        self.app = self.app_module.create_app()
        self.app.testing = True
        self.ctx = self.app.app_context()
        self.ctx.push()
        self.app_module.db.create_all()

        self.client = self.app.test_client()
        User = self.app_module.User
        RoleEnum = self.app_module.RoleEnum

        admin = User(name="Admin", email="admin@example.com", role=RoleEnum.admin)
        admin.set_password("Password!1")
        self.driver = User(name="Luis", email="luis@example.com", role=RoleEnum.driver)
        self.driver.set_password("Password!1")
        self.other_driver = User(name="Ana", email="ana@example.com", role=RoleEnum.driver)
        self.other_driver.set_password("Password!1")
        self.app_module.db.session.add_all([admin, self.driver, self.other_driver])
        self.app_module.db.session.commit()

        self.admin_token = self._login("admin@example.com")
        self.driver_token = self._login("luis@example.com")
        self.other_token = self._login("ana@example.com")

    def tearDown(self):
        self.app_module.db.session.remove()
        self.app_module.db.drop_all()
        self.ctx.pop()
        os.environ.pop("DATABASE_URL", None)
        if "app" in sys.modules:
            del sys.modules["app"]

    def _login(self, email):
        response = self.client.post(
            "/api/auth/login",
            json={"email": email, "password": "Password!1"},
        )
        self.assertEqual(response.status_code, 200)
        return response.get_json()["access_token"]

    def _headers(self, token=None):
        return {"Authorization": f"Bearer {token or self.admin_token}"}

    def _create_payroll(self, **overrides):
        payload = {
            "userId": self.driver.id,
            "periodStart": "2024-05-01",
            "periodEnd": "2024-05-31",
            "baseSalary": "1400",
            "commissions": "350",
            "bonuses": "50",
            "deductions": "20",
            "taxWithholding": "100",
        }
        payload.update(overrides)
        return self.client.post("/api/payrolls", json=payload, headers=self._headers())

    def test_net_amount_is_derived(self):
        response = self._create_payroll()
        self.assertEqual(response.status_code, 201)
        data = response.get_json()
        self.assertEqual(data["netAmount"], "1680.00")
        self.assertEqual(data["status"], "pending")
        self.assertIsNone(data["paymentDate"])
        self.assertEqual(data["user"]["name"], "Luis")

    def test_paid_status_sets_payment_date(self):
        response = self._create_payroll(status="paid")
        data = response.get_json()
        self.assertEqual(data["status"], "paid")
        self.assertIsNotNone(data["paymentDate"])

        response = self.client.put(
            f"/api/payrolls/{data['id']}", json={"status": "pending"}, headers=self._headers()
        )
        self.assertIsNone(response.get_json()["paymentDate"])

    def test_update_recomputes_net(self):
        payroll = self._create_payroll().get_json()
        response = self.client.put(
            f"/api/payrolls/{payroll['id']}", json={"bonuses": "150"}, headers=self._headers()
        )
        self.assertEqual(response.get_json()["netAmount"], "1780.00")

    def test_invalid_period_and_negative_amounts_are_rejected(self):
        response = self._create_payroll(periodStart="2024-06-01", periodEnd="2024-05-01")
        self.assertEqual(response.status_code, 400)
        self.assertIn("periodEnd", response.get_json()["errors"])

        response = self._create_payroll(deductions="-5")
        self.assertEqual(response.status_code, 400)
        self.assertIn("deductions", response.get_json()["errors"])

    def test_drivers_cannot_create_payrolls(self):
        response = self.client.post(
            "/api/payrolls",
            json={"userId": self.driver.id, "periodStart": "2024-05-01", "periodEnd": "2024-05-31"},
            headers=self._headers(self.driver_token),
        )
        self.assertEqual(response.status_code, 403)

    def test_drivers_only_see_their_own_payrolls(self):
        own = self._create_payroll().get_json()
        other = self._create_payroll(userId=self.other_driver.id).get_json()

        rows = self.client.get("/api/payrolls", headers=self._headers(self.driver_token)).get_json()
        self.assertEqual([row["id"] for row in rows], [own["id"]])

        response = self.client.get(
            f"/api/payrolls/{other['id']}", headers=self._headers(self.driver_token)
        )
        self.assertEqual(response.status_code, 403)

        rows = self.client.get(
            f"/api/payrolls?userId={self.other_driver.id}", headers=self._headers()
        ).get_json()
        self.assertEqual([row["id"] for row in rows], [other["id"]])

    def test_conductor_lookup(self):
        self._create_payroll()

        response = self.client.get(
            "/api/payrolls/conductor?startDate=2024-05-01&endDate=2024-05-31",
            headers=self._headers(self.driver_token),
        )
        data = response.get_json()
        self.assertTrue(data["found"])
        self.assertEqual(data["payroll"]["baseSalary"], "1400.00")

        response = self.client.get(
            "/api/payrolls/conductor?startDate=2024-06-01&endDate=2024-06-30",
            headers=self._headers(self.driver_token),
        )
        data = response.get_json()
        self.assertFalse(data["found"])
        self.assertEqual(data["defaultSalary"], "1400.00")

        response = self.client.get(
            "/api/payrolls/conductor", headers=self._headers(self.driver_token)
        )
        self.assertEqual(response.status_code, 400)

    def test_default_salary_follows_configuration(self):
        response = self.client.post(
            "/api/configuration",
            json={"key": "driver_base_salary", "value": "1500"},
            headers=self._headers(),
        )
        self.assertEqual(response.status_code, 200)

        data = self.client.get(
            "/api/payrolls/conductor?startDate=2024-06-01&endDate=2024-06-30",
            headers=self._headers(self.driver_token),
        ).get_json()
        self.assertEqual(data["defaultSalary"], "1500.00")

    def test_delete_payroll(self):
        payroll = self._create_payroll().get_json()
        response = self.client.delete(f"/api/payrolls/{payroll['id']}", headers=self._headers())
        self.assertEqual(response.status_code, 200)
        response = self.client.get(f"/api/payrolls/{payroll['id']}", headers=self._headers())
        self.assertEqual(response.status_code, 404)


class ConfigurationApiTestCase(unittest.TestCase):
    def setUp(self):
        os.environ["DATABASE_URL"] = "sqlite:///:memory:"
        if "app" in sys.modules:
            self.app_module = importlib.reload(sys.modules["app"])
        else:
            self.app_module = importlib.import_module("app")

        self.app = self.app_module.create_app()
        self.app.testing = True
        self.ctx = self.app.app_context()
        self.ctx.push()
        self.app_module.db.create_all()

        self.client = self.app.test_client()
        User = self.app_module.User
        RoleEnum = self.app_module.RoleEnum

        admin = User(name="Admin", email="admin@example.com", role=RoleEnum.admin)
        admin.set_password("Password!1")
        driver = User(name="Luis", email="luis@example.com", role=RoleEnum.driver)
        driver.set_password("Password!1")
        self.app_module.db.session.add_all([admin, driver])
        self.app_module.db.session.commit()

        self.admin_headers = self._auth("admin@example.com")
        self.driver_headers = self._auth("luis@example.com")

    def tearDown(self):
        self.app_module.db.session.remove()
        self.app_module.db.drop_all()
        self.ctx.pop()
        os.environ.pop("DATABASE_URL", None)
        if "app" in sys.modules:
            del sys.modules["app"]

    def _auth(self, email):
        response = self.client.post(
            "/api/auth/login",
            json={"email": email, "password": "Password!1"},
        )
        return {"Authorization": f"Bearer {response.get_json()['access_token']}"}

    def test_upsert_and_filter_by_key(self):
        response = self.client.post(
            "/api/configuration",
            json={"key": "driver_commission_rate", "value": "40"},
            headers=self.admin_headers,
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["value"], "40")
        self.assertEqual(response.get_json()["description"], "Porcentaje de comisión del conductor")

        self.client.post(
            "/api/configuration",
            json={"key": "driver_commission_rate", "value": "45"},
            headers=self.admin_headers,
        )
        self.client.post(
            "/api/configuration",
            json={"key": "company_name", "value": "Taxi Luis"},
            headers=self.admin_headers,
        )

        rows = self.client.get("/api/configuration", headers=self.admin_headers).get_json()
        self.assertEqual(len(rows), 2)

        rows = self.client.get(
            "/api/configuration?key=driver_commission_rate", headers=self.admin_headers
        ).get_json()
        self.assertEqual([row["value"] for row in rows], ["45"])

    def test_numeric_settings_are_validated(self):
        response = self.client.post(
            "/api/configuration",
            json={"key": "driver_commission_rate", "value": "150"},
            headers=self.admin_headers,
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("driver_commission_rate", response.get_json()["errors"])

        response = self.client.post(
            "/api/configuration",
            json={"key": "driver_base_salary", "value": "-1"},
            headers=self.admin_headers,
        )
        self.assertEqual(response.status_code, 400)

        response = self.client.post(
            "/api/configuration",
            json={"key": "driver_base_salary", "value": "mucho"},
            headers=self.admin_headers,
        )
        self.assertEqual(response.status_code, 400)

    def test_drivers_cannot_read_configuration(self):
        response = self.client.get("/api/configuration", headers=self.driver_headers)
        self.assertEqual(response.status_code, 403)


if __name__ == "__main__":
    unittest.main()
