import importlib
import os
import sys
import unittest
from datetime import date


class ExpensesApiTestCase(unittest.TestCase):
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

        self.admin_token = self._login("admin@example.com")
        self.driver_token = self._login("luis@example.com")

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

    def _create(self, **payload):
        payload.setdefault("date", "2024-05-02")
        payload.setdefault("description", "Gasto")
        return self.client.post("/api/expenses", json=payload, headers=self._headers())

    def test_total_with_vat_is_split(self):
        response = self._create(category="Reparaciones", totalWithVat="121")
        self.assertEqual(response.status_code, 201)
        data = response.get_json()
        self.assertEqual(data["amount"], "100.00")
        self.assertEqual(data["taxAmount"], "21.00")
        self.assertEqual(data["totalAmount"], "121.00")
        self.assertEqual(data["status"], "pending")
        self.assertFalse(data["isRecurring"])

    def test_plain_amount_without_tax(self):
        response = self._create(category="Reparaciones", amount="80")
        data = response.get_json()
        self.assertEqual(data["taxAmount"], "0.00")
        self.assertEqual(data["totalAmount"], "80.00")

    def test_missing_amount_is_rejected(self):
        response = self._create(category="Reparaciones")
        self.assertEqual(response.status_code, 400)
        self.assertIn("amount", response.get_json()["errors"])

    def test_recurring_expense_needs_frequency_and_due_date(self):
        response = self._create(category="Seguros", amount="90", isRecurring=True)
        self.assertEqual(response.status_code, 400)
        self.assertIn("frequency", response.get_json()["errors"])

        response = self._create(
            category="Seguros", amount="90", isRecurring=True, frequency="monthly"
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("next_due_date", response.get_json()["errors"])

    def test_non_recurring_expense_drops_schedule(self):
        response = self._create(
            category="Reparaciones", amount="50", frequency="monthly", nextDueDate="2024-06-01"
        )
        data = response.get_json()
        self.assertIsNone(data["frequency"])
        self.assertIsNone(data["nextDueDate"])

    def test_drivers_cannot_manage_expenses(self):
        response = self.client.get("/api/expenses", headers=self._headers(self.driver_token))
        self.assertEqual(response.status_code, 403)
        response = self.client.post(
            "/api/expenses",
            json={"date": "2024-05-01", "category": "X", "description": "Y", "amount": 1},
            headers=self._headers(self.driver_token),
        )
        self.assertEqual(response.status_code, 403)

    def test_list_filters_by_type(self):
        self._create(category="Seguros", amount="90", description="Seguro")
        self._create(category="Reparaciones", amount="40", description="Taller")
        self._create(category="Combustible", amount="60", description="Gasolina")

        fixed = self.client.get("/api/expenses?type=fixed", headers=self._headers()).get_json()
        variable = self.client.get("/api/expenses?type=variable", headers=self._headers()).get_json()
        everything = self.client.get("/api/expenses", headers=self._headers()).get_json()

        self.assertEqual([row["description"] for row in fixed], ["Seguro"])
        self.assertEqual([row["description"] for row in variable], ["Taller"])
        self.assertEqual(len(everything), 3)

    def test_unified_breakdown(self):
        self._create(category="Seguros", amount="90")
        self._create(category="Gestoría", amount="60")
        self._create(category="Alquiler", amount="300", isRecurring=True, frequency="monthly",
                     nextDueDate="2024-06-01")
        self._create(category="Reparaciones", amount="40")
        self._create(category="Combustible", amount="55")

        response = self.client.get(
            "/api/expenses/unified?from=2024-05-01&to=2024-05-31", headers=self._headers()
        )
        self.assertEqual(response.status_code, 200)
        data = response.get_json()
        self.assertEqual(data["monthlyFixedExpenses"]["seguros"], "90.00")
        self.assertEqual(data["monthlyFixedExpenses"]["gestoria"], "60.00")
        self.assertEqual(data["monthlyFixedExpenses"]["otros"], "300.00")
        self.assertEqual(data["fixedTotal"], "450.00")
        self.assertEqual(data["variableTotal"], "40.00")
        self.assertEqual(len(data["variable"]), 1)

    def test_generate_recurring_creates_one_copy_per_cycle(self):
        template = self._create(
            date="2024-04-03",
            category="Seguros",
            description="Seguro coche",
            amount="90",
            taxAmount="0",
            isRecurring=True,
            frequency="monthly",
            nextDueDate="2024-05-03",
        ).get_json()

        response = self.client.post(
            "/api/expenses/generate-recurring?today=2024-04-28", headers=self._headers()
        )
        self.assertEqual(response.status_code, 200)
        data = response.get_json()
        self.assertEqual(data["generated"], 1)
        copy = data["expenses"][0]
        self.assertEqual(copy["description"], "Seguro coche - mayo 2024")
        self.assertEqual(copy["date"], "2024-05-03")
        self.assertFalse(copy["isRecurring"])
        self.assertEqual(copy["sourceExpenseId"], template["id"])
        self.assertEqual(copy["status"], "approved")
        self.assertEqual(
            copy["notes"], f"Generado automáticamente desde gasto recurrente ID: {template['id']}"
        )

        refreshed = self.client.get(
            f"/api/expenses/{template['id']}", headers=self._headers()
        ).get_json()
        self.assertEqual(refreshed["nextDueDate"], "2024-06-03")

        again = self.client.post(
            "/api/expenses/generate-recurring?today=2024-04-28", headers=self._headers()
        ).get_json()
        self.assertEqual(again["generated"], 0)

    def test_pending_recurring_is_a_dry_run(self):
        template = self._create(
            date="2024-04-03",
            category="Seguros",
            description="Seguro coche",
            amount="90",
            isRecurring=True,
            frequency="monthly",
            nextDueDate="2024-05-03",
        ).get_json()
        self._create(
            date="2024-04-20",
            category="Gestoría",
            description="Gestor",
            amount="60",
            isRecurring=True,
            frequency="quarterly",
            nextDueDate="2024-05-20",
        )

        response = self.client.get(
            "/api/expenses/generate-recurring?today=2024-05-02", headers=self._headers()
        )
        self.assertEqual(response.status_code, 200)
        data = response.get_json()
        self.assertEqual(data["pending"], 1)
        self.assertEqual([row["id"] for row in data["expenses"]], [template["id"]])

        self.assertEqual(self.app_module.Expense.query.count(), 2)
        refreshed = self.client.get(
            f"/api/expenses/{template['id']}", headers=self._headers()
        ).get_json()
        self.assertEqual(refreshed["nextDueDate"], "2024-05-03")

        response = self.client.get(
            "/api/expenses/generate-recurring", headers=self._headers(self.driver_token)
        )
        self.assertEqual(response.status_code, 403)

    def test_generate_recurring_function_skips_existing_copy(self):
        self._create(
            date="2024-04-10",
            category="Gestoría",
            description="Gestor",
            amount="60",
            isRecurring=True,
            frequency="quarterly",
            nextDueDate="2024-05-10",
        )
        # Already booked by hand this month.
        self._create(date="2024-05-11", category="Gestoría", description="Gestor - mayo 2024", amount="60")

        created = self.app_module.expenses.generate_recurring_expenses(date(2024, 5, 5))
        self.assertEqual(created, [])
        template = self.app_module.Expense.query.filter_by(is_recurring=True).one()
        self.assertEqual(template.next_due_date, date(2024, 8, 10))

    def test_payment_toggle(self):
        expense = self._create(category="Seguros", amount="90").get_json()

        response = self.client.post(
            f"/api/expenses/{expense['id']}/payment",
            json={"isPaid": True, "paymentDate": "2024-05-10"},
            headers=self._headers(),
        )
        data = response.get_json()
        self.assertEqual(data["status"], "completed")
        self.assertEqual(data["paymentDate"], "2024-05-10")

        response = self.client.put(
            f"/api/expenses/{expense['id']}/payment",
            json={"isPaid": False},
            headers=self._headers(),
        )
        data = response.get_json()
        self.assertEqual(data["status"], "pending")
        self.assertIsNone(data["paymentDate"])

    def test_update_and_delete(self):
        expense = self._create(category="Reparaciones", amount="40").get_json()

        response = self.client.put(
            f"/api/expenses/{expense['id']}",
            json={"totalWithVat": "60.50"},
            headers=self._headers(),
        )
        data = response.get_json()
        self.assertEqual(data["amount"], "50.00")
        self.assertEqual(data["taxAmount"], "10.50")

        response = self.client.delete(f"/api/expenses/{expense['id']}", headers=self._headers())
        self.assertEqual(response.status_code, 200)
        response = self.client.get(f"/api/expenses/{expense['id']}", headers=self._headers())
        self.assertEqual(response.status_code, 404)


if __name__ == "__main__":
    unittest.main()
