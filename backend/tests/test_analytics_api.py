import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy import insert

from backend.database import transactions
from backend.tests.support import ApiTestCase


class CategoryAnalyticsApiTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.headers = self.signed_in_headers()
        self.checking = self.create_account(self.headers, number="1")
        self.savings = self.create_account(self.headers, number="2")

    def analytics(self, **body):
        return self.client.post("/analytics/categories", json=body, headers=self.headers)

    def test_all_accounts(self) -> None:
        self.add_transaction(self.headers, self.checking, -60, category="Living")
        self.add_transaction(self.headers, self.savings, -40, category="Gambling")
        self.add_transaction(self.headers, self.savings, 1000, category="Savings")

        response = self.analytics(account_id="all")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["total_spending"], "100.00")
        categories = {item["name"]: item for item in body["categories"]}
        self.assertEqual(list(categories), ["Savings", "Living", "Hobbies", "Gambling"])
        self.assertEqual(categories["Living"]["value"], "60.00")
        self.assertEqual(categories["Living"]["percentage"], "60.0")
        self.assertEqual(categories["Gambling"]["percentage"], "40.0")
        self.assertEqual(categories["Savings"]["value"], "0.00")

    def test_body_is_optional(self) -> None:
        self.add_transaction(self.headers, self.checking, -10, category="Hobbies")

        response = self.client.post("/analytics/categories", headers=self.headers)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["total_spending"], "10.00")

    def test_single_account(self) -> None:
        self.add_transaction(self.headers, self.checking, -60, category="Living")
        self.add_transaction(self.headers, self.savings, -40, category="Gambling")

        body = self.analytics(account_id=self.savings).json()
        self.assertEqual(body["total_spending"], "40.00")

        by_string = self.analytics(account_id=str(self.checking)).json()
        self.assertEqual(by_string["total_spending"], "60.00")

    def test_no_expenses(self) -> None:
        body = self.analytics().json()

        self.assertEqual(body["total_spending"], "0.00")
        self.assertTrue(all(item["percentage"] == "0.0" for item in body["categories"]))

    def test_legacy_rows_with_unknown_category_are_skipped(self) -> None:
        self.add_transaction(self.headers, self.checking, -30, category="Living")
        with self.database.begin() as conn:
            conn.execute(
                insert(transactions).values(
                    user_id=1,
                    account_id=self.checking,
                    amount=Decimal("-70"),
                    category="Travel",
                    type="expense",
                    date=date(2024, 5, 1),
                )
            )

        body = self.analytics().json()
        self.assertEqual(body["total_spending"], "30.00")

    def test_bad_account_filters(self) -> None:
        self.assertEqual(self.analytics(account_id="checking").status_code, 400)
        self.assertEqual(self.analytics(account_id=999).status_code, 404)
        self.assertEqual(self.analytics(scope="all").status_code, 400)

    def test_foreign_account_is_not_found(self) -> None:
        intruder = self.signed_in_headers("intruder@example.com")
        self.add_transaction(self.headers, self.checking, -60, category="Living")

        response = self.client.post(
            "/analytics/categories", json={"account_id": self.checking}, headers=intruder
        )
        self.assertEqual(response.status_code, 404)
        everything = self.client.post("/analytics/categories", json={}, headers=intruder).json()
        self.assertEqual(everything["total_spending"], "0.00")

    def test_requires_authentication(self) -> None:
        self.assertEqual(self.client.post("/analytics/categories", json={}).status_code, 401)


if __name__ == "__main__":
    unittest.main()
