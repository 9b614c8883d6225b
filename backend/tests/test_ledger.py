import unittest
from datetime import date
from decimal import Decimal
from unittest import mock

from sqlalchemy import insert, select
from sqlalchemy.exc import SQLAlchemyError

from backend import ledger
from backend.database import Database, accounts, transactions, users
from backend.ledger import (
    MAX_MONEY,
    adjust_balance,
    apply_amount,
    bounded_money,
    ledger_balance,
    reconcile_account,
    record_transaction,
    remove_transaction,
    reverse_amount,
    to_money,
    transaction_total,
)
from backend.messages import ApiError


class MoneyHelperTests(unittest.TestCase):
    def test_to_money_rounds_half_up_to_cents(self) -> None:
        self.assertEqual(to_money("10.005"), Decimal("10.01"))
        self.assertEqual(to_money(3), Decimal("3.00"))
        self.assertEqual(to_money(0.1), Decimal("0.10"))

    def test_apply_and_reverse_are_inverse(self) -> None:
        balance = Decimal("1000")
        applied = apply_amount(balance, Decimal("-50.25"))
        self.assertEqual(applied, Decimal("949.75"))
        self.assertEqual(reverse_amount(applied, Decimal("-50.25")), Decimal("1000.00"))

    def test_to_money_rejects_values_outside_the_context(self) -> None:
        with self.assertRaises(ValueError):
            to_money("1e30")
        with self.assertRaises(ValueError):
            to_money("not a number")

    def test_bounded_money(self) -> None:
        self.assertEqual(bounded_money("-999999999999.99"), Decimal("-999999999999.99"))
        with self.assertRaises(ValueError):
            bounded_money("1000000000000.00")
        with self.assertRaises(ValueError):
            bounded_money("-99999999999999.99")

    def test_ledger_balance_folds_amounts(self) -> None:
        self.assertEqual(
            ledger_balance(Decimal("100"), [Decimal("-20"), Decimal("5.5"), Decimal("-0.5")]),
            Decimal("85.00"),
        )
        self.assertEqual(ledger_balance(Decimal("42"), []), Decimal("42.00"))


class LedgerStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.database = Database("sqlite://")
        self.database.connect()
        with self.database.begin() as conn:
            self.user_id = self._add_user(conn, "owner@example.com")
            self.other_user_id = self._add_user(conn, "other@example.com")
            self.account_id = conn.execute(
                insert(accounts)
                .values(
                    user_id=self.user_id,
                    name="Everyday",
                    type="checking",
                    number="1234",
                    institution="First Bank",
                    balance=Decimal("1000"),
                    opening_balance=Decimal("1000"),
                )
                .returning(accounts.c.id)
            ).scalar_one()

    def tearDown(self) -> None:
        self.database.disconnect()

    @staticmethod
    def _add_user(conn, email: str) -> int:
        return conn.execute(
            insert(users)
            .values(first_name="Test", last_name="User", email=email, hashed_password="x")
            .returning(users.c.id)
        ).scalar_one()

    def _balance(self) -> Decimal:
        with self.database.begin() as conn:
            return to_money(
                conn.execute(select(accounts.c.balance).where(accounts.c.id == self.account_id)).scalar_one()
            )

    def _record(self, conn, amount: str, user_id=None):
        return record_transaction(
            conn,
            user_id or self.user_id,
            self.account_id,
            amount=Decimal(amount),
            category="Living",
            type="expense",
            date=date(2024, 5, 10),
        )

    def _raw_balance(self) -> int:
        with self.database.begin() as conn:
            return conn.exec_driver_sql(
                "SELECT balance FROM accounts WHERE id = ?", (self.account_id,)
            ).scalar_one()

    def test_balance_is_stored_as_exact_cents(self) -> None:
        with self.database.begin() as conn:
            conn.execute(
                accounts.update()
                .where(accounts.c.id == self.account_id)
                .values(balance=Decimal("999999999.99"), opening_balance=Decimal("999999999.99"))
            )
        for _ in range(300):
            with self.database.begin() as conn:
                self._record(conn, "0.07")
                self._record(conn, "-0.03")

        self.assertEqual(self._raw_balance(), 99999999999 + 300 * 4)
        self.assertEqual(self._balance(), Decimal("1000000011.99"))
        with self.database.begin() as conn:
            self.assertTrue(reconcile_account(conn, self.user_id, self.account_id).balanced)

    def test_balance_may_not_leave_the_money_range(self) -> None:
        with self.database.begin() as conn:
            conn.execute(
                accounts.update().where(accounts.c.id == self.account_id).values(balance=MAX_MONEY)
            )

        with self.assertRaises(ApiError) as ctx:
            with self.database.begin() as conn:
                self._record(conn, "0.01")
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(self._balance(), MAX_MONEY)
        with self.database.begin() as conn:
            self.assertEqual(conn.execute(select(transactions.c.id)).all(), [])

    def test_record_then_remove_restores_balance(self) -> None:
        with self.database.begin() as conn:
            transaction_id, balance = self._record(conn, "-50.25")
        self.assertEqual(balance, Decimal("949.75"))
        self.assertEqual(self._balance(), Decimal("949.75"))

        with self.database.begin() as conn:
            balance = remove_transaction(conn, self.user_id, self.account_id, transaction_id)
        self.assertEqual(balance, Decimal("1000.00"))
        self.assertEqual(self._balance(), Decimal("1000.00"))

    def test_failed_insert_rolls_back_balance(self) -> None:
        with mock.patch.object(ledger, "_insert_transaction", side_effect=SQLAlchemyError("boom")):
            with self.assertRaises(SQLAlchemyError):
                with self.database.begin() as conn:
                    self._record(conn, "-75")

        self.assertEqual(self._balance(), Decimal("1000.00"))
        with self.database.begin() as conn:
            rows = conn.execute(select(transactions.c.id)).all()
        self.assertEqual(rows, [])

    def test_failed_delete_keeps_transaction_and_balance(self) -> None:
        with self.database.begin() as conn:
            transaction_id, _ = self._record(conn, "-30")

        with mock.patch.object(ledger, "_delete_transaction", side_effect=SQLAlchemyError("boom")):
            with self.assertRaises(SQLAlchemyError):
                with self.database.begin() as conn:
                    remove_transaction(conn, self.user_id, self.account_id, transaction_id)

        self.assertEqual(self._balance(), Decimal("970.00"))
        with self.database.begin() as conn:
            remaining = conn.execute(select(transactions.c.id)).scalars().all()
        self.assertEqual(remaining, [transaction_id])

    def test_foreign_account_is_not_found_and_untouched(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            with self.database.begin() as conn:
                self._record(conn, "-10", user_id=self.other_user_id)
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(self._balance(), Decimal("1000.00"))

    def test_remove_unknown_transaction_is_not_found(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            with self.database.begin() as conn:
                remove_transaction(conn, self.user_id, self.account_id, 999)
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(ctx.exception.message, "transaction not found")

    def test_adjust_balance_ignores_other_owner(self) -> None:
        with self.database.begin() as conn:
            self.assertIsNone(adjust_balance(conn, self.other_user_id, self.account_id, Decimal("5")))
            self.assertEqual(
                adjust_balance(conn, self.user_id, self.account_id, Decimal("5")),
                Decimal("1005.00"),
            )

    def test_reconcile_detects_drift(self) -> None:
        with self.database.begin() as conn:
            self._record(conn, "-100")
            self._record(conn, "40")
            report = reconcile_account(conn, self.user_id, self.account_id)
            self.assertEqual(transaction_total(conn, self.user_id, self.account_id), Decimal("-60.00"))
        self.assertTrue(report.balanced)
        self.assertEqual(report.ledger_balance, Decimal("940.00"))
        self.assertEqual(report.transaction_count, 2)

        with self.database.begin() as conn:
            conn.execute(
                accounts.update().where(accounts.c.id == self.account_id).values(balance=Decimal("900"))
            )
            report = reconcile_account(conn, self.user_id, self.account_id)
        self.assertFalse(report.balanced)
        self.assertEqual(report.drift, Decimal("-40.00"))


if __name__ == "__main__":
    unittest.main()
