"""
Account balance protocol.

Creating a transaction adds its signed amount to the parent account's stored
balance; deleting it subtracts the same amount. Both writes of each operation
run on one connection inside the caller's database transaction, so a failure
in either rolls the pair back together. The balance is adjusted with a single
``UPDATE ... SET balance = balance + :delta`` statement rather than a read
followed by a write, so overlapping requests on the same account cannot lose
each other's updates. Money columns hold integer cents (see
``database.Money``), so that statement is exact integer arithmetic on every
backend, SQLite included. Amounts and resulting balances are capped at
``MAX_MONEY``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Optional

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Connection

from backend.database import accounts, transactions
from backend.messages import Messages, bad_request, not_found

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CENT = Decimal("0.01")
# largest magnitude a balance, amount or limit may take
MAX_MONEY = Decimal("999999999999.99")


@dataclass(frozen=True)
class LedgerEntry:
    amount: Decimal
    date: date
    category: Optional[str] = None
    account_id: Optional[int] = None


@dataclass(frozen=True)
class Reconciliation:
    stored_balance: Decimal
    ledger_balance: Decimal
    transaction_count: int

    @property
    def drift(self) -> Decimal:
        return to_money(self.stored_balance - self.ledger_balance)

    @property
    def balanced(self) -> bool:
        return self.drift == ZERO


def to_money(value: Decimal | int | float | str) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}.") from exc


def bounded_money(value: Decimal | int | float | str) -> Decimal:
    """Like to_money, but rejects values beyond MAX_MONEY with a ValueError."""
    amount = to_money(value)
    if abs(amount) > MAX_MONEY:
        raise ValueError(f"Amount must be between -{MAX_MONEY} and {MAX_MONEY}.")
    return amount


def apply_amount(balance: Decimal, amount: Decimal) -> Decimal:
    return to_money(to_money(balance) + to_money(amount))


def reverse_amount(balance: Decimal, amount: Decimal) -> Decimal:
    return to_money(to_money(balance) - to_money(amount))


def ledger_balance(opening_balance: Decimal, amounts: Iterable[Decimal]) -> Decimal:
    total = to_money(opening_balance)
    for amount in amounts:
        total = apply_amount(total, amount)
    return total


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def adjust_balance(conn: Connection, user_id: int, account_id: int, delta: Decimal) -> Decimal | None:
    """Add ``delta`` to the account balance in the store. Returns the new balance, or None if not owned."""
    stmt = (
        update(accounts)
        .where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        .values(balance=accounts.c.balance + to_money(delta), updated_at=utcnow())
        .returning(accounts.c.balance)
    )
    new_balance = conn.execute(stmt).scalar_one_or_none()
    if new_balance is None:
        return None
    new_balance = to_money(new_balance)
    if abs(new_balance) > MAX_MONEY:
        # raised inside the caller's transaction, so the update is rolled back
        raise bad_request(f"Resulting balance must stay between -{MAX_MONEY} and {MAX_MONEY}.")
    return new_balance


def _insert_transaction(conn: Connection, values: dict) -> int:
    return conn.execute(insert(transactions).values(**values).returning(transactions.c.id)).scalar_one()


def _delete_transaction(conn: Connection, user_id: int, account_id: int, transaction_id: int) -> int:
    result = conn.execute(
        delete(transactions).where(
            transactions.c.id == transaction_id,
            transactions.c.account_id == account_id,
            transactions.c.user_id == user_id,
        )
    )
    return result.rowcount


def record_transaction(
    conn: Connection,
    user_id: int,
    account_id: int,
    *,
    amount: Decimal,
    category: str,
    type: str,
    date: date,
    name: str | None = None,
) -> tuple[int, Decimal]:
    """Apply ``amount`` to the account and insert the transaction row.

    Raises a 404 ``ApiError`` before writing anything when the account does not
    belong to ``user_id``. Returns the new transaction id and resulting balance.
    """
    amount = to_money(amount)
    new_balance = adjust_balance(conn, user_id, account_id, amount)
    if new_balance is None:
        raise not_found(Messages.ACCOUNT + Messages.NOT_FOUND)

    transaction_id = _insert_transaction(
        conn,
        {
            "user_id": user_id,
            "account_id": account_id,
            "name": name,
            "amount": amount,
            "category": category,
            "type": type,
            "date": date,
        },
    )
    logger.info(
        "Recorded transaction %s on account %s: %s (balance now %s)",
        transaction_id,
        account_id,
        amount,
        new_balance,
    )
    return transaction_id, new_balance


def remove_transaction(conn: Connection, user_id: int, account_id: int, transaction_id: int) -> Decimal:
    """Reverse the transaction's amount on its account and delete it. Returns the new balance."""
    account_exists = conn.execute(
        select(accounts.c.id).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
    ).first()
    if not account_exists:
        raise not_found(Messages.ACCOUNT + Messages.NOT_FOUND)

    amount = conn.execute(
        select(transactions.c.amount).where(
            transactions.c.id == transaction_id,
            transactions.c.account_id == account_id,
            transactions.c.user_id == user_id,
        )
    ).scalar_one_or_none()
    if amount is None:
        raise not_found(Messages.TRANSACTION + Messages.NOT_FOUND)

    new_balance = adjust_balance(conn, user_id, account_id, -to_money(amount))
    if new_balance is None:
        raise not_found(Messages.ACCOUNT + Messages.NOT_FOUND)
    if _delete_transaction(conn, user_id, account_id, transaction_id) == 0:
        raise not_found(Messages.TRANSACTION + Messages.NOT_FOUND)

    logger.info(
        "Removed transaction %s from account %s: reversed %s (balance now %s)",
        transaction_id,
        account_id,
        amount,
        new_balance,
    )
    return new_balance


def reconcile_account(conn: Connection, user_id: int, account_id: int) -> Reconciliation:
    row = conn.execute(
        select(accounts.c.balance, accounts.c.opening_balance).where(
            accounts.c.id == account_id, accounts.c.user_id == user_id
        )
    ).mappings().first()
    if not row:
        raise not_found(Messages.ACCOUNT + Messages.NOT_FOUND)

    amounts = conn.execute(
        select(transactions.c.amount).where(
            transactions.c.account_id == account_id, transactions.c.user_id == user_id
        )
    ).scalars().all()
    return Reconciliation(
        stored_balance=to_money(row["balance"]),
        ledger_balance=ledger_balance(row["opening_balance"], amounts),
        transaction_count=len(amounts),
    )


def transaction_total(conn: Connection, user_id: int, account_id: int) -> Decimal:
    total = conn.execute(
        select(func.coalesce(func.sum(transactions.c.amount), 0)).where(
            transactions.c.account_id == account_id, transactions.c.user_id == user_id
        )
    ).scalar_one()
    return to_money(total)
