from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Optional

from backend.ledger import ZERO, LedgerEntry, to_money


@dataclass(frozen=True)
class BudgetRule:
    category: str
    limit: Decimal
    month: str


@dataclass(frozen=True)
class BudgetEvaluation:
    spent: Decimal
    remaining: Decimal
    status: str
    start_date: date
    end_date: date


def normalize_month(value: str) -> str:
    try:
        parsed = datetime.strptime(value.strip(), "%Y-%m")
    except ValueError as exc:
        raise ValueError("Invalid month format. Use YYYY-MM.") from exc
    return parsed.strftime("%Y-%m")


def month_range(month: str) -> tuple[date, date]:
    normalized = normalize_month(month)
    year, month_number = (int(part) for part in normalized.split("-"))
    last_day = calendar.monthrange(year, month_number)[1]
    return date(year, month_number, 1), date(year, month_number, last_day)


def evaluate_budget(entries: Iterable[LedgerEntry], rule: BudgetRule) -> BudgetEvaluation:
    if rule.limit <= ZERO:
        raise ValueError("rule.limit must be greater than zero.")
    start_date, end_date = month_range(rule.month)

    filtered = [entry for entry in entries if start_date <= entry.date <= end_date]
    spent = _sum_expenses(filtered, category=rule.category)
    limit = to_money(rule.limit)
    return BudgetEvaluation(
        spent=spent,
        remaining=to_money(limit - spent),
        status="ok" if spent <= limit else "over",
        start_date=start_date,
        end_date=end_date,
    )


def _sum_expenses(
    entries: Iterable[LedgerEntry],
    *,
    category: Optional[str] = None,
) -> Decimal:
    total = ZERO
    for entry in entries:
        amount = to_money(entry.amount)
        if amount >= ZERO:
            continue
        if category is not None and entry.category != category:
            continue
        total += abs(amount)
    return to_money(total)
