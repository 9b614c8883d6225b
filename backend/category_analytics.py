from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from backend.ledger import ZERO, LedgerEntry, to_money

logger = logging.getLogger(__name__)

CATEGORIES = ("Savings", "Living", "Hobbies", "Gambling")

_CANONICAL = {name.lower(): name for name in CATEGORIES}
HUNDRED = Decimal("100")
TENTH = Decimal("0.1")


@dataclass(frozen=True)
class CategoryTotal:
    name: str
    value: Decimal
    percentage: Decimal


@dataclass(frozen=True)
class CategorySummary:
    categories: list[CategoryTotal]
    total_spending: Decimal


def normalize_category(value: str) -> str:
    """Map a category name onto its canonical spelling, case-insensitively."""
    try:
        return _CANONICAL[value.strip().lower()]
    except KeyError as exc:
        raise ValueError(f"Category must be one of: {', '.join(CATEGORIES)}.") from exc


def summarize_categories(entries: Iterable[LedgerEntry]) -> CategorySummary:
    """Bucket expenses (negative amounts) by category.

    Entries whose category is not one of ``CATEGORIES`` never reach a bucket
    and so do not count toward ``total_spending``.
    """
    totals = {name: ZERO for name in CATEGORIES}
    for entry in entries:
        amount = to_money(entry.amount)
        if amount >= ZERO:
            continue
        if entry.category not in totals:
            logger.debug("Skipping expense with unrecognized category %r", entry.category)
            continue
        totals[entry.category] += abs(amount)

    total_spending = to_money(sum(totals.values(), ZERO))
    categories = [
        CategoryTotal(
            name=name,
            value=to_money(value),
            percentage=_percentage(value, total_spending),
        )
        for name, value in totals.items()
    ]
    return CategorySummary(categories=categories, total_spending=total_spending)


def _percentage(value: Decimal, total: Decimal) -> Decimal:
    if total <= ZERO:
        return Decimal("0.0")
    return (value / total * HUNDRED).quantize(TENTH, rounding=ROUND_HALF_UP)
