"""Deterministic execution of parsed search filters against a user's ledger.

Nothing in this module talks to the model. Given the same filters and the
same ledger snapshot, every function returns the same result.

Money is summed as Decimal built from the string form of each amount, and
only converted back to float (quantized to cents) when a result object is
built. Percentages are left unrounded here; rounding for display happens in
the response assembler.
"""

import logging
from collections import defaultdict
from collections.abc import Iterable
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal, Protocol

from finquery.config import settings
from finquery.errors import InvalidFilters
from finquery.models import (
    AmountFilter,
    BreakdownBucket,
    ComparisonResult,
    DateRange,
    ExecutionResult,
    ParsedFilters,
    PeriodTotals,
    SummaryResult,
    Transaction,
    TransactionsResult,
    check_filter_invariants,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
ZERO = Decimal("0")


class LedgerAccess(Protocol):
    """Read-only access to one user's transactions."""

    def fetch_transactions(
        self, start_date: date | None = None, end_date: date | None = None
    ) -> list[Transaction]: ...


def _money(value: float) -> Decimal:
    return Decimal(str(value))


def _magnitude(txn: Transaction) -> Decimal:
    """Size of a transaction irrespective of its sign."""
    return abs(_money(txn.amount))


def _to_float(value: Decimal) -> float:
    return float(value.quantize(CENTS, rounding=ROUND_HALF_UP))


# ==================== FILTERING PIPELINE ====================


def matches_amount(txn: Transaction, amount: AmountFilter) -> bool:
    """Apply an amount predicate to the magnitude of a transaction."""
    size = _magnitude(txn)
    value = _money(amount.value)

    if amount.operator == "gt":
        return size > value
    if amount.operator == "gte":
        return size >= value
    if amount.operator == "lt":
        return size < value
    if amount.operator == "lte":
        return size <= value
    if amount.operator == "eq":
        return size == value
    if amount.operator == "between":
        return value <= size <= _money(amount.value2)
    raise InvalidFilters(f"unknown amount operator: {amount.operator!r}")


def matches_merchant(txn: Transaction, merchant: str) -> bool:
    needle = merchant.lower()
    return needle in txn.name.lower() or (txn.merchant_name is not None and needle in txn.merchant_name.lower())


def matches_category(txn: Transaction, categories: list[str]) -> bool:
    if not txn.category:
        return False
    category = txn.category.lower()
    return any(wanted in category for wanted in categories)


def filter_transactions(
    transactions: Iterable[Transaction],
    filters: ParsedFilters,
    period: DateRange | None,
) -> list[Transaction]:
    """
    Run the filtering pipeline over a set of transactions.

    Stages run in order and are skipped when their filter is absent:
    date range -> amount -> merchant -> category -> transaction type.

    Args:
        transactions: Candidate transactions (not modified)
        filters: Parsed filters supplying the non-date stages
        period: Date range to clip to, or None for all time

    Returns:
        Transactions passing every stage, in input order
    """
    result = list(transactions)

    if period is not None:
        result = [txn for txn in result if period.start <= txn.date <= period.end]

    if filters.amount is not None:
        result = [txn for txn in result if matches_amount(txn, filters.amount)]

    merchant = (filters.merchant or "").strip()
    if merchant:
        result = [txn for txn in result if matches_merchant(txn, merchant)]

    categories = [c.strip().lower() for c in filters.category or [] if c and c.strip()]
    if categories:
        result = [txn for txn in result if matches_category(txn, categories)]

    if filters.transaction_type == "expense":
        result = [txn for txn in result if txn.is_expense]
    elif filters.transaction_type == "income":
        result = [txn for txn in result if txn.counts_as_income]

    return result


def _load(ledger: LedgerAccess, filters: ParsedFilters, period: DateRange | None) -> list[Transaction]:
    if period is None:
        candidates = ledger.fetch_transactions()
    else:
        candidates = ledger.fetch_transactions(start_date=period.start, end_date=period.end)
    return filter_transactions(candidates, filters, period)


# ==================== AGGREGATION ====================


def _total(transactions: Iterable[Transaction]) -> Decimal:
    return sum((_magnitude(txn) for txn in transactions), ZERO)


def _group_key(txn: Transaction, group_by: str) -> str:
    if group_by == "category":
        return txn.category or "Uncategorized"
    if group_by == "merchant":
        return txn.merchant_name or txn.name
    return txn.date.strftime("%Y-%m")


def build_breakdown(
    transactions: list[Transaction],
    group_by: Literal["category", "merchant", "month"],
) -> list[BreakdownBucket]:
    """
    Partition transactions by a grouping key with each bucket's share of the total.

    Buckets are ordered by total, largest first. When the overall total is
    zero every percentage is 0.
    """
    buckets: dict[str, list] = defaultdict(lambda: [ZERO, 0])
    for txn in transactions:
        bucket = buckets[_group_key(txn, group_by)]
        bucket[0] += _magnitude(txn)
        bucket[1] += 1

    overall = sum((total for total, _ in buckets.values()), ZERO)
    ordered = sorted(buckets.items(), key=lambda item: (-item[1][0], item[0]))

    return [
        BreakdownBucket(
            key=key,
            total=_to_float(total),
            count=count,
            percentage=float(total * 100 / overall) if overall else 0.0,
        )
        for key, (total, count) in ordered
    ]


def summarize(
    transactions: list[Transaction],
    aggregation: str | None = None,
    group_by: Literal["category", "merchant", "month"] | None = None,
) -> SummaryResult:
    """Aggregate a filtered set; sum is the default aggregation."""
    total = _total(transactions)
    count = len(transactions)
    average = total / count if count else ZERO

    if aggregation not in ("sum", "average", "count"):
        aggregation = "sum"
    value = {"sum": total, "average": average, "count": Decimal(count)}[aggregation]

    return SummaryResult(
        aggregation=aggregation,
        value=_to_float(value),
        total=_to_float(total),
        average=_to_float(average),
        count=count,
        group_by=group_by,
        breakdown=build_breakdown(transactions, group_by) if group_by else None,
    )


def format_period_label(period: DateRange | None) -> str:
    """Short label for a period, e.g. "Jun 2025" or "Dec 2024 - Jan 2025"."""
    if period is None:
        return "All time"

    start_month = period.start.strftime("%b")
    end_month = period.end.strftime("%b")

    if (period.start.year, period.start.month) == (period.end.year, period.end.month):
        return f"{start_month} {period.start.year}"
    if period.start.year == period.end.year:
        return f"{start_month} - {end_month} {period.start.year}"
    return f"{start_month} {period.start.year} - {end_month} {period.end.year}"


def _period_totals(transactions: list[Transaction], period: DateRange | None) -> tuple[PeriodTotals, Decimal]:
    total = _total(transactions)
    totals = PeriodTotals(
        label=format_period_label(period),
        start=period.start if period else None,
        end=period.end if period else None,
        total=_to_float(total),
        count=len(transactions),
    )
    return totals, total


# ==================== EXECUTION ====================


def _execute_transactions(filters: ParsedFilters, ledger: LedgerAccess, default_limit: int) -> TransactionsResult:
    matches = _load(ledger, filters, filters.date_range)

    if filters.sort_by == "amount":
        ordered = sorted(matches, key=_magnitude, reverse=filters.sort_order != "asc")
    else:
        ordered = sorted(matches, key=lambda txn: txn.date, reverse=filters.sort_order != "asc")

    limit = filters.limit or default_limit
    return TransactionsResult(items=ordered[:limit], total=len(matches), has_more=len(matches) > limit)


def _execute_summary(filters: ParsedFilters, ledger: LedgerAccess) -> SummaryResult:
    matches = _load(ledger, filters, filters.date_range)
    return summarize(matches, filters.aggregation, filters.group_by)


def _execute_comparison(filters: ParsedFilters, ledger: LedgerAccess) -> ComparisonResult:
    period1, total1 = _period_totals(_load(ledger, filters, filters.date_range), filters.date_range)
    period2, total2 = _period_totals(_load(ledger, filters, filters.compare_to), filters.compare_to)

    difference = total2 - total1
    percentage_change = float(difference * 100 / abs(total1)) if total1 != 0 else None

    return ComparisonResult(
        period1=period1,
        period2=period2,
        difference=_to_float(difference),
        percentage_change=percentage_change,
    )


def execute(
    filters: ParsedFilters,
    ledger: LedgerAccess,
    default_limit: int | None = None,
) -> ExecutionResult:
    """
    Execute parsed filters against a ledger.

    The filters are re-checked here rather than trusted. An empty ledger
    yields an empty list or zero-valued aggregates, never an error.

    Args:
        filters: Filter specification produced by the parser
        ledger: Read-only access to the requesting user's transactions
        default_limit: Transaction list size when filters.limit is unset

    Returns:
        TransactionsResult, SummaryResult or ComparisonResult per filters.result_type

    Raises:
        InvalidFilters: If the filters violate their invariants
    """
    check_filter_invariants(filters)

    if filters.result_type == "comparison":
        return _execute_comparison(filters, ledger)
    if filters.result_type == "summary":
        return _execute_summary(filters, ledger)
    return _execute_transactions(filters, ledger, default_limit or settings.default_result_limit)
