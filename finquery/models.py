"""Data models for finquery."""

from datetime import date as date_type
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from finquery.errors import InvalidFilters

MAX_RESULT_LIMIT = 500

ResultType = Literal["transactions", "summary", "comparison"]
AmountOperator = Literal["gt", "lt", "eq", "gte", "lte", "between"]


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ==================== LEDGER ====================


class Transaction(BaseModel):
    """A ledger transaction, read-only to the query engine.

    Sign convention: a negative ``amount`` is an expense (money out), a
    positive ``amount`` is income or a credit (money in). ``is_income`` marks
    income regardless of sign.
    """

    id: str
    name: str
    merchant_name: str | None = None
    amount: float
    date: date_type
    category: str | None = None
    is_income: bool = False
    pending: bool = False
    account_id: str | None = None

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @property
    def is_expense(self) -> bool:
        return self.amount < 0 and not self.is_income

    @property
    def counts_as_income(self) -> bool:
        return self.amount > 0 or self.is_income


# ==================== FILTER MODEL ====================


class DateRange(CamelModel):
    """Inclusive calendar date range."""

    start: date_type = Field(description="Start date in YYYY-MM-DD format")
    end: date_type = Field(description="End date in YYYY-MM-DD format")

    model_config = ConfigDict(frozen=True)


class AmountFilter(CamelModel):
    """Predicate on the magnitude of a transaction amount."""

    operator: AmountOperator
    value: float = Field(ge=0, description="Amount in currency units (always positive)")
    value2: float | None = Field(default=None, ge=0, description="Upper bound for the between operator")

    model_config = ConfigDict(frozen=True)


class ParsedFilters(CamelModel):
    """Structured filters extracted from a natural language question."""

    summary: str = Field(
        description='A brief human-readable summary of what the query is asking for '
        '(e.g., "Amazon spending in December 2025")'
    )
    result_type: ResultType = Field(
        description="transactions = list of individual transactions, summary = aggregated "
        "total/average/count, comparison = comparing two time periods"
    )
    date_range: DateRange | None = Field(default=None, description="Date range to search")
    amount: AmountFilter | None = Field(default=None, description="Amount filter")
    merchant: str | None = Field(default=None, description="Merchant name to search for (partial match)")
    category: list[str] | None = Field(
        default=None, description='Categories to filter by (e.g., ["Food & Dining", "Groceries"])'
    )
    transaction_type: Literal["income", "expense", "all"] | None = Field(
        default=None, description="Filter by income or expense transactions"
    )
    aggregation: Literal["none", "sum", "average", "count"] | None = Field(
        default=None, description="How to aggregate results (summary only)"
    )
    group_by: Literal["category", "merchant", "month"] | None = Field(
        default=None, description="Group summary results by this field"
    )
    compare_to: DateRange | None = Field(
        default=None, description="Second time period, required for comparison queries"
    )
    limit: int | None = Field(
        default=None, ge=1, le=MAX_RESULT_LIMIT, description="Maximum number of transactions to return (default 50)"
    )
    sort_by: Literal["date", "amount"] | None = None
    sort_order: Literal["asc", "desc"] | None = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_invariants(self) -> "ParsedFilters":
        check_filter_invariants(self)
        return self


def check_filter_invariants(filters: ParsedFilters) -> None:
    """
    Verify the cross-field rules of a filter specification.

    Called by the model validator and again by the executor, which must not
    trust that its input went through validation.

    Raises:
        InvalidFilters: If any rule is violated
    """
    if not isinstance(filters.summary, str) or not filters.summary.strip():
        raise InvalidFilters("summary is required")

    if filters.result_type not in ("transactions", "summary", "comparison"):
        raise InvalidFilters(f"unknown resultType: {filters.result_type!r}")

    if filters.result_type == "comparison" and filters.compare_to is None:
        raise InvalidFilters("compareTo is required for comparison queries")
    if filters.result_type != "comparison" and filters.compare_to is not None:
        raise InvalidFilters("compareTo is only allowed for comparison queries")

    for label, period in (("dateRange", filters.date_range), ("compareTo", filters.compare_to)):
        if period is not None and period.start > period.end:
            raise InvalidFilters(f"{label} start {period.start} is after end {period.end}")

    amount = filters.amount
    if amount is not None:
        if amount.value < 0 or (amount.value2 is not None and amount.value2 < 0):
            raise InvalidFilters("amount values must not be negative")
        if amount.operator == "between":
            if amount.value2 is None:
                raise InvalidFilters("value2 is required for the between operator")
            if amount.value2 < amount.value:
                raise InvalidFilters("value2 must be greater than or equal to value")
        elif amount.value2 is not None:
            raise InvalidFilters("value2 is only allowed for the between operator")

    if filters.limit is not None and not 1 <= filters.limit <= MAX_RESULT_LIMIT:
        raise InvalidFilters(f"limit must be between 1 and {MAX_RESULT_LIMIT}")


# ==================== EXECUTION RESULTS ====================


class TransactionsResult(CamelModel):
    """Matching transactions after sorting and truncation."""

    result_type: Literal["transactions"] = "transactions"
    items: list[Transaction]
    total: int  # Matches before truncation
    has_more: bool


class BreakdownBucket(CamelModel):
    """One group of a summary breakdown."""

    key: str
    total: float
    count: int
    percentage: float


class SummaryResult(CamelModel):
    """Aggregate over the filtered transactions."""

    result_type: Literal["summary"] = "summary"
    aggregation: Literal["sum", "average", "count"]
    value: float  # The figure the aggregation asked for
    total: float
    average: float
    count: int
    group_by: Literal["category", "merchant", "month"] | None = None
    breakdown: list[BreakdownBucket] | None = None


class PeriodTotals(CamelModel):
    """Totals for one side of a comparison."""

    label: str
    start: date_type | None = None
    end: date_type | None = None
    total: float
    count: int


class ComparisonResult(CamelModel):
    """Period-over-period comparison; period2 is measured against period1."""

    result_type: Literal["comparison"] = "comparison"
    period1: PeriodTotals
    period2: PeriodTotals
    difference: float
    percentage_change: float | None  # None when period1 total is zero


ExecutionResult = Annotated[
    Union[TransactionsResult, SummaryResult, ComparisonResult],
    Field(discriminator="result_type"),
]


# ==================== API SHAPES ====================


class SearchRequest(BaseModel):
    """Natural language search request."""

    query: str


class Interpretation(CamelModel):
    """What the engine understood the question to be."""

    summary: str
    filters: dict[str, Any]


class TransactionsPayload(CamelModel):
    items: list[Transaction]
    total: int
    has_more: bool


class BreakdownPayload(CamelModel):
    key: str
    total: float
    count: int
    percentage: int


class SummaryPayload(CamelModel):
    aggregation: str
    value: float
    total: float
    average: float
    count: int
    group_by: str | None = None
    breakdown: list[BreakdownPayload] | None = None


class PeriodPayload(CamelModel):
    label: str
    start: date_type | None = None
    end: date_type | None = None
    total: float
    count: int


class ComparisonPayload(CamelModel):
    period1: PeriodPayload
    period2: PeriodPayload
    difference: float
    percentage_change: int | None


class SearchResponse(CamelModel):
    """User-facing search result; only the block matching result_type is set."""

    interpretation: Interpretation
    result_type: ResultType
    transactions: TransactionsPayload | None = None
    summary: SummaryPayload | None = None
    comparison: ComparisonPayload | None = None
    error: str | None = None


class ErrorResponse(CamelModel):
    """Fixed error body for non-parse failures."""

    error: str
    message: str
    limit: int | None = None
    is_pro: bool | None = None


# ==================== USAGE ====================


class UsageRecord(BaseModel):
    """Per-user, per-day AI usage counters."""

    user_id: str
    date: date_type
    categorization_requests: int = 0
    chat_requests: int = 0
    recurring_detection_requests: int = 0
    insights_requests: int = 0
    search_requests: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    def used(self, feature: str) -> int:
        return getattr(self, f"{feature}_requests")


class QuotaDecision(BaseModel):
    """Outcome of an atomic check-and-consume."""

    allowed: bool
    remaining: int
    limit: int


class FeatureUsage(BaseModel):
    feature: str
    used: int
    limit: int
    remaining: int
    percentage: int


class UsageStats(CamelModel):
    """Today's usage for every AI feature."""

    is_pro: bool
    date: date_type
    stats: list[FeatureUsage]
    tokens: dict[str, int]


class Subscription(BaseModel):
    """Subscription state as reported by the billing collaborator."""

    tier: Literal["free", "pro"] = "free"
    status: Literal["none", "trialing", "active", "past_due", "canceled"] = "none"

    @property
    def is_pro(self) -> bool:
        return self.tier == "pro" and self.status in ("active", "trialing")
