"""Natural language transaction search: request flow and response assembly."""

import logging
from collections.abc import Callable
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from finquery.config import Settings, settings
from finquery.db.sqlite import Database, SQLiteLedger
from finquery.errors import (
    FeatureNotEntitled,
    FinqueryError,
    InvalidInput,
    ParseFailure,
    QuotaExceeded,
    TransportFailure,
)
from finquery.models import (
    BreakdownPayload,
    ComparisonPayload,
    ComparisonResult,
    ErrorResponse,
    ExecutionResult,
    Interpretation,
    ParsedFilters,
    PeriodPayload,
    SearchResponse,
    Subscription,
    SummaryPayload,
    SummaryResult,
    TransactionsPayload,
    TransactionsResult,
)
from finquery.services.query_executor import execute
from finquery.services.query_parser import QueryParser
from finquery.services.quota import QuotaGate, rate_limit_payload, utc_today
from finquery.services.subscription import can_access_feature

logger = logging.getLogger(__name__)

SEARCH_FEATURE = "search"
PARSE_FAILURE_HINT = 'Could not parse your query. Try something like "How much did I spend on groceries last month?"'


# ==================== RESPONSE ASSEMBLY ====================


def _whole_percent(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_payload(model: Any) -> dict[str, Any]:
    """Serialize a response model the way it goes over the wire.

    Only fields that were set are emitted, so a comparison against an empty
    baseline still carries ``"percentageChange": null``.
    """
    return model.model_dump(mode="json", by_alias=True, exclude_unset=True)


def build_search_response(filters: ParsedFilters, result: ExecutionResult) -> SearchResponse:
    """Combine the parser's interpretation with the executor's result."""
    response = SearchResponse(
        interpretation=Interpretation(summary=filters.summary, filters=to_payload(filters)),
        result_type=result.result_type,
    )

    if isinstance(result, TransactionsResult):
        response.transactions = TransactionsPayload(items=result.items, total=result.total, has_more=result.has_more)

    elif isinstance(result, SummaryResult):
        response.summary = SummaryPayload(
            aggregation=result.aggregation,
            value=result.value,
            total=result.total,
            average=result.average,
            count=result.count,
            group_by=result.group_by,
            breakdown=[
                BreakdownPayload(
                    key=bucket.key,
                    total=bucket.total,
                    count=bucket.count,
                    percentage=_whole_percent(bucket.percentage),
                )
                for bucket in result.breakdown
            ]
            if result.breakdown is not None
            else None,
        )

    elif isinstance(result, ComparisonResult):
        response.comparison = ComparisonPayload(
            period1=PeriodPayload(**result.period1.model_dump()),
            period2=PeriodPayload(**result.period2.model_dump()),
            difference=result.difference,
            percentage_change=(
                _whole_percent(result.percentage_change) if result.percentage_change is not None else None
            ),
        )

    return response


def parse_failure_response(query: str) -> SearchResponse:
    """Fixed response for a question the model could not turn into filters."""
    return SearchResponse(
        interpretation=Interpretation(
            summary="Could not understand query",
            filters={"summary": query, "resultType": "transactions"},
        ),
        result_type="transactions",
        transactions=TransactionsPayload(items=[], total=0, has_more=False),
        error=PARSE_FAILURE_HINT,
    )


def error_response(exc: FinqueryError) -> tuple[int, dict[str, Any]]:
    """Map a request failure to its status code and JSON body."""
    if isinstance(exc, ParseFailure):
        body = parse_failure_response(exc.query)
    elif isinstance(exc, QuotaExceeded):
        body = rate_limit_payload(exc.feature, exc.limit, exc.is_pro)
    else:
        body = ErrorResponse(error=exc.error_code, message=exc.message)
    return exc.status_code, to_payload(body)


# ==================== REQUEST FLOW ====================


class SearchService:
    """Runs one search request: input check, gating, quota, parse, execute."""

    def __init__(
        self,
        database: Database,
        parser: QueryParser | None = None,
        quota: QuotaGate | None = None,
        config: Settings | None = None,
        today: Callable[[], date] = utc_today,
    ):
        self._db = database
        self._config = config or settings
        self._parser = parser or QueryParser()
        self._quota = quota or QuotaGate(database, self._config, today=today)
        self._today = today

    @property
    def quota(self) -> QuotaGate:
        return self._quota

    def subscription_for(self, user_id: str) -> Subscription:
        return self._db.get_subscription(user_id)

    async def search(self, user_id: str, query: str | None) -> SearchResponse:
        """
        Answer a natural language question about a user's transactions.

        Args:
            user_id: Authenticated user
            query: Free-text question

        Returns:
            SearchResponse with the block matching the parsed result type

        Raises:
            InvalidInput: Empty or whitespace-only query (before any quota is used)
            FeatureNotEntitled: The user's tier excludes search
            QuotaExceeded: Today's search allowance is used up
            ParseFailure: The model output could not be turned into filters
            TransportFailure: Model or ledger unreachable
        """
        text = (query or "").strip()
        if not text:
            raise InvalidInput("Query is required")

        subscription = self.subscription_for(user_id)
        if not can_access_feature(subscription, SEARCH_FEATURE, self._config):
            raise FeatureNotEntitled(SEARCH_FEATURE)

        decision = self._quota.check_and_consume(user_id, SEARCH_FEATURE, subscription.is_pro)
        if not decision.allowed:
            raise QuotaExceeded(SEARCH_FEATURE, decision.limit, subscription.is_pro)

        filters, call = await self._parser.parse_with_usage(text, self._today())
        self._quota.record_tokens(user_id, call.input_tokens, call.output_tokens)

        ledger = SQLiteLedger(self._db, user_id)
        try:
            result = execute(filters, ledger, self._config.default_result_limit)
        except TransportFailure:
            raise
        except Exception as e:
            logger.exception(f"Search execution failed for filters {to_payload(filters)}")
            raise FinqueryError() from e

        return build_search_response(filters, result)
