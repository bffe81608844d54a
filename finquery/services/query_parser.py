"""Natural language query parsing into structured search filters."""

import json
import logging
from datetime import date
from typing import Any, Protocol

from pydantic import ValidationError

from finquery.errors import ParseFailure
from finquery.models import ParsedFilters
from finquery.services.llm_client import LLMTimeout, ToolCall, llm_call_tool

logger = logging.getLogger(__name__)

TOOL_NAME = "extract_search_filters"

SEARCH_FILTER_TOOL: dict[str, Any] = {
    "name": TOOL_NAME,
    "description": "Extract structured search filters from a natural language query about transactions",
    "parameters": ParsedFilters.model_json_schema(by_alias=True),
}


def build_system_prompt(as_of: date) -> str:
    """System instructions for the parser, anchored to the request date."""
    return f"""You are a financial data query parser. Your job is to convert natural language questions about transactions into structured search filters.

Today's date is: {as_of.isoformat()}

When parsing queries:
1. For "December" or other months without a year, assume the most recent occurrence (current year, or last year if the month hasn't occurred yet this year)
2. Merchant matching is case-insensitive and partial (e.g., "Amazon" matches "AMAZON.COM" and "Amazon Prime")
3. For spending queries, set transactionType to "expense"; for income queries, set it to "income"
4. Amount filters are always positive numbers (the size of the transaction), e.g. "over $100" is operator "gt" with value 100
5. For "between" amounts, value is the lower bound and value2 the upper bound
6. When users ask "how much", they want a summary with sum aggregation
7. When users ask "show me" or "list", they want individual transactions
8. When users ask "average" or "typical", they want a summary with average aggregation
9. When users ask "how many", they want a summary with count aggregation
10. For comparison queries like "vs" or "compared to", use resultType "comparison" with dateRange as the first period and compareTo as the second period
11. Common date phrases:
   - "last month" = the previous calendar month
   - "this month" = first day of the current month to today
   - "this year" = January 1 to today
   - "last year" = previous calendar year
   - "last week" = previous 7 days
   - "last 30 days" = previous 30 days
12. All dates are YYYY-MM-DD and every start date is on or before its end date

Return structured filters using the {TOOL_NAME} tool. Always include a human-readable summary of what you understood."""


class FilterExtractor(Protocol):
    """Turns question text into the raw arguments of the filter tool call."""

    async def extract(self, query: str, as_of: date) -> ToolCall | None: ...


class LiteLLMFilterExtractor:
    """FilterExtractor backed by a forced litellm tool call."""

    def __init__(self, timeout: float | None = None, retry_backoff: float | None = None):
        self.timeout = timeout
        self.retry_backoff = retry_backoff

    async def extract(self, query: str, as_of: date) -> ToolCall | None:
        return await llm_call_tool(
            system_prompt=build_system_prompt(as_of),
            user_message=query,
            tool=SEARCH_FILTER_TOOL,
            timeout=self.timeout,
            retry_backoff=self.retry_backoff,
        )


def parse_tool_arguments(arguments: str | dict[str, Any]) -> ParsedFilters:
    """
    Validate raw tool arguments into ParsedFilters.

    Invalid arguments are rejected, never patched up: a "between" without
    value2 is a failure, not an open-ended range.

    Raises:
        ParseFailure: If the arguments are not a JSON object or fail validation
    """
    if isinstance(arguments, str):
        try:
            data = json.loads(arguments)
        except json.JSONDecodeError as e:
            raise ParseFailure(f"Tool arguments are not valid JSON: {e}") from e
    else:
        data = arguments

    if not isinstance(data, dict):
        raise ParseFailure("Tool arguments must be a JSON object")

    try:
        return ParsedFilters.model_validate(data)
    except ValidationError as e:
        raise ParseFailure(f"Tool arguments failed validation: {e}") from e


class QueryParser:
    """Converts a question into validated ParsedFilters via the model."""

    def __init__(self, extractor: FilterExtractor | None = None):
        self._extractor = extractor or LiteLLMFilterExtractor()

    async def parse(self, query: str, as_of: date) -> ParsedFilters:
        filters, _ = await self.parse_with_usage(query, as_of)
        return filters

    async def parse_with_usage(self, query: str, as_of: date) -> tuple[ParsedFilters, ToolCall]:
        """Parse a question and also return the tool call for token accounting."""
        try:
            call = await self._extractor.extract(query, as_of)
        except LLMTimeout as e:
            logger.warning(f"Query parse timed out: {e}")
            raise ParseFailure(str(e), query=query) from e

        if call is None:
            logger.warning(f"Model returned no tool call for query: {query!r}")
            raise ParseFailure("Model did not return search filters", query=query)

        if call.name != TOOL_NAME:
            logger.warning(f"Model called unexpected tool {call.name!r}")
            raise ParseFailure(f"Unexpected tool: {call.name}", query=query)

        try:
            filters = parse_tool_arguments(call.arguments)
        except ParseFailure as e:
            logger.warning(f"Rejected tool output for query {query!r}: {e.message}")
            e.query = query
            raise

        logger.info(f"Parsed query as {filters.result_type}: {filters.summary}")
        return filters, call
