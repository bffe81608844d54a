"""
Tests for the search request flow and the HTTP surface.

Covers the order of checks (input, entitlement, quota, parse, execute), the
response shape for each result type, and the fixed error bodies.
"""

import json
from datetime import date

import pytest
from fastapi.testclient import TestClient

from finquery.config import Settings
from finquery.db.sqlite import Database
from finquery.errors import InvalidInput, ParseFailure, QuotaExceeded, TransportFailure
from finquery.main import app, get_search_service
from finquery.models import Transaction
from finquery.services.llm_client import ToolCall
from finquery.services.query_parser import TOOL_NAME, QueryParser
from finquery.services.search import PARSE_FAILURE_HINT, SearchService, error_response, to_payload

TODAY = date(2025, 7, 14)
USER = "user-1"

GROCERY_ARGUMENTS = {
    "summary": "Grocery spending in June 2025",
    "resultType": "summary",
    "dateRange": {"start": "2025-06-01", "end": "2025-06-30"},
    "category": ["Groceries"],
    "transactionType": "expense",
    "aggregation": "sum",
}


class StubExtractor:
    """FilterExtractor returning a fixed tool call, or raising."""

    def __init__(self, arguments: dict | None = None, error: Exception | None = None):
        self.arguments = arguments
        self.error = error
        self.calls = 0

    async def extract(self, query: str, as_of: date) -> ToolCall | None:
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.arguments is None:
            return None
        return ToolCall(name=TOOL_NAME, arguments=json.dumps(self.arguments), input_tokens=250, output_tokens=35)


def make_transaction(txn_id: str, name: str, amount: float, txn_date: date, category: str | None) -> Transaction:
    return Transaction(id=txn_id, name=name, amount=amount, date=txn_date, category=category, account_id="acct-1")


def seed_ledger(db: Database) -> None:
    db.add_transactions_batch(
        USER,
        [
            make_transaction("t1", "KROGER #123", -42.10, date(2025, 6, 3), "Groceries"),
            make_transaction("t2", "TRADER JOE'S", -18.50, date(2025, 6, 12), "Groceries"),
            make_transaction("t3", "KROGER #123", -9.00, date(2025, 6, 28), "Groceries"),
            make_transaction("t4", "SHELL OIL", -55.00, date(2025, 6, 15), "Gas"),
            make_transaction("t5", "KROGER #123", -30.00, date(2025, 7, 2), "Groceries"),
        ],
    )
    # Another user's rows must never show up
    db.add_transactions_batch(
        "user-2",
        [make_transaction("o1", "KROGER #999", -500.00, date(2025, 6, 10), "Groceries")],
    )


@pytest.fixture
def db(tmp_path):
    database = Database(db_path=tmp_path / "finquery.db")
    seed_ledger(database)
    return database


@pytest.fixture
def config():
    return Settings(ai_limits={"free": {"search": 20}, "pro": {"search": 2}})


def make_service(db: Database, config: Settings, extractor: StubExtractor) -> SearchService:
    return SearchService(db, parser=QueryParser(extractor), config=config, today=lambda: TODAY)


@pytest.fixture
def client():
    yield TestClient(app)
    app.dependency_overrides.clear()


def use_service(service: SearchService) -> None:
    app.dependency_overrides[get_search_service] = lambda: service


# =============================================================================
# Service flow
# =============================================================================


class TestSearchService:
    """Test SearchService.search directly."""

    @pytest.mark.asyncio
    async def test_grocery_summary(self, db, config):
        service = make_service(db, config, StubExtractor(GROCERY_ARGUMENTS))

        response = await service.search(USER, "How much did I spend on groceries last month?")
        body = to_payload(response)

        assert body["resultType"] == "summary"
        assert body["interpretation"]["summary"] == "Grocery spending in June 2025"
        assert body["interpretation"]["filters"]["dateRange"] == {"start": "2025-06-01", "end": "2025-06-30"}
        assert body["summary"]["total"] == 69.60
        assert body["summary"]["count"] == 3
        assert "transactions" not in body
        assert "error" not in body

    @pytest.mark.asyncio
    async def test_consumes_quota_and_records_tokens(self, db, config):
        service = make_service(db, config, StubExtractor(GROCERY_ARGUMENTS))

        await service.search(USER, "groceries last month")

        usage = db.get_usage(USER, TODAY)
        assert usage.search_requests == 1
        assert usage.input_tokens == 250
        assert usage.output_tokens == 35

    @pytest.mark.asyncio
    async def test_transaction_list(self, db, config):
        arguments = {"summary": "Kroger purchases", "resultType": "transactions", "merchant": "kroger", "limit": 2}
        service = make_service(db, config, StubExtractor(arguments))

        body = to_payload(await service.search(USER, "show me kroger purchases"))

        assert body["resultType"] == "transactions"
        assert [item["id"] for item in body["transactions"]["items"]] == ["t5", "t3"]
        assert body["transactions"]["total"] == 3
        assert body["transactions"]["hasMore"] is True

    @pytest.mark.asyncio
    async def test_breakdown_percentages_are_whole_numbers(self, db, config):
        arguments = {
            "summary": "June spending by category",
            "resultType": "summary",
            "dateRange": {"start": "2025-06-01", "end": "2025-06-30"},
            "groupBy": "category",
        }
        service = make_service(db, config, StubExtractor(arguments))

        body = to_payload(await service.search(USER, "june spending by category"))
        breakdown = body["summary"]["breakdown"]

        assert [bucket["key"] for bucket in breakdown] == ["Groceries", "Gas"]
        assert [bucket["percentage"] for bucket in breakdown] == [56, 44]

    @pytest.mark.asyncio
    async def test_comparison_with_empty_baseline(self, db, config):
        arguments = {
            "summary": "Groceries May vs June",
            "resultType": "comparison",
            "dateRange": {"start": "2025-05-01", "end": "2025-05-31"},
            "compareTo": {"start": "2025-06-01", "end": "2025-06-30"},
            "category": ["Groceries"],
        }
        service = make_service(db, config, StubExtractor(arguments))

        body = to_payload(await service.search(USER, "groceries may vs june"))
        comparison = body["comparison"]

        assert comparison["period1"]["label"] == "May 2025"
        assert comparison["period1"]["total"] == 0
        assert comparison["period2"]["total"] == 69.60
        assert comparison["difference"] == 69.60
        assert comparison["percentageChange"] is None

    @pytest.mark.asyncio
    async def test_comparison_percentage_rounded(self, db, config):
        arguments = {
            "summary": "Groceries June vs July",
            "resultType": "comparison",
            "dateRange": {"start": "2025-06-01", "end": "2025-06-30"},
            "compareTo": {"start": "2025-07-01", "end": "2025-07-31"},
            "category": ["Groceries"],
        }
        service = make_service(db, config, StubExtractor(arguments))

        body = to_payload(await service.search(USER, "groceries june vs july"))

        # (30.00 - 69.60) / 69.60 = -56.9%
        assert body["comparison"]["percentageChange"] == -57

    @pytest.mark.asyncio
    async def test_empty_query_rejected_before_quota(self, db, config):
        extractor = StubExtractor(GROCERY_ARGUMENTS)
        service = make_service(db, config, extractor)

        with pytest.raises(InvalidInput):
            await service.search(USER, "   ")

        assert extractor.calls == 0
        assert db.get_usage(USER, TODAY).search_requests == 0

    @pytest.mark.asyncio
    async def test_quota_exceeded_skips_model(self, db, config):
        extractor = StubExtractor(GROCERY_ARGUMENTS)
        service = make_service(db, config, extractor)
        for _ in range(20):
            service.quota.check_and_consume(USER, "search", is_pro=False)

        with pytest.raises(QuotaExceeded) as exc_info:
            await service.search(USER, "groceries")

        assert exc_info.value.limit == 20
        assert extractor.calls == 0

    @pytest.mark.asyncio
    async def test_parse_failure_carries_query(self, db, config):
        service = make_service(db, config, StubExtractor(None))

        with pytest.raises(ParseFailure) as exc_info:
            await service.search(USER, "  asdf qwerty  ")

        assert exc_info.value.query == "asdf qwerty"


class TestErrorResponse:
    """Test the mapping from failures to fixed bodies."""

    def test_parse_failure_body(self):
        status, body = error_response(ParseFailure("no tool call", query="asdf"))

        assert status == 400
        assert body == {
            "interpretation": {
                "summary": "Could not understand query",
                "filters": {"summary": "asdf", "resultType": "transactions"},
            },
            "resultType": "transactions",
            "transactions": {"items": [], "total": 0, "hasMore": False},
            "error": PARSE_FAILURE_HINT,
        }

    def test_transport_failure_body(self):
        status, body = error_response(TransportFailure())

        assert status == 500
        assert body == {"error": "internal_error", "message": "Failed to process search query"}


# =============================================================================
# HTTP surface
# =============================================================================


class TestSearchEndpoint:
    """Test POST /ai/search."""

    def test_grocery_summary(self, client, db, config):
        use_service(make_service(db, config, StubExtractor(GROCERY_ARGUMENTS)))

        response = client.post(
            "/ai/search",
            json={"query": "How much did I spend on groceries last month?"},
            headers={"X-User-Id": USER},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["resultType"] == "summary"
        assert body["summary"]["total"] == 69.60
        assert body["summary"]["count"] == 3

    def test_unparseable_query(self, client, db, config):
        use_service(make_service(db, config, StubExtractor(None)))

        response = client.post("/ai/search", json={"query": "asdf qwerty"}, headers={"X-User-Id": USER})

        assert response.status_code == 400
        body = response.json()
        assert body["interpretation"]["summary"] == "Could not understand query"
        assert body["transactions"] == {"items": [], "total": 0, "hasMore": False}
        assert body["error"] == PARSE_FAILURE_HINT

    def test_free_tier_quota_exhausted(self, client, db, config):
        service = make_service(db, config, StubExtractor(GROCERY_ARGUMENTS))
        for _ in range(20):
            service.quota.check_and_consume(USER, "search", is_pro=False)
        use_service(service)

        response = client.post("/ai/search", json={"query": "groceries"}, headers={"X-User-Id": USER})

        assert response.status_code == 429
        assert response.json() == {
            "error": "rate_limit_exceeded",
            "message": "Daily AI search limit reached (20 requests/day). Upgrade to Pro for higher limits.",
            "limit": 20,
            "isPro": False,
        }
        assert db.get_usage(USER, TODAY).search_requests == 20

    def test_pro_tier_quota_exhausted(self, client, db, config):
        db.set_subscription(USER, "pro", "active")
        use_service(make_service(db, config, StubExtractor(GROCERY_ARGUMENTS)))

        statuses = [
            client.post("/ai/search", json={"query": "groceries"}, headers={"X-User-Id": USER}).status_code
            for _ in range(2)
        ]
        response = client.post("/ai/search", json={"query": "groceries"}, headers={"X-User-Id": USER})

        assert statuses == [200, 200]
        assert response.status_code == 429
        body = response.json()
        assert body["isPro"] is True
        assert body["message"].endswith("Limit resets at midnight UTC.")

    def test_empty_query(self, client, db, config):
        use_service(make_service(db, config, StubExtractor(GROCERY_ARGUMENTS)))

        response = client.post("/ai/search", json={"query": ""}, headers={"X-User-Id": USER})

        assert response.status_code == 400
        assert response.json() == {"error": "invalid_input", "message": "Query is required"}
        assert db.get_usage(USER, TODAY).search_requests == 0

    @pytest.mark.parametrize("payload", [{}, {"query": None}, {"q": "groceries"}, ["groceries"]])
    def test_malformed_body(self, client, db, config, payload):
        use_service(make_service(db, config, StubExtractor(GROCERY_ARGUMENTS)))

        response = client.post("/ai/search", json=payload, headers={"X-User-Id": USER})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_input"

    def test_missing_user(self, client, db, config):
        extractor = StubExtractor(GROCERY_ARGUMENTS)
        use_service(make_service(db, config, extractor))

        response = client.post("/ai/search", json={"query": "groceries"})

        assert response.status_code == 401
        assert response.json() == {"error": "unauthorized", "message": "Unauthorized"}
        assert extractor.calls == 0

    def test_pro_only_search_blocks_free_user(self, client, db):
        config = Settings(ai_limits={"free": {"search": 20}, "pro": {"search": 2}}, pro_only_features=["search"])
        extractor = StubExtractor(GROCERY_ARGUMENTS)
        use_service(make_service(db, config, extractor))

        response = client.post("/ai/search", json={"query": "groceries"}, headers={"X-User-Id": USER})

        assert response.status_code == 403
        assert response.json() == {
            "error": "upgrade_required",
            "message": "Natural Language Search requires a Pro subscription",
        }
        assert extractor.calls == 0
        assert db.get_usage(USER, TODAY).search_requests == 0

    def test_pro_only_search_allows_trialing_user(self, client, db):
        config = Settings(ai_limits={"free": {"search": 20}, "pro": {"search": 2}}, pro_only_features=["search"])
        db.set_subscription(USER, "pro", "trialing")
        use_service(make_service(db, config, StubExtractor(GROCERY_ARGUMENTS)))

        response = client.post("/ai/search", json={"query": "groceries"}, headers={"X-User-Id": USER})

        assert response.status_code == 200

    def test_model_unreachable(self, client, db, config):
        use_service(make_service(db, config, StubExtractor(error=TransportFailure())))

        response = client.post("/ai/search", json={"query": "groceries"}, headers={"X-User-Id": USER})

        assert response.status_code == 500
        assert response.json() == {"error": "internal_error", "message": "Failed to process search query"}


class TestUsageEndpoint:
    """Test GET /ai/usage."""

    def test_reports_today(self, client, db, config):
        use_service(make_service(db, config, StubExtractor(GROCERY_ARGUMENTS)))
        client.post("/ai/search", json={"query": "groceries"}, headers={"X-User-Id": USER})

        response = client.get("/ai/usage", headers={"X-User-Id": USER})

        assert response.status_code == 200
        body = response.json()
        assert body["isPro"] is False
        assert body["date"] == "2025-07-14"
        search = next(s for s in body["stats"] if s["feature"] == "search")
        assert search == {"feature": "search", "used": 1, "limit": 20, "remaining": 19, "percentage": 5}
        assert body["tokens"] == {"input": 250, "output": 35, "total": 285}

    def test_requires_user(self, client, db, config):
        use_service(make_service(db, config, StubExtractor(GROCERY_ARGUMENTS)))
        assert client.get("/ai/usage").status_code == 401


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}
