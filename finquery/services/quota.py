"""Daily AI usage quota enforcement."""

import logging
import sqlite3
from collections.abc import Callable
from datetime import date, datetime, timezone

from finquery.config import Settings, settings
from finquery.db.sqlite import USAGE_FEATURES, Database
from finquery.models import ErrorResponse, FeatureUsage, QuotaDecision, UsageStats

logger = logging.getLogger(__name__)


def utc_today() -> date:
    """Current calendar day in UTC; quota days roll over at UTC midnight."""
    return datetime.now(timezone.utc).date()


class QuotaGate:
    """Check-and-consume gate over the per-user, per-day usage counters."""

    def __init__(
        self,
        database: Database,
        config: Settings | None = None,
        today: Callable[[], date] = utc_today,
    ):
        self._db = database
        self._config = config or settings
        self._today = today

    def limit_for(self, feature: str, is_pro: bool) -> int:
        return self._config.limit_for(feature, is_pro)

    def check_and_consume(self, user_id: str, feature: str, is_pro: bool) -> QuotaDecision:
        """
        Consume one unit of today's quota for a feature if any remains.

        The check and the increment are a single storage operation. A denied
        request leaves the counter untouched.

        Args:
            user_id: User making the request
            feature: AI feature being used (e.g. "search")
            is_pro: Whether the user is on the Pro tier

        Returns:
            QuotaDecision with the remaining allowance after this request
        """
        limit = self.limit_for(feature, is_pro)
        used = self._db.consume_usage(user_id, feature, self._today(), limit)

        if used is None:
            logger.info(f"Quota exhausted for user {user_id} on {feature} ({limit}/day)")
            return QuotaDecision(allowed=False, remaining=0, limit=limit)

        return QuotaDecision(allowed=True, remaining=max(0, limit - used), limit=limit)

    def record_tokens(self, user_id: str, input_tokens: int, output_tokens: int) -> None:
        """Add model token usage to today's record. Accounting failures are logged, not raised."""
        if not (input_tokens or output_tokens):
            return
        try:
            self._db.add_token_usage(user_id, self._today(), input_tokens, output_tokens)
        except sqlite3.Error as e:
            logger.warning(f"Failed to record token usage for user {user_id}: {e}")

    def usage_stats(self, user_id: str, is_pro: bool) -> UsageStats:
        """Summarize today's usage across all AI features."""
        today = self._today()
        record = self._db.get_usage(user_id, today)

        stats = []
        for feature in USAGE_FEATURES:
            used = record.used(feature)
            limit = self.limit_for(feature, is_pro)
            stats.append(
                FeatureUsage(
                    feature=feature,
                    used=used,
                    limit=limit,
                    remaining=max(0, limit - used),
                    percentage=round(used / limit * 100) if limit > 0 else 100,
                )
            )

        return UsageStats(
            is_pro=is_pro,
            date=today,
            stats=stats,
            tokens={
                "input": record.input_tokens,
                "output": record.output_tokens,
                "total": record.input_tokens + record.output_tokens,
            },
        )


def rate_limit_payload(feature: str, limit: int, is_pro: bool) -> ErrorResponse:
    """Build the 429 body shown when a daily limit is reached."""
    hint = "Limit resets at midnight UTC." if is_pro else "Upgrade to Pro for higher limits."
    return ErrorResponse(
        error="rate_limit_exceeded",
        message=f"Daily AI {feature} limit reached ({limit} requests/day). {hint}",
        limit=limit,
        is_pro=is_pro,
    )
