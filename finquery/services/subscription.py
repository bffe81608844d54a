"""Subscription-tier feature gating."""

from finquery.config import Settings, settings
from finquery.models import Subscription


def can_access_feature(subscription: Subscription, feature: str, config: Settings | None = None) -> bool:
    """Pro subscribers can use everything; free users only non-Pro features."""
    if subscription.is_pro:
        return True
    return feature not in (config or settings).pro_only_features
