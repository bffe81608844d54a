"""Exception taxonomy for the search request path.

Every exception here is recovered at the HTTP boundary and rendered as a
fixed JSON shape; none should reach a caller as an opaque 500 traceback.
"""


class FinqueryError(Exception):
    """Base exception for finquery request failures."""

    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str = "Failed to process search query"):
        super().__init__(message)
        self.message = message


class AuthRequired(FinqueryError):
    """No authenticated user on the request."""

    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class InvalidInput(FinqueryError):
    """Malformed request body or empty query."""

    status_code = 400
    error_code = "invalid_input"


class FeatureNotEntitled(FinqueryError):
    """The user's subscription tier does not include the feature."""

    status_code = 403
    error_code = "upgrade_required"

    def __init__(self, feature: str, message: str | None = None):
        super().__init__(message or "Natural Language Search requires a Pro subscription")
        self.feature = feature


class QuotaExceeded(FinqueryError):
    """Daily usage limit reached for the feature."""

    status_code = 429
    error_code = "rate_limit_exceeded"

    def __init__(self, feature: str, limit: int, is_pro: bool):
        super().__init__(f"Daily AI {feature} limit reached ({limit} requests/day)")
        self.feature = feature
        self.limit = limit
        self.is_pro = is_pro


class ParseFailure(FinqueryError):
    """The model did not return a usable filter specification."""

    status_code = 400
    error_code = "parse_failure"

    def __init__(self, message: str, query: str = ""):
        super().__init__(message)
        self.query = query


class TransportFailure(FinqueryError):
    """Model provider or ledger store unreachable after retrying."""

    status_code = 500
    error_code = "internal_error"


class InvalidFilters(ValueError):
    """A filter specification violates its invariants."""

    pass
