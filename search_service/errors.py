"""Service-level errors surfaced to the transport layer."""

from typing import Dict, Optional


class SearchServiceError(Exception):
    """Base class for errors raised by the search service."""
    pass


class InvalidParameter(SearchServiceError):
    """A request parameter failed validation.

    Raised before any backend is contacted; maps to HTTP 400.
    """

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class AllSourcesUnavailable(SearchServiceError):
    """Every source required for the request failed or timed out.

    Retryable; maps to HTTP 503. ``failures`` maps source name to a short
    reason for logs only.
    """

    def __init__(self, failures: Optional[Dict[str, str]] = None):
        self.failures = dict(failures or {})
        super().__init__(f"All search sources unavailable: {sorted(self.failures)}")
