"""
Report Cache Exceptions
=======================

Exception types shared by the cache, refresh and reporting services.

WHY THIS FILE EXISTS
--------------------
Failures in this system fall into very different buckets:
- Platform fetch failures (auth, rate limit, timeout) that are recorded per
  refresh job and never abort a batch
- Bad raw values from the platforms that are coerced and logged
- Misconfiguration that must stop the process at startup
- Period ids that cannot be compared year over year

Keeping them in one module lets routers, workers and services catch the
right level without importing each other.

RELATED FILES
-------------
- reportcache/services/refresh_orchestrator.py: Records FetchError per job
- reportcache/services/action_normalizer.py: Logs NormalizationWarning
- reportcache/services/yoy_comparator.py: Raises ComparisonNotSupportedError
- reportcache/deps.py: Raises ConfigurationError for invalid settings
- reportcache/routers/cache_monitoring.py: Maps RefreshInProgressError to 409
"""

from typing import Optional


class ReportCacheError(Exception):
    """Base class for all report cache errors."""


# =============================================================================
# FETCH ERRORS (per refresh job, never fatal to a batch)
# =============================================================================

class FetchError(ReportCacheError):
    """
    Raised by a Fetcher when platform data cannot be retrieved.

    WHAT:
        Parent class for network, auth, rate-limit and timeout failures.

    WHY:
        The refresh orchestrator catches exactly this type (plus unexpected
        exceptions) and turns it into a failed RefreshJobResult.
    """

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider
        self.message = message


class FetchAuthError(FetchError):
    """Credentials missing, expired or lacking permissions."""


class FetchRateLimitError(FetchError):
    """Platform rejected the call because of rate limits or quota."""

    def __init__(self, message: str, provider: Optional[str] = None, retry_seconds: int = 600):
        super().__init__(message, provider=provider)
        self.retry_seconds = retry_seconds


class FetchTimeoutError(FetchError):
    """Platform call exceeded the per-job fetch timeout."""


# =============================================================================
# NORMALIZATION
# =============================================================================

class NormalizationWarning(UserWarning):
    """
    Category for raw values that were coerced to 0.

    Never raised. Used as the `category` extra on log records so the
    coercions can be filtered in log search.
    """


# =============================================================================
# CONFIGURATION
# =============================================================================

class ConfigurationError(ReportCacheError):
    """Invalid or missing configuration. Raised at startup, never per request."""


# =============================================================================
# PERIODS / COMPARISON
# =============================================================================

class UnknownPeriodError(ReportCacheError, ValueError):
    """Period id is neither a month (YYYY-MM) nor an ISO week (YYYY-Www)."""


class ComparisonNotSupportedError(ReportCacheError):
    """Year-over-year comparison requested for a non calendar-aligned period."""


# =============================================================================
# REFRESH
# =============================================================================

class RefreshInProgressError(ReportCacheError):
    """A bulk refresh is already running. Overlapping runs are refused."""
