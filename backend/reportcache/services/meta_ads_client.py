"""Meta Ads API Client Service.

WHAT:
    Wrapper for the Facebook Business SDK that fetches campaign-level
    insights (spend, impressions, clicks, actions, action_values) for one
    ad account and date range.

WHY:
    - Refresh jobs run on worker threads with different client tokens, so
      each client gets its own FacebookAdsApi instance instead of the SDK's
      global default api
    - Rate limiting per token (Meta budgets calls per account/token)
    - SDK errors are mapped onto the FetchError hierarchy the refresh
      orchestrator records per job

WHERE USED:
    - reportcache/services/platform_fetcher.py

RATE LIMITS:
    - 200 API calls per hour per token, enforced by @rate_limit

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/insights
"""

import logging
import threading
from collections import deque
from functools import wraps
from time import sleep, time
from typing import Any, Deque, Dict, List, Optional

import requests
from facebook_business.adobjects.adaccount import AdAccount
from facebook_business.adobjects.adsinsights import AdsInsights
from facebook_business.api import FacebookAdsApi
from facebook_business.exceptions import FacebookRequestError
from facebook_business.session import FacebookSession

from reportcache.errors import FetchAuthError, FetchError, FetchRateLimitError, FetchTimeoutError

logger = logging.getLogger(__name__)

PROVIDER = "meta"

# Meta error codes that mean throttling rather than a bad request
_RATE_LIMIT_CODES = {4, 17, 32, 613, 80000, 80004}
# Expired/invalid access token
_AUTH_CODES = {102, 190}

# token -> call timestamps within the last hour, shared by all decorated methods
_rate_limit_call_times: Dict[str, Deque[float]] = {}
_rate_limit_lock = threading.Lock()


def _prune_idle_tokens(now: float) -> None:
    """Drop tokens with no call in the last hour. Caller holds _rate_limit_lock."""
    idle = [token for token, calls in _rate_limit_call_times.items() if not calls or calls[-1] < now - 3600]
    for token in idle:
        del _rate_limit_call_times[token]


def rate_limit(calls_per_hour: int):
    """Decorator to enforce rate limiting using a sliding window per token.

    WHAT:
        Tracks call timestamps per client access token and sleeps when the
        next call would exceed `calls_per_hour`.

    WHY:
        Meta's limit applies across endpoints for the same token, so every
        decorated method shares one budget per token.

    Args:
        calls_per_hour: Maximum number of calls allowed per hour
    """
    def decorator(func):
        @wraps(func)
        def wrapper(client, *args, **kwargs):
            token = getattr(client, "access_token", "") or ""
            now = time()
            sleep_time = 0.0

            with _rate_limit_lock:
                _prune_idle_tokens(now)
                call_times = _rate_limit_call_times.setdefault(token, deque())
                while call_times and call_times[0] < now - 3600:
                    call_times.popleft()
                if len(call_times) >= calls_per_hour:
                    sleep_time = 3600 - (now - call_times[0]) + 1
                    call_times.popleft()
                call_times.append(now + sleep_time)

            if sleep_time > 0:
                logger.warning(
                    "[META_CLIENT] Rate limit reached (%d calls/hour). Sleeping for %.1fs",
                    calls_per_hour, sleep_time,
                )
                sleep(sleep_time)
            return func(client, *args, **kwargs)
        return wrapper
    return decorator


def normalize_account_id(account_id: str) -> str:
    """'123' and 'act_123' both become 'act_123'."""
    account_id = (account_id or "").strip()
    if not account_id:
        raise FetchError("Meta ad account id is empty", provider=PROVIDER)
    return account_id if account_id.startswith("act_") else f"act_{account_id}"


class MetaAdsClient:
    """Client for the Meta Marketing API insights endpoint.

    Usage:
        ```python
        client = MetaAdsClient(access_token="TOKEN", timeout=60)
        rows = client.get_campaign_insights("act_123", "2025-10-01", "2025-10-19")
        ```
    """

    def __init__(
        self,
        access_token: str,
        app_id: Optional[str] = None,
        app_secret: Optional[str] = None,
        timeout: int = 60,
    ):
        """Build a per-client API instance.

        Args:
            access_token: system user or OAuth token for the client
            app_id: optional Meta app id
            app_secret: optional Meta app secret
            timeout: per-request timeout in seconds passed to the SDK session
        """
        if not access_token:
            raise FetchAuthError("No Meta access token configured", provider=PROVIDER)

        self.access_token = access_token
        self.timeout = timeout
        session = FacebookSession(
            app_id=app_id,
            app_secret=app_secret,
            access_token=access_token,
            timeout=timeout,
        )
        self.api = FacebookAdsApi(session)

    @rate_limit(calls_per_hour=200)
    def get_campaign_insights(self, account_id: str, start_date: str, end_date: str) -> List[Dict[str, Any]]:
        """Fetch campaign-level insights for a date range.

        Args:
            account_id: Meta ad account id, with or without "act_"
            start_date: inclusive ISO date
            end_date: inclusive ISO date

        Returns:
            One dict per campaign with campaign_id, campaign_name, spend,
            impressions, clicks, actions and action_values (values are the
            raw strings Meta returns)

        Raises:
            FetchAuthError: invalid/expired token or missing permissions
            FetchRateLimitError: Meta throttled the call
            FetchTimeoutError: request exceeded `timeout`
            FetchError: any other API error
        """
        account_id = normalize_account_id(account_id)
        context = f"fetching campaign insights for {account_id}"
        logger.info("[META_CLIENT] Fetching campaign insights for %s: %s to %s", account_id, start_date, end_date)

        try:
            account = AdAccount(account_id, api=self.api)
            insights = account.get_insights(
                fields=[
                    AdsInsights.Field.campaign_id,
                    AdsInsights.Field.campaign_name,
                    AdsInsights.Field.spend,
                    AdsInsights.Field.impressions,
                    AdsInsights.Field.clicks,
                    AdsInsights.Field.actions,
                    AdsInsights.Field.action_values,
                ],
                params={
                    "level": "campaign",
                    "time_range": {"since": start_date, "until": end_date},
                    "limit": 500,
                },
            )
            # Iterating the cursor follows pagination
            result = [dict(insight) for insight in insights]
        except FacebookRequestError as e:
            self._handle_api_error(e, context)
        except requests.exceptions.Timeout as e:
            logger.error("[META_CLIENT] Timeout after %ss while %s", self.timeout, context)
            raise FetchTimeoutError(f"Meta API timed out while {context}", provider=PROVIDER) from e
        except requests.exceptions.RequestException as e:
            logger.error("[META_CLIENT] Network error while %s: %s", context, e)
            raise FetchError(f"Network error while {context}: {e}", provider=PROVIDER) from e

        logger.info("[META_CLIENT] Fetched %d campaign rows for %s", len(result), account_id)
        return result

    def _handle_api_error(self, error: FacebookRequestError, context: str) -> None:
        """Translate FacebookRequestError into FetchError subclasses.

        Raises:
            FetchAuthError: for 401/403 and token error codes
            FetchRateLimitError: for 429 and throttling error codes
            FetchError: for everything else (400, 5xx)
        """
        error_code = error.api_error_code()
        error_message = error.api_error_message()
        http_status = error.http_status()

        logger.error(
            "[META_CLIENT] API error while %s: HTTP %s, Code %s, Message: %s",
            context, http_status, error_code, error_message,
        )

        if http_status in (401, 403) or error_code in _AUTH_CODES:
            raise FetchAuthError(
                f"Authentication failed while {context}. Token may be expired or lack permissions.",
                provider=PROVIDER,
            ) from error
        if http_status == 429 or error_code in _RATE_LIMIT_CODES:
            raise FetchRateLimitError(
                f"Rate limit exceeded while {context}: {error_message}",
                provider=PROVIDER,
            ) from error
        raise FetchError(
            f"API error while {context}: HTTP {http_status}, {error_message}",
            provider=PROVIDER,
        ) from error
