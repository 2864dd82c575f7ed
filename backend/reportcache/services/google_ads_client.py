"""Google Ads client service abstraction.

WHAT:
    Encapsulates Google Ads API usage behind a small, testable service layer:
    GAQL search with rate limiting and retries, campaign delivery metrics and
    per-conversion-action rows for a date range.

WHY:
    - Keep SDK details out of the platform fetcher
    - Conversion actions are user-named in Google Ads ("Step 1 w BE",
      "Rezerwacja"), so they are fetched segmented by
      segments.conversion_action_name and classified by the normalizer
    - SDK failures are mapped onto the FetchError hierarchy

REFERENCES:
    - reportcache/services/action_normalizer.py: PatternRule table for Google
    - reportcache/services/platform_fetcher.py: caller
"""

from __future__ import annotations

import logging
import random
import re
import time
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from google.ads.googleads.client import GoogleAdsClient as _SdkClient

from reportcache.errors import FetchAuthError, FetchError, FetchRateLimitError, FetchTimeoutError

logger = logging.getLogger(__name__)

PROVIDER = "google"


# =============================================================================
# EXCEPTIONS
# =============================================================================

class QuotaExhaustedError(FetchRateLimitError):
    """Google Ads API quota is exhausted.

    Carries the retry delay Google suggests ("Retry in 723 seconds") so
    callers can back off instead of hammering the API.
    """

    def __init__(self, message: str, retry_seconds: int = 600):
        super().__init__(message, provider=PROVIDER, retry_seconds=retry_seconds)


def _extract_retry_seconds(error_str: str) -> Optional[int]:
    """Parse "Retry in 723 seconds" out of an error message."""
    match = re.search(r'[Rr]etry in (\d+) seconds', error_str)
    if match:
        return int(match.group(1))
    return None


def normalize_customer_id(customer_id: Optional[str]) -> str:
    """'123-456-7890' -> '1234567890'."""
    digits = "".join(ch for ch in (customer_id or "") if ch.isdigit())
    if not digits:
        raise FetchError("Google Ads customer id is empty", provider=PROVIDER)
    return digits


class GoogleAdsRateLimiter:
    """Simple token bucket rate limiter.

    WHAT:
        Guard outgoing requests to honor QPS/quota. Defaults are conservative.
    WHY:
        Avoid RESOURCE_EXHAUSTED errors and smooth out bursts.
    """

    def __init__(self, capacity: int = 15, refill_per_sec: float = 5.0) -> None:
        self.capacity = capacity
        self.tokens = capacity
        self.refill_per_sec = refill_per_sec
        self.last = time.monotonic()

    def acquire(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last
        self.last = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_per_sec)
        if self.tokens < 1:
            missing = 1 - self.tokens
            time.sleep(max(0.0, missing / self.refill_per_sec))
            self.tokens = 0
        self.tokens = max(0.0, self.tokens - 1)


def _classify_error(e: Exception) -> Optional[FetchError]:
    """Map a non-transient SDK error onto a FetchError, or None to re-raise as-is."""
    error_str = str(e)
    if any(k in error_str for k in ("AUTHENTICATION_ERROR", "AUTHORIZATION_ERROR", "invalid_grant", "PERMISSION_DENIED")):
        return FetchAuthError(f"Google Ads authentication failed: {error_str[:200]}", provider=PROVIDER)
    if "DEADLINE_EXCEEDED" in error_str or "deadline exceeded" in error_str.lower():
        return FetchTimeoutError(f"Google Ads request timed out: {error_str[:200]}", provider=PROVIDER)
    return None


def _with_retries(func):
    """Retry decorator with exponential backoff and jitter.

    WHAT:
        Retries transient errors (UNAVAILABLE, INTERNAL, RST_STREAM). Quota
        exhaustion with a long retry hint raises QuotaExhaustedError
        straight away; short hints are waited out.
    """

    def wrapper(self, *args, **kwargs):  # type: ignore
        max_attempts = 3
        base = 1.0
        for attempt in range(1, max_attempts + 1):
            try:
                return func(self, *args, **kwargs)
            except FetchError:
                raise
            except Exception as e:  # noqa: BLE001
                error_str = str(e)

                is_quota_exhausted = (
                    'RESOURCE_EXHAUSTED' in error_str or
                    'Too many requests' in error_str or
                    'quota' in error_str.lower()
                )
                if is_quota_exhausted:
                    retry_seconds = _extract_retry_seconds(error_str)
                    if retry_seconds and retry_seconds <= 120 and attempt < max_attempts:
                        logger.info(
                            "[GADS_CLIENT] Quota warning (attempt %d/%d), waiting %ds",
                            attempt, max_attempts, retry_seconds
                        )
                        time.sleep(retry_seconds)
                        continue
                    logger.warning("[GADS_CLIENT] Quota exhausted, retry hint %ss", retry_seconds)
                    raise QuotaExhaustedError(
                        f"Google Ads quota exhausted: {error_str[:200]}",
                        retry_seconds=retry_seconds or 600,
                    ) from e

                mapped = _classify_error(e)
                if mapped is not None:
                    raise mapped from e

                transient = any(k in error_str for k in ('UNAVAILABLE', 'INTERNAL', 'RST_STREAM'))
                if not transient or attempt == max_attempts:
                    raise FetchError(f"Google Ads API error: {error_str[:200]}", provider=PROVIDER) from e

                sleep_s = min(base * (2 ** (attempt - 1)) * (1 + random.random()), 30.0)
                logger.info(
                    "[GADS_CLIENT] Transient error (attempt %d/%d), retrying in %.1fs: %s",
                    attempt, max_attempts, sleep_s, error_str[:100]
                )
                time.sleep(sleep_s)
    return wrapper


class GAdsClient:
    """Testable wrapper around the Google Ads Python SDK.

    WHAT:
        - Builds an SDK client from app credentials + a client refresh token
        - GAQL search and the two report queries used by the fetcher
    """

    def __init__(
        self,
        client: Optional[Any] = None,
        rate_limiter: Optional[GoogleAdsRateLimiter] = None,
        timeout: int = 60,
    ) -> None:
        if client is None:
            raise FetchAuthError("Google Ads SDK client is not configured", provider=PROVIDER)
        self._client = client
        self._ga_service = None
        self._rate = rate_limiter or GoogleAdsRateLimiter()
        self.timeout = timeout

    # --- Client factory -------------------------------------------------
    @classmethod
    def from_tokens(
        cls,
        refresh_token: Optional[str],
        developer_token: Optional[str],
        client_id: Optional[str],
        client_secret: Optional[str],
        login_customer_id: Optional[str] = None,
        timeout: int = 60,
    ) -> "GAdsClient":
        """Build a client for one advertiser from its stored refresh token.

        Raises:
            FetchAuthError: when any required credential is missing
        """
        missing = [
            name for name, value in (
                ("refresh_token", refresh_token),
                ("developer_token", developer_token),
                ("client_id", client_id),
                ("client_secret", client_secret),
            ) if not value
        ]
        if missing:
            raise FetchAuthError(f"Missing Google Ads credentials: {', '.join(missing)}", provider=PROVIDER)

        config = {
            "developer_token": developer_token,
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
            "use_proto_plus": True,
        }
        # Only a valid 10-digit manager id is passed; anything else makes the SDK reject the config
        if login_customer_id:
            login_customer_id = "".join(ch for ch in login_customer_id if ch.isdigit())
            if len(login_customer_id) == 10:
                config["login_customer_id"] = login_customer_id

        return cls(client=_SdkClient.load_from_dict(config), timeout=timeout)

    # --- Low-level GAQL -------------------------------------------------
    def _service(self):
        if self._ga_service is None:
            self._ga_service = self._client.get_service("GoogleAdsService")
        return self._ga_service

    @_with_retries
    def search(self, customer_id: str, query: str) -> List[Any]:
        """GAQL search with rate limit + retries. Rows are materialized so
        paging errors surface inside the retry wrapper."""
        self._rate.acquire()
        return list(self._service().search(customer_id=customer_id, query=query, timeout=self.timeout))

    # --- Report queries -------------------------------------------------
    def fetch_campaign_metrics(self, customer_id: str, start: date, end: date) -> List[Dict[str, Any]]:
        """Spend, impressions and clicks per campaign for a date range."""
        customer_id = normalize_customer_id(customer_id)
        q = (
            "SELECT campaign.id, campaign.name, "
            "metrics.cost_micros, metrics.impressions, metrics.clicks "
            "FROM campaign "
            f"WHERE segments.date BETWEEN '{start.isoformat()}' AND '{end.isoformat()}'"
        )
        out: List[Dict[str, Any]] = []
        for r in self.search(customer_id, q):
            m = r.metrics
            out.append({
                "campaign_id": str(r.campaign.id),
                "campaign_name": r.campaign.name,
                "spend": (m.cost_micros or 0) / 1_000_000.0,
                "impressions": int(m.impressions or 0),
                "clicks": int(m.clicks or 0),
            })
        logger.info("[GADS_CLIENT] Fetched %d campaign rows for %s", len(out), customer_id)
        return out

    def fetch_conversion_actions(self, customer_id: str, start: date, end: date) -> List[Dict[str, Any]]:
        """Conversions and conversion value per (campaign, conversion action)."""
        customer_id = normalize_customer_id(customer_id)
        q = (
            "SELECT campaign.id, segments.conversion_action_name, "
            "metrics.conversions, metrics.conversions_value "
            "FROM campaign "
            f"WHERE segments.date BETWEEN '{start.isoformat()}' AND '{end.isoformat()}'"
        )
        out: List[Dict[str, Any]] = []
        for r in self.search(customer_id, q):
            m = r.metrics
            out.append({
                "campaign_id": str(r.campaign.id),
                "conversion_action_name": r.segments.conversion_action_name,
                "conversions": float(m.conversions or 0.0),
                "conversions_value": float(m.conversions_value or 0.0),
            })
        return out


def group_by_campaign(rows: Iterable[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for row in rows:
        grouped.setdefault(row["campaign_id"], []).append(row)
    return grouped
