"""Platform fetcher.

WHAT:
    Production Fetcher used by the refresh orchestrator and the report
    service. For a (client, period, provider) it:
      1. Loads the client's platform ids, credentials and custom event tags
      2. Resolves the period to a date range (capped at today)
      3. Calls MetaAdsClient or GAdsClient
      4. Returns a RawCampaignPayload for the normalizer

WHY:
    The orchestrator never touches the database or an SDK. Everything
    platform specific, including the credential lookup, stays here.

REFERENCES:
    - reportcache/services/meta_ads_client.py
    - reportcache/services/google_ads_client.py
    - reportcache/services/action_normalizer.py: RawCampaignPayload
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from reportcache.errors import FetchAuthError, FetchError
from reportcache.models import ApiStatusEnum, Client, ProviderEnum
from reportcache.services.action_normalizer import RawActionRecord, RawCampaign, RawCampaignPayload, TenantTags
from reportcache.services.cache_store import CacheKey
from reportcache.services.google_ads_client import GAdsClient, group_by_campaign
from reportcache.services.meta_ads_client import MetaAdsClient
from reportcache.services.periods import fetch_date_range

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientCredentials:
    """Snapshot of the Client columns a fetch needs, read in one short session."""
    client_id: str
    name: str
    api_status: str
    ad_account_id: Optional[str]
    meta_token: Optional[str]
    meta_email_event_tag: Optional[str]
    meta_phone_event_tag: Optional[str]
    google_ads_customer_id: Optional[str]
    google_ads_refresh_token: Optional[str]


class PlatformFetcher:
    """Fetcher backed by the clients table and the Meta/Google SDK clients."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: Any,
        meta_client_factory: Callable[..., Any] = MetaAdsClient,
        google_client_factory: Callable[..., Any] = GAdsClient.from_tokens,
        today: Optional[Callable[[], date]] = None,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self._meta_client_factory = meta_client_factory
        self._google_client_factory = google_client_factory
        self._today = today or date.today

    # --- Credentials ----------------------------------------------------
    def load_credentials(self, client_id: str) -> ClientCredentials:
        db = self._session_factory()
        try:
            client = db.query(Client).filter(Client.id == client_id).first()
            if client is None:
                raise FetchError(f"Client {client_id} not found")
            return ClientCredentials(
                client_id=client.id,
                name=client.name,
                api_status=client.api_status,
                ad_account_id=client.ad_account_id,
                # System user tokens do not expire; prefer them
                meta_token=client.system_user_token or client.meta_access_token,
                meta_email_event_tag=client.meta_email_event_tag,
                meta_phone_event_tag=client.meta_phone_event_tag,
                google_ads_customer_id=client.google_ads_customer_id,
                google_ads_refresh_token=client.google_ads_refresh_token,
            )
        finally:
            db.close()

    def client_keys(self, period_ids: Dict[str, str]) -> List[CacheKey]:
        """Cache keys every active client should have for the given periods.

        One key per period and per provider the client has an account id
        for. Clients marked invalid are left out.
        """
        db = self._session_factory()
        try:
            clients = (
                db.query(Client)
                .filter(Client.api_status != ApiStatusEnum.invalid.value)
                .order_by(Client.id)
                .all()
            )
            keys: List[CacheKey] = []
            for client in clients:
                providers = []
                if client.ad_account_id:
                    providers.append(ProviderEnum.meta)
                if client.google_ads_customer_id:
                    providers.append(ProviderEnum.google)
                for provider in providers:
                    keys.extend(CacheKey(client.id, period_id, provider) for period_id in period_ids.values())
            return keys
        finally:
            db.close()

    # --- Fetcher protocol -----------------------------------------------
    def fetch_campaign_data(self, client_id: str, period_id: str, provider: ProviderEnum) -> RawCampaignPayload:
        """Fetch raw campaign rows for one client and period.

        Raises:
            FetchAuthError: client marked invalid or credentials missing
            FetchError: client not found or platform call failed
            UnknownPeriodError: period_id is not a month or ISO week
        """
        provider = ProviderEnum(provider)
        start, end = fetch_date_range(period_id, today=self._today())
        creds = self.load_credentials(client_id)

        if creds.api_status == ApiStatusEnum.invalid.value:
            raise FetchAuthError(f"Client {creds.name} has invalid API credentials", provider=provider.value)

        logger.info(
            "[FETCHER] Fetching %s data for client %s, %s (%s to %s)",
            provider.value, creds.client_id, period_id, start, end,
        )
        if provider == ProviderEnum.meta:
            campaigns = self._fetch_meta(creds, start, end)
            tenant_tags = TenantTags(
                email_tag=creds.meta_email_event_tag,
                phone_tag=creds.meta_phone_event_tag,
            )
            return RawCampaignPayload(provider=provider, campaigns=campaigns, tenant_tags=tenant_tags)

        campaigns = self._fetch_google(creds, start, end)
        return RawCampaignPayload(provider=provider, campaigns=campaigns)

    # --- Meta -----------------------------------------------------------
    def _fetch_meta(self, creds: ClientCredentials, start: date, end: date) -> List[RawCampaign]:
        if not creds.ad_account_id:
            raise FetchAuthError(f"Client {creds.name} has no Meta ad account", provider="meta")

        client = self._meta_client_factory(
            access_token=creds.meta_token,
            app_id=self._settings.META_APP_ID,
            app_secret=self._settings.META_APP_SECRET,
            timeout=self._settings.FETCH_TIMEOUT_SECONDS,
        )
        rows = client.get_campaign_insights(creds.ad_account_id, start.isoformat(), end.isoformat())
        return [meta_row_to_campaign(row) for row in rows]

    # --- Google ---------------------------------------------------------
    def _fetch_google(self, creds: ClientCredentials, start: date, end: date) -> List[RawCampaign]:
        if not creds.google_ads_customer_id:
            raise FetchAuthError(f"Client {creds.name} has no Google Ads customer id", provider="google")

        client = self._google_client_factory(
            refresh_token=creds.google_ads_refresh_token,
            developer_token=self._settings.GOOGLE_ADS_DEVELOPER_TOKEN,
            client_id=self._settings.GOOGLE_ADS_CLIENT_ID,
            client_secret=self._settings.GOOGLE_ADS_CLIENT_SECRET,
            login_customer_id=self._settings.GOOGLE_ADS_LOGIN_CUSTOMER_ID,
            timeout=self._settings.FETCH_TIMEOUT_SECONDS,
        )
        metric_rows = client.fetch_campaign_metrics(creds.google_ads_customer_id, start, end)
        conversion_rows = client.fetch_conversion_actions(creds.google_ads_customer_id, start, end)
        return google_rows_to_campaigns(metric_rows, conversion_rows)


# =============================================================================
# ROW MAPPING
# =============================================================================

def _action_records(actions: Optional[List[Dict[str, Any]]]) -> List[RawActionRecord]:
    return [RawActionRecord(tag=a.get("action_type", ""), value=a.get("value")) for a in (actions or [])]


def meta_row_to_campaign(row: Dict[str, Any]) -> RawCampaign:
    """Meta insights row -> RawCampaign. Values stay raw for the normalizer."""
    return RawCampaign(
        campaign_id=str(row.get("campaign_id", "")),
        campaign_name=row.get("campaign_name", ""),
        spend=row.get("spend"),
        impressions=row.get("impressions"),
        clicks=row.get("clicks"),
        actions=_action_records(row.get("actions")),
        action_values=_action_records(row.get("action_values")),
    )


def google_rows_to_campaigns(
    metric_rows: List[Dict[str, Any]],
    conversion_rows: List[Dict[str, Any]],
) -> List[RawCampaign]:
    """Join delivery rows and conversion-action rows on campaign id.

    Campaigns with conversions but no delivery row in the range still appear,
    with zero delivery.
    """
    conversions = group_by_campaign(conversion_rows)
    campaigns: List[RawCampaign] = []
    seen = set()

    for row in metric_rows:
        campaign_id = row["campaign_id"]
        seen.add(campaign_id)
        campaigns.append(_google_campaign(row, conversions.get(campaign_id, [])))

    for campaign_id, rows in conversions.items():
        if campaign_id not in seen:
            campaigns.append(_google_campaign({"campaign_id": campaign_id}, rows))
    return campaigns


def _google_campaign(row: Dict[str, Any], conversion_rows: List[Dict[str, Any]]) -> RawCampaign:
    return RawCampaign(
        campaign_id=row["campaign_id"],
        campaign_name=row.get("campaign_name", ""),
        spend=row.get("spend", 0),
        impressions=row.get("impressions", 0),
        clicks=row.get("clicks", 0),
        actions=[
            RawActionRecord(tag=c["conversion_action_name"], value=c.get("conversions"))
            for c in conversion_rows
        ],
        action_values=[
            RawActionRecord(tag=c["conversion_action_name"], value=c.get("conversions_value"))
            for c in conversion_rows
        ],
    )
