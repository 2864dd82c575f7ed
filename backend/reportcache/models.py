"""SQLAlchemy ORM models and enums.

This module defines the client registry and the four report cache tables.
Each cache table holds one row per (client, period) with the aggregated
metrics payload and the time of the last successful refresh.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import Column, String, DateTime, Integer, JSON, UniqueConstraint
from sqlalchemy.orm import declarative_base, declared_attr


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class ProviderEnum(str, enum.Enum):
    meta = "meta"
    google = "google"


class PeriodKindEnum(str, enum.Enum):
    """Reporting period granularity.

    - monthly: period ids like "2025-10"
    - weekly: ISO week period ids like "2025-W42"
    """
    monthly = "monthly"
    weekly = "weekly"


class ApiStatusEnum(str, enum.Enum):
    valid = "valid"
    invalid = "invalid"
    pending = "pending"


# Core models ----------------------------------------------------

class Client(Base):
    """Client represents one advertiser whose reports we cache.

    Holds the platform account ids and credentials used by the platform
    fetcher, plus optional tenant-specific custom conversion event tags
    that take precedence over the standard Meta lead / call tags.

    Client CRUD is handled elsewhere; this service only reads the table.
    """
    __tablename__ = "clients"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    api_status = Column(String, nullable=False, default=ApiStatusEnum.valid.value)

    # Meta Ads
    ad_account_id = Column(String, nullable=True)  # "act_123..." or bare id
    meta_access_token = Column(String, nullable=True)
    system_user_token = Column(String, nullable=True)  # Preferred over meta_access_token
    meta_email_event_tag = Column(String, nullable=True)  # e.g. "offsite_conversion.custom.2770..."
    meta_phone_event_tag = Column(String, nullable=True)

    # Google Ads
    google_ads_customer_id = Column(String, nullable=True)
    google_ads_refresh_token = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    def __str__(self):
        return self.name


class CacheEntryMixin:
    """Columns shared by every report cache table.

    `last_updated_at` only moves forward: it is written by successful
    refreshes and never touched by failed ones.
    """

    id = Column(Integer, primary_key=True, autoincrement=True)
    client_id = Column(String(36), nullable=False, index=True)
    period_id = Column(String(16), nullable=False, index=True)
    last_updated_at = Column(DateTime(timezone=True), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)

    @declared_attr
    def __table_args__(cls):
        return (
            UniqueConstraint("client_id", "period_id", name=f"uq_{cls.__tablename__}_client_period"),
        )

    def __repr__(self):
        return f"<{type(self).__name__} client={self.client_id} period={self.period_id}>"


class CurrentMonthCache(CacheEntryMixin, Base):
    """Meta Ads monthly report snapshots."""
    __tablename__ = "current_month_cache"


class CurrentWeekCache(CacheEntryMixin, Base):
    """Meta Ads ISO-week report snapshots."""
    __tablename__ = "current_week_cache"


class GoogleAdsCurrentMonthCache(CacheEntryMixin, Base):
    """Google Ads monthly report snapshots."""
    __tablename__ = "google_ads_current_month_cache"


class GoogleAdsCurrentWeekCache(CacheEntryMixin, Base):
    """Google Ads ISO-week report snapshots."""
    __tablename__ = "google_ads_current_week_cache"
