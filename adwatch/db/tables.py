"""Table definitions shared by the store, migrations and tests."""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Table,
    Text,
    true,
)

metadata = MetaData()

brands = Table(
    "brands",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("brand_name", Text, nullable=False),
    Column("ads_library_url", Text, unique=True),
    Column("is_active", Boolean, nullable=False, default=True, server_default=true()),
    Column("last_fetched_date", Date),
    Column("last_fetch_status", Text),
    Column("last_fetch_error", Text),
)

raw_data = Table(
    "raw_data",
    metadata,
    Column("ad_archive_id", Text, primary_key=True),
    Column("brand_id", Integer, ForeignKey("brands.id"), nullable=False, index=True),
    Column("source", Text, nullable=False),
    Column("ad_library_url", Text),
    Column("page_id", Text),
    Column("page_name", Text),
    Column("link_url", Text),
    Column("start_date", Date),
    Column("end_date", Date),
    Column("creation_date", Date),
    Column("caption", Text),
    Column("ad_title", Text),
    Column("cta_text", Text),
    Column("cta_type", Text),
    Column("display_format", Text),
    Column("media_type", Text),
    Column("media_url", Text),
    Column("thumbnail_url", Text),
    Column("publisher_platforms", JSON),
    Column("ad_status", Text),
    Column("collation_count", Integer),
    Column("ingested_at", DateTime(timezone=True)),
)

brand_creative_summary = Table(
    "brand_creative_summary",
    metadata,
    Column("brand_id", Integer, ForeignKey("brands.id"), primary_key=True),
    Column("month", Date, primary_key=True),
    Column("brand_name", Text),
    Column("creatives_count", Integer, nullable=False),
    Column("total_active_days", Integer, nullable=False),
    Column("ads_library_url", Text),
)

brand_funnel_summary = Table(
    "brand_funnel_summary",
    metadata,
    Column("brand_id", Integer, ForeignKey("brands.id"), primary_key=True),
    Column("month", Date, primary_key=True),
    Column("funnel_url", Text, primary_key=True),
    Column("brand_name", Text),
    Column("funnel_domain", Text, nullable=False),
    Column("funnel_path", Text),
    Column("creatives_count", Integer, nullable=False),
    Column("funnel_type", Text),
    Column("campaign_info", JSON, nullable=False),
    Column("ads_library_url", Text),
)
