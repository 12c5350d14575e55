"""Ingestion data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Mapping


@dataclass(slots=True)
class Brand:
    id: int
    brand_name: str
    ads_library_url: str | None = None
    is_active: bool = True


@dataclass(slots=True)
class SeedBrand:
    brand_name: str
    ads_library_url: str


@dataclass(slots=True)
class RawAdRecord:
    ad_archive_id: str
    brand_id: int
    source: str
    ad_library_url: str | None = None
    page_id: str | None = None
    page_name: str | None = None
    link_url: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    creation_date: date | None = None
    caption: str | None = None
    ad_title: str | None = None
    cta_text: str | None = None
    cta_type: str | None = None
    display_format: str | None = None
    media_type: str | None = None
    media_url: str | None = None
    thumbnail_url: str | None = None
    publisher_platforms: list[str] | None = None
    ad_status: str | None = None
    collation_count: int | None = None

    @property
    def anchor_date(self) -> date | None:
        return self.start_date or self.creation_date


@dataclass(slots=True)
class IngestWindow:
    start_date: date | None
    end_date: date | None
    count: int | None = None

    @property
    def is_dated(self) -> bool:
        return self.start_date is not None and self.end_date is not None


@dataclass(slots=True)
class NormalizedBatch:
    records: list[RawAdRecord]
    processed: int
    rejected: int


@dataclass(slots=True)
class IngestResult:
    brand_id: int
    brand_name: str
    processed: int
    inserted: int
    rejected: int = 0
    total_stored: int = 0
    summaries: Mapping[str, int] | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "brand_id": self.brand_id,
            "brand_name": self.brand_name,
            "processed": self.processed,
            "inserted": self.inserted,
            "rejected": self.rejected,
            "total_stored": self.total_stored,
            "summaries": dict(self.summaries) if self.summaries is not None else None,
        }


@dataclass(slots=True)
class CreativeSummaryRow:
    brand_id: int
    month: date
    brand_name: str
    creatives_count: int
    total_active_days: int
    ads_library_url: str | None


@dataclass(slots=True)
class FunnelSummaryRow:
    brand_id: int
    month: date
    funnel_url: str
    brand_name: str
    funnel_domain: str
    funnel_path: str | None
    creatives_count: int
    funnel_type: str | None
    campaign_info: dict[str, str] = field(default_factory=dict)
    ads_library_url: str | None = None
