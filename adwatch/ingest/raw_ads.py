"""Raw ad ingestion: fetch, normalize and upsert a brand's ads."""

from __future__ import annotations

import asyncio
import calendar
import logging
import os
from datetime import date
from typing import Any, Protocol

import httpx
from sqlalchemy.engine import Engine

from adwatch.db import store
from adwatch.db.session import transaction
from adwatch.errors import AdwatchError, ConfigurationError, PersistenceError
from adwatch.ingest.apify import ApifyClient, normalize_apify_ads
from adwatch.ingest.meta_ads import MetaAdsClient, normalize_meta_ads
from adwatch.ingest.models import Brand, IngestResult, IngestWindow, NormalizedBatch
from adwatch.utils.dates import subtract_months, today_utc

logger = logging.getLogger(__name__)

MAX_CREATIVES_PER_BRAND = 300
DEFAULT_LOOKBACK_MONTHS = 12
UNKNOWN_BRAND = "Unknown Brand"


class AdSource(Protocol):
    name: str

    async def fetch_ads(self, ads_library_url: str, window: IngestWindow) -> list[dict[str, Any]]:
        ...

    async def close(self) -> None:
        ...


def resolve_window(
    start_date: date | None = None,
    end_date: date | None = None,
    count: int | None = None,
    *,
    today: date | None = None,
) -> IngestWindow:
    """Explicit dates win, then a most-recent ``count``, then the trailing 12 months."""
    if start_date is not None and end_date is not None:
        if start_date > end_date:
            raise ValueError(f"start_date {start_date} is after end_date {end_date}")
        return IngestWindow(start_date=start_date, end_date=end_date)
    if count is not None and count > 0:
        return IngestWindow(start_date=None, end_date=None, count=min(count, MAX_CREATIVES_PER_BRAND))
    end = today or today_utc()
    return IngestWindow(start_date=subtract_months(end, DEFAULT_LOOKBACK_MONTHS), end_date=end)


def month_window(year: int, month: int) -> IngestWindow:
    if not 1 <= month <= 12:
        raise ValueError("month must be between 1 and 12")
    last_day = calendar.monthrange(year, month)[1]
    return IngestWindow(start_date=date(year, month, 1), end_date=date(year, month, last_day))


def source_from_env(*, session: httpx.AsyncClient | None = None) -> AdSource:
    choice = os.environ.get("AD_SOURCE", "").strip().lower()
    meta_token = os.environ.get("META_ACCESS_TOKEN")
    apify_token = os.environ.get("APIFY_TOKEN")
    if choice not in {"", "meta", "apify"}:
        raise ConfigurationError(f"Unknown AD_SOURCE {choice!r}")
    if choice == "meta" or (not choice and meta_token):
        if not meta_token:
            raise ConfigurationError("META_ACCESS_TOKEN not set")
        return MetaAdsClient(meta_token, session=session)
    if not apify_token:
        raise ConfigurationError("No ad source configured: set META_ACCESS_TOKEN or APIFY_TOKEN")
    return ApifyClient(apify_token, session=session)


def normalize(source_name: str, items: list[Any], brand: Brand, ads_library_url: str | None) -> NormalizedBatch:
    if source_name == "meta":
        return normalize_meta_ads(items, brand.id, ads_library_url)
    return normalize_apify_ads(items, brand.id, source=source_name)


class RawAdIngestor:
    def __init__(self, engine: Engine, source: AdSource | None = None) -> None:
        self.engine = engine
        self.source = source

    async def ingest(
        self,
        ads_library_url: str | None = None,
        *,
        brand_id: int | None = None,
        brand_name: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        count: int | None = None,
        as_of: date | None = None,
    ) -> IngestResult:
        if self.source is None:
            raise ValueError("No ad source configured for this ingestor")
        window = resolve_window(start_date, end_date, count, today=as_of)
        loop = asyncio.get_running_loop()
        brand = await loop.run_in_executor(None, self._resolve_brand, ads_library_url, brand_id, brand_name)
        library_url = ads_library_url or brand.ads_library_url
        if not library_url:
            raise ValueError(f"Brand {brand.brand_name} has no ads_library_url")
        logger.info("Ingesting %s from %s (%s)", brand.brand_name, self.source.name, window)
        try:
            items = await self.source.fetch_ads(library_url, window)
        except AdwatchError as exc:
            await loop.run_in_executor(None, self._record_failure, brand, str(exc))
            raise
        batch = normalize(self.source.name, items, brand, library_url)
        return await loop.run_in_executor(None, self._persist, brand, batch, as_of)

    async def ingest_items(
        self,
        brand: Brand,
        items: list[Any],
        *,
        source: str = "json",
        as_of: date | None = None,
    ) -> IngestResult:
        """Ingest an already-fetched Apify-style payload."""
        batch = normalize(source, items, brand, brand.ads_library_url)
        return await asyncio.get_running_loop().run_in_executor(None, self._persist, brand, batch, as_of)

    def _resolve_brand(self, ads_library_url: str | None, brand_id: int | None, brand_name: str | None) -> Brand:
        with transaction(self.engine) as conn:
            if brand_id is not None:
                return store.get_brand(conn, brand_id)
            if not ads_library_url:
                raise ValueError("ads_library_url is required when brand_id is not given")
            name = (brand_name or UNKNOWN_BRAND).strip()[:120] or UNKNOWN_BRAND
            return store.ensure_brand(conn, name, ads_library_url)

    def _persist(self, brand: Brand, batch: NormalizedBatch, as_of: date | None) -> IngestResult:
        if batch.rejected:
            logger.warning("Rejected %s of %s records for %s (no ad id)", batch.rejected, batch.processed, brand.brand_name)
        try:
            with transaction(self.engine) as conn:
                inserted = store.upsert_raw_ads(conn, batch.records)
                total = store.count_raw_ads(conn, brand.id)
                if batch.records:
                    store.record_fetch_status(conn, brand.id, "success", as_of=as_of)
                else:
                    store.record_fetch_status(conn, brand.id, "error", "No valid ads returned")
        except PersistenceError as exc:
            self._record_failure(brand, str(exc))
            raise
        logger.info("Upserted %s ads for %s (%s stored)", inserted, brand.brand_name, total)
        return IngestResult(
            brand_id=brand.id,
            brand_name=brand.brand_name,
            processed=batch.processed,
            inserted=inserted,
            rejected=batch.rejected,
            total_stored=total,
        )

    def _record_failure(self, brand: Brand, message: str) -> None:
        try:
            with transaction(self.engine) as conn:
                store.record_fetch_status(conn, brand.id, "error", message[:1000])
        except PersistenceError as exc:
            logger.warning("Could not record fetch failure for %s: %s", brand.brand_name, exc)
