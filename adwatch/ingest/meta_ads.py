"""Meta Ad Library (Graph API ``ads_archive``) source."""

from __future__ import annotations

import json
import logging
import os
from typing import Any
from urllib.parse import parse_qs, urlsplit

import httpx

from adwatch.errors import MalformedSourceData, SourceUnavailable
from adwatch.ingest.models import IngestWindow, NormalizedBatch, RawAdRecord
from adwatch.utils.dates import format_date, parse_source_date
from adwatch.utils.retry import retry_async

logger = logging.getLogger(__name__)

GRAPH_BASE = "https://graph.facebook.com"
GRAPH_VERSION = os.environ.get("META_GRAPH_VERSION", "v21.0")
DEFAULT_TIMEOUT = float(os.environ.get("SOURCE_TIMEOUT", 60.0))
PAGE_LIMIT = 500
DEFAULT_MAX_ITEMS = 300
DATED_MAX_ITEMS = 5000
FIELDS = (
    "id",
    "ad_creation_time",
    "ad_delivery_start_time",
    "ad_delivery_stop_time",
    "ad_creative_bodies",
    "ad_creative_link_captions",
    "ad_creative_link_descriptions",
    "ad_creative_link_titles",
    "ad_snapshot_url",
    "page_id",
    "page_name",
    "publisher_platforms",
)


def extract_page_id(ads_library_url: str) -> str | None:
    """Pull the page id out of an Ad Library URL (``view_all_page_id`` or ``id``)."""
    try:
        query = parse_qs(urlsplit(ads_library_url).query)
    except ValueError:
        return None
    for key in ("view_all_page_id", "id"):
        values = query.get(key)
        if values and values[0].strip():
            return values[0].strip()
    return None


class MetaAdsClient:
    name = "meta"

    def __init__(
        self,
        token: str,
        *,
        session: httpx.AsyncClient | None = None,
        retry_delay: float = 1.0,
    ) -> None:
        self.token = token
        self.session = session or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        self.retry_delay = retry_delay

    async def close(self) -> None:
        await self.session.aclose()

    async def fetch_ads(self, ads_library_url: str, window: IngestWindow) -> list[dict[str, Any]]:
        page_id = extract_page_id(ads_library_url)
        if not page_id:
            raise MalformedSourceData(f"Could not extract a page id from {ads_library_url}")
        max_items = window.count or (DATED_MAX_ITEMS if window.is_dated else DEFAULT_MAX_ITEMS)
        params: dict[str, Any] = {
            "access_token": self.token,
            "search_page_ids": f"[{page_id}]",
            "ad_active_status": "ALL",
            "ad_reached_countries": '["ALL"]',
            "fields": ",".join(FIELDS),
            "limit": min(PAGE_LIMIT, max_items),
        }
        if window.is_dated:
            params["ad_delivery_date_min"] = format_date(window.start_date)
            params["ad_delivery_date_max"] = format_date(window.end_date)

        items: list[dict[str, Any]] = []
        url: str | None = f"{GRAPH_BASE}/{GRAPH_VERSION}/ads_archive"
        while url and len(items) < max_items:
            payload = await self._get_page(url, params)
            data = payload.get("data") or []
            if not isinstance(data, list):
                raise MalformedSourceData("Meta ads_archive 'data' is not a list")
            items.extend(data)
            next_url = (payload.get("paging") or {}).get("next")
            if not data or not next_url:
                break
            # The ``next`` link already carries every query parameter.
            url, params = next_url, None
        logger.info("Fetched %s ads from Meta for page %s", len(items), page_id)
        return items[:max_items]

    async def _get_page(self, url: str, params: dict[str, Any] | None) -> dict[str, Any]:
        try:
            response = await retry_async(self._get, base_delay=self.retry_delay)(url, params)
        except httpx.HTTPStatusError as exc:
            raise SourceUnavailable(
                f"Meta Ads API error: {exc.response.status_code} - {exc.response.text[:500]}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise SourceUnavailable(f"Meta Ads API unreachable: {exc}") from exc
        try:
            payload = response.json()
        except json.JSONDecodeError as exc:
            raise MalformedSourceData(f"Meta Ads API returned invalid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise MalformedSourceData("Meta Ads API response is not an object")
        return payload

    async def _get(self, url: str, params: dict[str, Any] | None) -> httpx.Response:
        response = await self.session.get(url, params=params)
        response.raise_for_status()
        return response


def normalize_meta_ad(ad: dict[str, Any], brand_id: int, ads_library_url: str | None) -> RawAdRecord | None:
    ad_id = str(ad.get("id") or "").strip()
    if not ad_id:
        return None
    start = parse_source_date(ad.get("ad_delivery_start_time")) or parse_source_date(ad.get("ad_creation_time"))
    created = parse_source_date(ad.get("ad_creation_time")) or start
    stop_time = ad.get("ad_delivery_stop_time")
    platforms = ad.get("publisher_platforms")
    return RawAdRecord(
        ad_archive_id=ad_id,
        brand_id=brand_id,
        source="meta",
        ad_library_url=ad.get("ad_snapshot_url") or ads_library_url,
        page_id=str(ad["page_id"]) if ad.get("page_id") else None,
        page_name=ad.get("page_name"),
        # The Graph API does not expose the destination URL.
        link_url=None,
        start_date=start,
        end_date=parse_source_date(stop_time),
        creation_date=created,
        caption=_first(ad.get("ad_creative_bodies")),
        ad_title=_first(ad.get("ad_creative_link_titles")),
        cta_text=_first(ad.get("ad_creative_link_titles")),
        publisher_platforms=list(platforms) if isinstance(platforms, list) else None,
        ad_status="INACTIVE" if stop_time else "ACTIVE",
        collation_count=1,
    )


def _first(values: Any) -> str | None:
    if isinstance(values, list) and values and isinstance(values[0], str):
        return values[0]
    return None


def normalize_meta_ads(
    items: list[dict[str, Any]], brand_id: int, ads_library_url: str | None
) -> NormalizedBatch:
    records = []
    for item in items:
        record = normalize_meta_ad(item, brand_id, ads_library_url) if isinstance(item, dict) else None
        if record is not None:
            records.append(record)
    return NormalizedBatch(records=records, processed=len(items), rejected=len(items) - len(records))
