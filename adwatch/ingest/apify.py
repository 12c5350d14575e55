"""Apify Facebook Ads Library scraper source."""

from __future__ import annotations

import json
import logging
import os
from typing import Any

import httpx

from adwatch.errors import MalformedSourceData, SourceUnavailable
from adwatch.ingest.models import IngestWindow, NormalizedBatch, RawAdRecord
from adwatch.utils.dates import format_date, parse_source_date
from adwatch.utils.retry import retry_async

logger = logging.getLogger(__name__)

ACTOR_URL = (
    "https://api.apify.com/v2/acts/curious_coder~facebook-ads-library-scraper/run-sync-get-dataset-items"
)
DEFAULT_TIMEOUT = float(os.environ.get("APIFY_TIMEOUT", 300.0))
DATED_MAX_ITEMS = 5000
DEFAULT_MAX_ITEMS = 300


class ApifyClient:
    name = "apify"

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
        actor_input: dict[str, Any] = {
            "sortBy": "start_date",
            "sortOrder": "DESC",
            "scrapeAdDetails": False,
            "scrapePageAds": {"activeStatus": "all", "countryCode": "ALL"},
            "urls": [{"url": ads_library_url}],
        }
        if window.is_dated:
            actor_input["start_date_min"] = format_date(window.start_date)
            actor_input["start_date_max"] = format_date(window.end_date)
            actor_input["maxItems"] = window.count or DATED_MAX_ITEMS
        else:
            actor_input["maxItems"] = window.count or DEFAULT_MAX_ITEMS

        try:
            response = await retry_async(self._post, base_delay=self.retry_delay)(actor_input)
        except httpx.HTTPStatusError as exc:
            raise SourceUnavailable(
                f"Apify error: {exc.response.status_code} - {exc.response.text[:500]}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise SourceUnavailable(f"Apify unreachable: {exc}") from exc
        try:
            items = response.json()
        except json.JSONDecodeError as exc:
            raise MalformedSourceData(f"Apify returned invalid JSON: {exc}") from exc
        if not isinstance(items, list):
            raise MalformedSourceData("Apify response is not an array")
        logger.info("Fetched %s items from Apify for %s", len(items), ads_library_url)
        return filter_items(items, window)

    async def _post(self, actor_input: dict[str, Any]) -> httpx.Response:
        response = await self.session.post(
            ACTOR_URL,
            json=actor_input,
            headers={"Authorization": f"Bearer {self.token}"},
        )
        response.raise_for_status()
        return response


def filter_items(items: list[Any], window: IngestWindow) -> list[Any]:
    """Drop items that started outside a dated window, or keep the first ``count``.

    Items without a usable start date stay in so they are stored with null dates.
    """
    if window.is_dated:
        kept = []
        for item in items:
            started = parse_source_date(_start_value(item)) if isinstance(item, dict) else None
            if started is None or window.start_date <= started <= window.end_date:
                kept.append(item)
        return kept
    if window.count:
        return items[: window.count]
    return items


def _start_value(item: dict[str, Any]) -> Any:
    snapshot = item.get("snapshot") if isinstance(item.get("snapshot"), dict) else {}
    for value in (item.get("start_date"), item.get("ad_delivery_start_time"), snapshot.get("start_date")):
        if value:
            return value
    return None


def _first_dict(values: Any) -> dict[str, Any]:
    if isinstance(values, list) and values and isinstance(values[0], dict):
        return values[0]
    return {}


def _first_card(snapshot: dict[str, Any]) -> dict[str, Any]:
    return _first_dict(snapshot.get("cards"))


def _media(snapshot: dict[str, Any]) -> tuple[str | None, str | None]:
    card = _first_card(snapshot)
    media_url = card.get("video_hd_url") or card.get("video_sd_url") or card.get("original_image_url") or card.get("resized_image_url")
    thumbnail_url = card.get("video_preview_image_url") or card.get("resized_image_url") or card.get("original_image_url")
    video = _first_dict(snapshot.get("videos"))
    media_url = media_url or video.get("video_hd_url") or video.get("video_sd_url")
    thumbnail_url = thumbnail_url or video.get("video_preview_image_url")
    image = _first_dict(snapshot.get("images"))
    media_url = media_url or image.get("original_image_url")
    thumbnail_url = thumbnail_url or image.get("resized_image_url") or image.get("original_image_url")
    return media_url, thumbnail_url


def _media_type(display_format: str | None, snapshot: dict[str, Any]) -> str | None:
    card = _first_card(snapshot)
    if display_format == "VIDEO" or card.get("video_hd_url") or card.get("video_sd_url") or _first_dict(snapshot.get("videos")):
        return "video"
    if display_format in {"IMAGE", "DPA", "DCO"}:
        return "image"
    return None


def normalize_apify_ad(ad: dict[str, Any], brand_id: int, *, source: str = "apify") -> RawAdRecord | None:
    if ad.get("error") or ad.get("errorCode"):
        return None
    ad_id = str(ad.get("ad_archive_id") or ad.get("id") or "").strip()
    if not ad_id or ad_id in {"undefined", "null", "None"}:
        return None
    snapshot = ad.get("snapshot") if isinstance(ad.get("snapshot"), dict) else {}
    card = _first_card(snapshot)
    start = parse_source_date(_start_value(ad))
    created = parse_source_date(ad.get("creation_date")) or start
    display_format = snapshot.get("display_format") or ad.get("display_format")
    media_url, thumbnail_url = _media(snapshot)
    body = snapshot.get("body")
    caption = body.get("text") if isinstance(body, dict) else None
    platforms = ad.get("publisher_platform")
    is_active = ad.get("is_active")
    collation = ad.get("collation_count")
    return RawAdRecord(
        ad_archive_id=ad_id,
        brand_id=brand_id,
        source=source,
        ad_library_url=ad.get("ad_library_url") or ad.get("url"),
        page_id=str(ad.get("page_id") or snapshot.get("page_id") or "") or None,
        page_name=snapshot.get("page_name") or ad.get("page_name"),
        link_url=snapshot.get("link_url") or card.get("link_url"),
        start_date=start,
        end_date=parse_source_date(ad.get("end_date")),
        creation_date=created,
        caption=caption or snapshot.get("caption") or ad.get("caption"),
        ad_title=snapshot.get("title") or card.get("title"),
        cta_text=snapshot.get("cta_text") or card.get("cta_text"),
        cta_type=snapshot.get("cta_type") or card.get("cta_type"),
        display_format=display_format,
        media_type=_media_type(display_format, snapshot),
        media_url=media_url,
        thumbnail_url=thumbnail_url,
        publisher_platforms=list(platforms) if isinstance(platforms, list) else None,
        ad_status=("ACTIVE" if is_active else "INACTIVE") if isinstance(is_active, bool) else None,
        collation_count=collation if isinstance(collation, int) else 1,
    )


def normalize_apify_ads(items: list[Any], brand_id: int, *, source: str = "apify") -> NormalizedBatch:
    records = []
    for item in items:
        record = normalize_apify_ad(item, brand_id, source=source) if isinstance(item, dict) else None
        if record is not None:
            records.append(record)
    return NormalizedBatch(records=records, processed=len(items), rejected=len(items) - len(records))
