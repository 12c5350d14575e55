"""Creative cadence summary: creatives and active days per brand and month."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from typing import Iterable, Iterator

from sqlalchemy.engine import Engine

from adwatch.db import store
from adwatch.db.session import transaction
from adwatch.ingest.models import Brand, CreativeSummaryRow, RawAdRecord
from adwatch.utils.dates import active_days_in_month, iter_months, today_utc

logger = logging.getLogger(__name__)


def ad_span(ad: RawAdRecord, as_of: date) -> tuple[date, date] | None:
    """Return the ``(anchor, effective_end)`` span of an ad, or None if undated.

    A missing end date means the ad is still running as of ``as_of``.
    """
    anchor = ad.anchor_date
    if anchor is None:
        return None
    end = ad.end_date or as_of
    return anchor, max(end, anchor)


def months_active(ad: RawAdRecord, as_of: date) -> Iterator[tuple[date, int]]:
    """Yield ``(month, active_days)`` for every month the ad overlaps."""
    span = ad_span(ad, as_of)
    if span is None:
        return
    start, end = span
    for month in iter_months(start, end):
        yield month, active_days_in_month(start, end, month)


def compute_creative_summary(
    brand: Brand, ads: Iterable[RawAdRecord], as_of: date
) -> list[CreativeSummaryRow]:
    creatives: dict[date, set[str]] = defaultdict(set)
    active_days: dict[date, int] = defaultdict(int)
    seen: set[str] = set()
    for ad in ads:
        if ad.ad_archive_id in seen:
            continue
        seen.add(ad.ad_archive_id)
        for month, days in months_active(ad, as_of):
            creatives[month].add(ad.ad_archive_id)
            active_days[month] += days
    return [
        CreativeSummaryRow(
            brand_id=brand.id,
            month=month,
            brand_name=brand.brand_name,
            creatives_count=len(creatives[month]),
            total_active_days=active_days[month],
            ads_library_url=brand.ads_library_url,
        )
        for month in sorted(creatives)
    ]


def refresh_creative_summary(engine: Engine, brand_id: int, *, as_of: date | None = None) -> int:
    as_of = as_of or today_utc()
    with transaction(engine) as conn:
        brand = store.get_brand(conn, brand_id)
        ads = store.load_raw_ads(conn, brand_id)
        rows = compute_creative_summary(brand, ads, as_of)
        written = store.replace_creative_summary(conn, brand_id, rows)
    logger.info("Creative summary for %s: %s rows from %s ads", brand.brand_name, written, len(ads))
    return written
