"""Destination funnel summary: creatives per brand, month and funnel URL."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable

from sqlalchemy.engine import Engine

from adwatch.db import store
from adwatch.db.session import transaction
from adwatch.ingest.models import Brand, FunnelSummaryRow, RawAdRecord
from adwatch.logic.creative import ad_span
from adwatch.logic.funnels import (
    FunnelPolicy,
    classify,
    extract_campaign_info,
    load_policy,
    normalize_funnel_url,
    parse_funnel_url,
)
from adwatch.utils.dates import iter_months, today_utc

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _FunnelGroup:
    funnel_domain: str
    funnel_path: str | None
    funnel_type: str
    ad_ids: set[str] = field(default_factory=set)
    campaign_info: dict[str, str] = field(default_factory=dict)


def compute_funnel_summary(
    brand: Brand,
    ads: Iterable[RawAdRecord],
    as_of: date,
    policy: FunnelPolicy,
) -> list[FunnelSummaryRow]:
    groups: dict[tuple[date, str], _FunnelGroup] = {}
    skipped = 0
    for ad in sorted(ads, key=lambda item: item.ad_archive_id):
        parsed = parse_funnel_url(ad.link_url)
        span = ad_span(ad, as_of)
        if parsed is None or span is None:
            skipped += 1
            continue
        funnel_url = normalize_funnel_url(parsed, policy)
        funnel_type = classify(parsed, policy)
        campaign = extract_campaign_info(parsed, policy)
        for month in iter_months(*span):
            group = groups.get((month, funnel_url))
            if group is None:
                group = groups[(month, funnel_url)] = _FunnelGroup(
                    funnel_domain=parsed.domain,
                    funnel_path=parsed.path if parsed.path != "/" else None,
                    funnel_type=funnel_type,
                )
            group.ad_ids.add(ad.ad_archive_id)
            for key, value in campaign.items():
                group.campaign_info.setdefault(key, value)
    if skipped:
        logger.debug("Funnel summary for %s skipped %s ads without a usable URL or date", brand.brand_name, skipped)
    return [
        FunnelSummaryRow(
            brand_id=brand.id,
            month=month,
            funnel_url=funnel_url,
            brand_name=brand.brand_name,
            funnel_domain=group.funnel_domain,
            funnel_path=group.funnel_path,
            creatives_count=len(group.ad_ids),
            funnel_type=group.funnel_type,
            campaign_info=dict(sorted(group.campaign_info.items())),
            ads_library_url=brand.ads_library_url,
        )
        for (month, funnel_url), group in sorted(groups.items())
    ]


def refresh_funnel_summary(
    engine: Engine,
    brand_id: int,
    *,
    as_of: date | None = None,
    policy: FunnelPolicy | None = None,
) -> int:
    as_of = as_of or today_utc()
    policy = policy or load_policy()
    with transaction(engine) as conn:
        brand = store.get_brand(conn, brand_id)
        ads = store.load_raw_ads(conn, brand_id)
        rows = compute_funnel_summary(brand, ads, as_of, policy)
        written = store.replace_funnel_summary(conn, brand_id, rows)
    logger.info("Funnel summary for %s: %s rows from %s ads", brand.brand_name, written, len(ads))
    return written
