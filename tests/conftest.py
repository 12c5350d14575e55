import json
from datetime import date
from pathlib import Path

import pytest
from sqlalchemy import create_engine

from adwatch.db import store
from adwatch.db.migrate import run_migrations
from adwatch.db.tables import brands
from adwatch.ingest.models import RawAdRecord

FIXTURES = Path(__file__).parent / "fixtures" / "http"

HEADWAY_URL = "https://www.facebook.com/ads/library/?active_status=all&ad_type=all&view_all_page_id=111"
NOOM_URL = "https://www.facebook.com/ads/library/?active_status=all&ad_type=all&view_all_page_id=222"
BETTERME_URL = "https://www.facebook.com/ads/library/?active_status=all&ad_type=all&view_all_page_id=333"
DORMANT_URL = "https://www.facebook.com/ads/library/?active_status=all&ad_type=all&view_all_page_id=444"

AS_OF = date(2024, 3, 15)


def load_fixture(path: str):
    return json.loads((FIXTURES / path).read_text())


@pytest.fixture(autouse=True)
def _no_source_env(monkeypatch):
    for name in ("AD_SOURCE", "META_ACCESS_TOKEN", "APIFY_TOKEN", "FUNNEL_RULES_PATH", "REFRESH_MAX_WORKERS"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def engine(tmp_path):
    # File backed so executor threads share the same database.
    engine = create_engine(f"sqlite:///{tmp_path / 'adwatch.db'}", future=True)
    run_migrations(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def seeded_engine(engine):
    with engine.begin() as conn:
        conn.execute(brands.insert(), [
            {"brand_name": "Headway", "ads_library_url": HEADWAY_URL, "is_active": True},
            {"brand_name": "Noom", "ads_library_url": NOOM_URL, "is_active": True},
            {"brand_name": "BetterMe", "ads_library_url": BETTERME_URL, "is_active": True},
            {"brand_name": "Dormant", "ads_library_url": DORMANT_URL, "is_active": False},
        ])
    return engine


def make_ad(ad_id, brand_id=1, *, start=None, end=None, created=None, link=None, source="apify"):
    return RawAdRecord(
        ad_archive_id=ad_id,
        brand_id=brand_id,
        source=source,
        link_url=link,
        start_date=start,
        end_date=end,
        creation_date=created,
    )


@pytest.fixture()
def stocked_engine(seeded_engine):
    """Three active brands with a handful of stored ads each."""
    with seeded_engine.begin() as conn:
        store.upsert_raw_ads(conn, [
            make_ad("1001", 1, start=date(2024, 1, 20), end=date(2024, 2, 10), link="https://headway.app/offer?utm_campaign=summer&utm_id=1"),
            make_ad("1002", 1, start=date(2024, 2, 5), link="https://headway.app/offer?utm_id=2"),
            make_ad("2001", 2, start=date(2024, 1, 20), end=date(2024, 2, 10), link="https://get.noom.com/quiz/weight"),
            make_ad("3001", 3, start=date(2024, 3, 1), link="https://play.google.com/store/apps/details?id=com.betterme"),
            make_ad("4001", 4, start=date(2024, 3, 1), link="https://dormant.example.com/"),
        ])
    return seeded_engine
