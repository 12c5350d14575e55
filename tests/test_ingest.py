from datetime import date

import httpx
import pytest
import respx
from sqlalchemy import select

from adwatch.db import store
from adwatch.db.tables import brands, raw_data
from adwatch.errors import ConfigurationError, MalformedSourceData, PersistenceError, SourceUnavailable
from adwatch.ingest import load_brands
from adwatch.ingest.apify import ACTOR_URL, ApifyClient, normalize_apify_ad
from adwatch.ingest.meta_ads import MetaAdsClient, extract_page_id
from adwatch.ingest.models import IngestWindow
from adwatch.ingest.raw_ads import (
    MAX_CREATIVES_PER_BRAND,
    RawAdIngestor,
    month_window,
    resolve_window,
    source_from_env,
)
from adwatch.logic.creative import refresh_creative_summary

from conftest import AS_OF, NOOM_URL, load_fixture

META_URL = "https://graph.facebook.com/v21.0/ads_archive"


def _brand_status(engine, brand_id):
    with engine.connect() as conn:
        return conn.execute(
            select(brands.c.last_fetch_status, brands.c.last_fetch_error, brands.c.last_fetched_date)
            .where(brands.c.id == brand_id)
        ).one()


def _raw_ads(engine, brand_id):
    with engine.connect() as conn:
        return {ad.ad_archive_id: ad for ad in store.load_raw_ads(conn, brand_id)}


@pytest.mark.asyncio
async def test_apify_ingest(seeded_engine):
    items = load_fixture("apify/headway.json")
    async with respx.mock(assert_all_called=True) as router:
        route = router.post(ACTOR_URL).mock(return_value=httpx.Response(200, json=items))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.async_handler)) as session:
            ingestor = RawAdIngestor(seeded_engine, ApifyClient("token", session=session, retry_delay=0))
            result = await ingestor.ingest(brand_id=1, as_of=AS_OF)
    assert route.calls[0].request.headers["Authorization"] == "Bearer token"
    assert (result.processed, result.inserted, result.rejected, result.total_stored) == (4, 3, 1, 3)
    ads = _raw_ads(seeded_engine, 1)
    assert sorted(ads) == ["1001", "1002", "1003"]
    first = ads["1001"]
    assert (first.start_date, first.end_date) == (date(2024, 1, 20), date(2024, 2, 10))
    assert first.link_url == "https://headway.app/offer?utm_source=fb&utm_campaign=summer&utm_id=1"
    assert first.media_type == "image"
    assert first.caption == "Key ideas from bestsellers in 15 minutes"
    assert first.publisher_platforms == ["FACEBOOK", "INSTAGRAM"]
    assert (first.ad_status, first.collation_count) == ("INACTIVE", 2)
    assert ads["1002"].end_date is None
    assert ads["1002"].media_type == "video"
    assert ads["1003"].link_url == "https://apps.apple.com/us/app/headway/id1457185832"
    assert _brand_status(seeded_engine, 1) == ("success", None, AS_OF)


@pytest.mark.asyncio
async def test_reingest_is_idempotent(seeded_engine):
    items = load_fixture("apify/headway.json")
    async with respx.mock(assert_all_called=True) as router:
        router.post(ACTOR_URL).mock(return_value=httpx.Response(200, json=items))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.async_handler)) as session:
            ingestor = RawAdIngestor(seeded_engine, ApifyClient("token", session=session, retry_delay=0))
            await ingestor.ingest(brand_id=1, as_of=AS_OF)
            before = _raw_ads(seeded_engine, 1)
            second = await ingestor.ingest(brand_id=1, as_of=AS_OF)
    assert second.total_stored == 3
    assert _raw_ads(seeded_engine, 1) == before


@pytest.mark.asyncio
async def test_ingest_creates_brand_from_library_url(seeded_engine):
    url = "https://www.facebook.com/ads/library/?view_all_page_id=555"
    async with respx.mock(assert_all_called=True) as router:
        router.post(ACTOR_URL).mock(return_value=httpx.Response(200, json=load_fixture("apify/headway.json")))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.async_handler)) as session:
            ingestor = RawAdIngestor(seeded_engine, ApifyClient("token", session=session, retry_delay=0))
            result = await ingestor.ingest(url, brand_name="Calm", as_of=AS_OF)
    assert result.brand_name == "Calm"
    with seeded_engine.connect() as conn:
        brand = conn.execute(select(brands.c.id, brands.c.brand_name).where(brands.c.ads_library_url == url)).one()
    assert brand == (result.brand_id, "Calm")


@pytest.mark.asyncio
async def test_meta_ingest_follows_pagination(seeded_engine):
    async with respx.mock(assert_all_called=True) as router:
        route = router.get(META_URL).mock(
            side_effect=[
                httpx.Response(200, json=load_fixture("meta/page_1.json")),
                httpx.Response(200, json=load_fixture("meta/page_2.json")),
            ]
        )
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.async_handler)) as session:
            ingestor = RawAdIngestor(seeded_engine, MetaAdsClient("token", session=session, retry_delay=0))
            result = await ingestor.ingest(brand_id=2, as_of=AS_OF)
    assert route.call_count == 2
    first_params = route.calls[0].request.url.params
    assert first_params["search_page_ids"] == "[222]"
    assert first_params["ad_delivery_date_min"] == "2023-03-15"
    assert route.calls[1].request.url.params["after"] == "abc"
    assert (result.processed, result.inserted, result.rejected) == (4, 3, 1)
    ads = _raw_ads(seeded_engine, 2)
    assert ads["2001"].end_date == date(2024, 2, 10)
    assert ads["2001"].ad_status == "INACTIVE"
    assert ads["2002"].creation_date == date(2024, 2, 1)
    assert ads["2003"].start_date == date(2024, 3, 1)
    assert all(ad.link_url is None for ad in ads.values())


@pytest.mark.asyncio
async def test_source_errors_are_retried_then_reported(seeded_engine):
    async with respx.mock(assert_all_called=True) as router:
        route = router.post(ACTOR_URL).mock(return_value=httpx.Response(503, text="busy"))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.async_handler)) as session:
            ingestor = RawAdIngestor(seeded_engine, ApifyClient("token", session=session, retry_delay=0))
            with pytest.raises(SourceUnavailable) as excinfo:
                await ingestor.ingest(brand_id=1, as_of=AS_OF)
    assert excinfo.value.status_code == 503
    assert route.call_count == 3
    status, error, fetched = _brand_status(seeded_engine, 1)
    assert status == "error"
    assert "503" in error
    assert fetched is None
    assert _raw_ads(seeded_engine, 1) == {}


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(seeded_engine):
    async with respx.mock(assert_all_called=True) as router:
        route = router.get(META_URL).mock(return_value=httpx.Response(400, json={"error": {"message": "bad token"}}))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.async_handler)) as session:
            client = MetaAdsClient("token", session=session, retry_delay=0)
            with pytest.raises(SourceUnavailable):
                await client.fetch_ads(NOOM_URL, IngestWindow(None, None, count=10))
    assert route.call_count == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [httpx.Response(200, text="<html>oops</html>"), httpx.Response(200, json={"items": []})])
async def test_malformed_apify_payload(seeded_engine, response):
    async with respx.mock(assert_all_called=True) as router:
        router.post(ACTOR_URL).mock(return_value=response)
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.async_handler)) as session:
            ingestor = RawAdIngestor(seeded_engine, ApifyClient("token", session=session, retry_delay=0))
            with pytest.raises(MalformedSourceData):
                await ingestor.ingest(brand_id=1, as_of=AS_OF)
    assert _brand_status(seeded_engine, 1)[0] == "error"


@pytest.mark.asyncio
async def test_meta_requires_a_page_id():
    async with httpx.AsyncClient() as session:
        client = MetaAdsClient("token", session=session)
        with pytest.raises(MalformedSourceData):
            await client.fetch_ads("https://www.facebook.com/ads/library/?q=noom", IngestWindow(None, None, count=5))


@pytest.mark.asyncio
async def test_malformed_dates_are_stored_as_null(seeded_engine):
    items = [
        {"ad_archive_id": "9001", "start_date": "garbage", "end_date": "soon", "snapshot": {"link_url": "https://headway.app/x"}},
        {"ad_archive_id": "undefined", "start_date": "2024-03-01"},
        "not an object",
    ]
    result = await RawAdIngestor(seeded_engine).ingest_items(
        store_brand(seeded_engine, 1), items, as_of=AS_OF
    )
    assert (result.processed, result.inserted, result.rejected) == (3, 1, 2)
    ad = _raw_ads(seeded_engine, 1)["9001"]
    assert (ad.start_date, ad.end_date, ad.source) == (None, None, "json")
    assert refresh_creative_summary(seeded_engine, 1, as_of=AS_OF) == 0


@pytest.mark.asyncio
async def test_apify_items_with_unusable_start_dates_are_kept(seeded_engine):
    items = [
        {"ad_archive_id": "9001", "start_date": "garbage", "snapshot": {"link_url": "https://headway.app/a"}},
        {"ad_archive_id": "9002", "start_date": "2024-02-01", "snapshot": {"link_url": "https://headway.app/b"}},
        {"ad_archive_id": "9003", "start_date": "2020-01-01"},
        {"error": "rate limited", "errorCode": "RATE_LIMIT"},
    ]
    async with respx.mock(assert_all_called=True) as router:
        router.post(ACTOR_URL).mock(return_value=httpx.Response(200, json=items))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.async_handler)) as session:
            ingestor = RawAdIngestor(seeded_engine, ApifyClient("token", session=session, retry_delay=0))
            result = await ingestor.ingest(brand_id=1, as_of=AS_OF)
    # 9003 started outside the window; the error row is counted as rejected.
    assert (result.processed, result.inserted, result.rejected) == (3, 2, 1)
    ads = _raw_ads(seeded_engine, 1)
    assert sorted(ads) == ["9001", "9002"]
    assert ads["9001"].start_date is None
    assert ads["9002"].start_date == date(2024, 2, 1)


def test_apify_media_lists_of_the_wrong_shape_are_ignored():
    ad = {
        "ad_archive_id": "7001",
        "start_date": "2024-02-01",
        "snapshot": {"cards": {"0": {"link_url": "https://headway.app/"}}, "videos": {"hd": "x"}, "images": {}},
    }
    record = normalize_apify_ad(ad, 1)
    assert record.ad_archive_id == "7001"
    assert (record.link_url, record.media_url, record.thumbnail_url, record.media_type) == (None, None, None, None)


@pytest.mark.asyncio
async def test_failed_write_leaves_no_partial_batch(seeded_engine, monkeypatch):
    def boom(conn, brand_id):
        raise PersistenceError("disk full")

    monkeypatch.setattr(store, "count_raw_ads", boom)
    with pytest.raises(PersistenceError):
        await RawAdIngestor(seeded_engine).ingest_items(
            store_brand(seeded_engine, 1), load_fixture("apify/headway.json"), as_of=AS_OF
        )
    with seeded_engine.connect() as conn:
        assert conn.execute(select(raw_data.c.ad_archive_id)).all() == []
    assert tuple(_brand_status(seeded_engine, 1))[:2] == ("error", "disk full")


def store_brand(engine, brand_id):
    with engine.connect() as conn:
        return store.get_brand(conn, brand_id)


def test_resolve_window():
    today = date(2024, 3, 15)
    explicit = resolve_window(date(2024, 1, 1), date(2024, 1, 31), 50, today=today)
    assert (explicit.start_date, explicit.end_date, explicit.count) == (date(2024, 1, 1), date(2024, 1, 31), None)
    assert resolve_window(count=5000, today=today).count == MAX_CREATIVES_PER_BRAND
    trailing = resolve_window(start_date=date(2024, 1, 1), today=today)
    assert (trailing.start_date, trailing.end_date) == (date(2023, 3, 15), today)
    with pytest.raises(ValueError):
        resolve_window(date(2024, 2, 1), date(2024, 1, 1))


def test_month_window():
    window = month_window(2024, 2)
    assert (window.start_date, window.end_date) == (date(2024, 2, 1), date(2024, 2, 29))
    with pytest.raises(ValueError):
        month_window(2024, 13)


def test_extract_page_id():
    assert extract_page_id(NOOM_URL) == "222"
    assert extract_page_id("https://www.facebook.com/ads/library/?id=987") == "987"
    assert extract_page_id("https://www.facebook.com/noom") is None


@pytest.mark.asyncio
async def test_source_from_env(monkeypatch):
    with pytest.raises(ConfigurationError):
        source_from_env()
    monkeypatch.setenv("APIFY_TOKEN", "apify-token")
    monkeypatch.setenv("META_ACCESS_TOKEN", "meta-token")
    async with httpx.AsyncClient() as session:
        assert source_from_env(session=session).name == "meta"
        monkeypatch.setenv("AD_SOURCE", "apify")
        assert source_from_env(session=session).name == "apify"
        monkeypatch.setenv("AD_SOURCE", "tiktok")
        with pytest.raises(ConfigurationError):
            source_from_env(session=session)


def test_load_brands():
    seeds = load_brands()
    assert len(seeds) == 3
    assert all(extract_page_id(seed.ads_library_url) for seed in seeds)
    assert len(load_brands(limit=1)) == 1
