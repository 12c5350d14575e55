"""Celery configuration for on-demand ingestion and refresh jobs."""

from __future__ import annotations

import os

from celery import Celery

from adwatch.utils.dates import TZ

broker_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
backend_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")

celery_app = Celery("adwatch", broker=broker_url, backend=backend_url, include=["adwatch.jobs.refresh"])
celery_app.conf.timezone = TZ
celery_app.conf.task_time_limit = int(os.environ.get("TASK_TIME_LIMIT", "900"))


@celery_app.task(name="adwatch.ingest_brand")
def ingest_brand_task(payload: dict) -> dict:  # pragma: no cover - executed by worker
    import asyncio

    from adwatch.jobs.refresh import ingest

    return asyncio.run(ingest(payload))


@celery_app.task(name="adwatch.refresh_summaries")
def refresh_summaries_task(brand_id: int | None = None, ingest_count: int | None = None) -> dict:  # pragma: no cover
    import asyncio

    from adwatch.jobs.refresh import refresh_summaries

    return asyncio.run(refresh_summaries({"brand_id": brand_id, "ingest_count": ingest_count}))
