"""Pipeline orchestration: ingestion followed by both summary refreshes.

A targeted run covers one brand and raises the first error it hits. A batch run
covers every active brand with bounded concurrency; a failing brand is recorded
and the batch carries on.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable

from dotenv import load_dotenv
from sqlalchemy.engine import Engine

from adwatch.db import store
from adwatch.db.session import create_engine_from_env, transaction
from adwatch.ingest.models import Brand, IngestResult
from adwatch.ingest.raw_ads import AdSource, RawAdIngestor, source_from_env
from adwatch.jobs.schemas import IngestPayload, RefreshPayload
from adwatch.logic.creative import refresh_creative_summary
from adwatch.logic.funnel import refresh_funnel_summary
from adwatch.logic.funnels import FunnelPolicy, load_policy
from adwatch.utils.dates import today_utc

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4


class PipelineState(str, enum.Enum):
    PENDING = "pending"
    INGESTING = "ingesting"
    AGGREGATING_CREATIVE = "aggregating_creative"
    AGGREGATING_FUNNEL = "aggregating_funnel"
    DONE = "done"
    FAILED = "failed"
    FAILED_FOR_BRAND = "failed_for_brand"


@dataclass(slots=True)
class BrandRunResult:
    brand_id: int
    brand_name: str | None = None
    state: PipelineState = PipelineState.PENDING
    creative: int = 0
    funnel: int = 0
    ingest: IngestResult | None = None
    error: str | None = None
    failed_step: PipelineState | None = None

    @property
    def success(self) -> bool:
        return self.state is PipelineState.DONE

    def as_dict(self) -> dict[str, Any]:
        return {
            "brand_id": self.brand_id,
            "brand_name": self.brand_name,
            "success": self.success,
            "state": self.state.value,
            "creative_count": self.creative,
            "funnel_count": self.funnel,
            "ingest": self.ingest.as_dict() if self.ingest else None,
            "error": self.error,
            "failed_step": self.failed_step.value if self.failed_step else None,
        }


@dataclass(slots=True)
class BatchResult:
    results: list[BrandRunResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return len(self.results) - self.succeeded

    @property
    def creative(self) -> int:
        return sum(r.creative for r in self.results)

    @property
    def funnel(self) -> int:
        return sum(r.funnel for r in self.results)

    def as_dict(self) -> dict[str, Any]:
        return {
            "results": [r.as_dict() for r in self.results],
            "totals": {
                "brands": len(self.results),
                "succeeded": self.succeeded,
                "failed": self.failed,
                "creative_count": self.creative,
                "funnel_count": self.funnel,
            },
        }


class BrandLocks:
    """Per-brand mutual exclusion for summary rewrites within one process."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = defaultdict(threading.Lock)

    def __call__(self, brand_id: int) -> threading.Lock:
        with self._guard:
            return self._locks[brand_id]


BRAND_LOCKS = BrandLocks()


def max_workers_from_env() -> int:
    return max(1, int(os.environ.get("REFRESH_MAX_WORKERS", DEFAULT_MAX_WORKERS)))


class PipelineOrchestrator:
    def __init__(
        self,
        engine: Engine,
        *,
        source_factory: Callable[[], AdSource] = source_from_env,
        max_workers: int | None = None,
        policy: FunnelPolicy | None = None,
        locks: BrandLocks = BRAND_LOCKS,
    ) -> None:
        self.engine = engine
        self.source_factory = source_factory
        self.max_workers = max_workers or max_workers_from_env()
        self.policy = policy or load_policy()
        self.locks = locks

    async def run_for_brand(
        self,
        brand_id: int,
        *,
        ingest: IngestPayload | None = None,
        as_of: date | None = None,
    ) -> BrandRunResult:
        as_of = as_of or today_utc()
        result = BrandRunResult(brand_id=brand_id)
        source = self.source_factory() if ingest is not None else None
        try:
            await self._run_steps(result, ingest, source, as_of)
        except Exception:
            result.failed_step, result.state = result.state, PipelineState.FAILED
            logger.exception("Pipeline failed for brand %s at %s", brand_id, result.failed_step.value)
            raise
        finally:
            if source is not None:
                await source.close()
        return result

    async def run_for_all_active(
        self,
        *,
        ingest_count: int | None = None,
        as_of: date | None = None,
    ) -> BatchResult:
        as_of = as_of or today_utc()
        loop = asyncio.get_running_loop()
        brands = await loop.run_in_executor(None, self._active_brands)
        logger.info("Refreshing %s active brands with %s workers", len(brands), self.max_workers)
        source = self.source_factory() if ingest_count else None
        semaphore = asyncio.Semaphore(self.max_workers)

        async def run_one(brand: Brand) -> BrandRunResult:
            result = BrandRunResult(brand_id=brand.id, brand_name=brand.brand_name)
            request = None
            if source is not None and brand.ads_library_url:
                request = IngestPayload(brand_id=brand.id, count=ingest_count, refresh_summaries=False)
            async with semaphore:
                try:
                    await self._run_steps(result, request, source, as_of)
                except Exception as exc:
                    result.failed_step, result.state = result.state, PipelineState.FAILED_FOR_BRAND
                    result.error = str(exc) or exc.__class__.__name__
                    logger.warning(
                        "Refresh failed for %s at %s: %s", brand.brand_name, result.failed_step.value, result.error
                    )
            return result

        try:
            results = await asyncio.gather(*(run_one(brand) for brand in brands))
        finally:
            if source is not None:
                await source.close()
        batch = BatchResult(results=list(results))
        logger.info("Batch refresh finished: %s succeeded, %s failed", batch.succeeded, batch.failed)
        return batch

    async def ingest(self, payload: IngestPayload, *, as_of: date | None = None) -> BrandRunResult:
        """Raw ingestion trigger; refreshes the brand's summaries unless told not to."""
        as_of = as_of or today_utc()
        source = self.source_factory()
        try:
            ingest_result = await self._ingest(payload, source, as_of)
        finally:
            await source.close()
        result = BrandRunResult(
            brand_id=ingest_result.brand_id,
            brand_name=ingest_result.brand_name,
            ingest=ingest_result,
        )
        if payload.refresh_summaries:
            try:
                await self._run_steps(result, None, None, as_of)
            except Exception:
                result.failed_step, result.state = result.state, PipelineState.FAILED
                logger.exception("Summary refresh failed for brand %s at %s", result.brand_id, result.failed_step.value)
                raise
            ingest_result.summaries = {"creative": result.creative, "funnel": result.funnel}
        else:
            result.state = PipelineState.DONE
        return result

    async def _run_steps(
        self,
        result: BrandRunResult,
        ingest: IngestPayload | None,
        source: AdSource | None,
        as_of: date,
    ) -> None:
        loop = asyncio.get_running_loop()
        if ingest is not None and source is not None:
            result.state = PipelineState.INGESTING
            result.ingest = await self._ingest(ingest.model_copy(update={"brand_id": result.brand_id}), source, as_of)
        await loop.run_in_executor(None, self._aggregate, result, as_of)

    async def _ingest(self, payload: IngestPayload, source: AdSource, as_of: date) -> IngestResult:
        ingestor = RawAdIngestor(self.engine, source)
        return await ingestor.ingest(
            payload.ads_library_url,
            brand_id=payload.brand_id,
            brand_name=payload.brand_name,
            start_date=payload.start_date,
            end_date=payload.end_date,
            count=payload.count,
            as_of=as_of,
        )

    def _aggregate(self, result: BrandRunResult, as_of: date) -> None:
        with self.locks(result.brand_id):
            if result.brand_name is None:
                with transaction(self.engine) as conn:
                    result.brand_name = store.get_brand(conn, result.brand_id).brand_name
            result.state = PipelineState.AGGREGATING_CREATIVE
            result.creative = refresh_creative_summary(self.engine, result.brand_id, as_of=as_of)
            result.state = PipelineState.AGGREGATING_FUNNEL
            result.funnel = refresh_funnel_summary(self.engine, result.brand_id, as_of=as_of, policy=self.policy)
            result.state = PipelineState.DONE

    def _active_brands(self) -> list[Brand]:
        with transaction(self.engine) as conn:
            return store.list_active_brands(conn)


async def ingest(payload: IngestPayload | dict[str, Any], *, engine: Engine | None = None) -> dict[str, Any]:
    """Raw ingestion trigger. Returns ``inserted``/``processed`` counts and summary counts."""
    load_dotenv()
    if not isinstance(payload, IngestPayload):
        payload = IngestPayload.model_validate(payload)
    orchestrator = PipelineOrchestrator(engine or create_engine_from_env())
    result = await orchestrator.ingest(payload)
    response = result.as_dict()
    response.update(
        inserted=result.ingest.inserted,
        processed=result.ingest.processed,
        summaries={"creative": result.creative, "funnel": result.funnel} if payload.refresh_summaries else None,
    )
    return response


async def refresh_summaries(
    payload: RefreshPayload | dict[str, Any] | None = None,
    *,
    engine: Engine | None = None,
) -> dict[str, Any]:
    """Summary refresh trigger: one brand when ``brand_id`` is set, otherwise every active brand."""
    load_dotenv()
    if not isinstance(payload, RefreshPayload):
        payload = RefreshPayload.model_validate(payload or {})
    orchestrator = PipelineOrchestrator(engine or create_engine_from_env())
    if payload.brand_id is None:
        batch = await orchestrator.run_for_all_active(ingest_count=payload.ingest_count)
        return batch.as_dict()
    ingest_request = IngestPayload(brand_id=payload.brand_id, count=payload.ingest_count) if payload.ingest_count else None
    result = await orchestrator.run_for_brand(payload.brand_id, ingest=ingest_request)
    return BatchResult(results=[result]).as_dict()


if __name__ == "__main__":
    asyncio.run(refresh_summaries())
