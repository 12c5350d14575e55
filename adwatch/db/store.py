"""Typed access to brands, raw ads and the summary tables.

Every function takes an open ``Connection`` so the caller owns the transaction.
SQLAlchemy failures surface as ``PersistenceError``.
"""

from __future__ import annotations

import dataclasses
import functools
import logging
from datetime import date
from typing import Any, Callable, Iterable, Sequence

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql.schema import Table

from adwatch.db.tables import brand_creative_summary, brand_funnel_summary, brands, raw_data
from adwatch.errors import BrandNotFound, PersistenceError
from adwatch.ingest.models import Brand, CreativeSummaryRow, FunnelSummaryRow, RawAdRecord
from adwatch.utils.dates import now_utc, today_utc

logger = logging.getLogger(__name__)

BATCH_SIZE = 200
BRAND_COLUMNS = (brands.c.id, brands.c.brand_name, brands.c.ads_library_url, brands.c.is_active)
CREATIVE_KEY = ("brand_id", "month")
FUNNEL_KEY = ("brand_id", "month", "funnel_url")


def persistence(fn: Callable) -> Callable:
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"{fn.__name__} failed: {exc}") from exc
    return wrapper


def _insert_for(conn: Connection):
    if conn.dialect.name == "postgresql":
        return postgresql.insert
    if conn.dialect.name == "sqlite":
        return sqlite.insert
    raise PersistenceError(f"Unsupported database dialect: {conn.dialect.name}")


def _upsert(conn: Connection, table: Table, rows: Sequence[dict[str, Any]], key: Sequence[str]) -> int:
    if not rows:
        return 0
    insert = _insert_for(conn)
    written = 0
    for offset in range(0, len(rows), BATCH_SIZE):
        batch = rows[offset : offset + BATCH_SIZE]
        stmt = insert(table).values(batch)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(key),
            set_={col.name: stmt.excluded[col.name] for col in table.columns if col.name not in key},
        )
        conn.execute(stmt)
        written += len(batch)
    return written


def _to_brand(row) -> Brand:
    return Brand(
        id=row.id,
        brand_name=row.brand_name,
        ads_library_url=row.ads_library_url,
        is_active=bool(row.is_active),
    )


@persistence
def get_brand(conn: Connection, brand_id: int) -> Brand:
    row = conn.execute(select(*BRAND_COLUMNS).where(brands.c.id == brand_id)).first()
    if row is None:
        raise BrandNotFound(f"Brand {brand_id} does not exist")
    return _to_brand(row)


@persistence
def find_brand_by_name(conn: Connection, brand_name: str) -> Brand | None:
    row = conn.execute(
        select(*BRAND_COLUMNS).where(brands.c.brand_name == brand_name).order_by(brands.c.id)
    ).first()
    return _to_brand(row) if row else None


@persistence
def list_active_brands(conn: Connection) -> list[Brand]:
    result = conn.execute(select(*BRAND_COLUMNS).where(brands.c.is_active.is_(True)).order_by(brands.c.id))
    return [_to_brand(row) for row in result]


@persistence
def ensure_brand(conn: Connection, brand_name: str, ads_library_url: str) -> Brand:
    """Get or create the brand tracked under ``ads_library_url``."""
    existing = conn.execute(
        select(brands.c.id).where(brands.c.ads_library_url == ads_library_url)
    ).scalar_one_or_none()
    if existing is not None:
        conn.execute(
            update(brands)
            .where(brands.c.id == existing)
            .values(brand_name=brand_name, is_active=True)
        )
        return Brand(id=existing, brand_name=brand_name, ads_library_url=ads_library_url)
    result = conn.execute(
        brands.insert().values(brand_name=brand_name, ads_library_url=ads_library_url, is_active=True)
    )
    brand_id = int(result.inserted_primary_key[0])
    logger.info("Created brand %s (%s)", brand_name, brand_id)
    return Brand(id=brand_id, brand_name=brand_name, ads_library_url=ads_library_url)


@persistence
def record_fetch_status(
    conn: Connection,
    brand_id: int,
    status: str,
    error: str | None = None,
    *,
    as_of: date | None = None,
) -> None:
    values: dict[str, Any] = {"last_fetch_status": status, "last_fetch_error": error}
    if status == "success":
        values["last_fetched_date"] = as_of or today_utc()
    conn.execute(update(brands).where(brands.c.id == brand_id).values(**values))


@persistence
def upsert_raw_ads(conn: Connection, records: Iterable[RawAdRecord]) -> int:
    ingested_at = now_utc()
    rows = {}
    for record in records:
        # PostgreSQL rejects a repeated key inside one INSERT ... ON CONFLICT.
        rows[record.ad_archive_id] = {**dataclasses.asdict(record), "ingested_at": ingested_at}
    return _upsert(conn, raw_data, list(rows.values()), ("ad_archive_id",))


@persistence
def load_raw_ads(conn: Connection, brand_id: int) -> list[RawAdRecord]:
    fields = [f.name for f in dataclasses.fields(RawAdRecord)]
    result = conn.execute(
        select(*(raw_data.c[name] for name in fields))
        .where(raw_data.c.brand_id == brand_id)
        .order_by(raw_data.c.ad_archive_id)
    )
    return [RawAdRecord(**row._asdict()) for row in result]


@persistence
def count_raw_ads(conn: Connection, brand_id: int) -> int:
    return int(
        conn.execute(
            select(func.count()).select_from(raw_data).where(raw_data.c.brand_id == brand_id)
        ).scalar_one()
    )


@persistence
def replace_creative_summary(conn: Connection, brand_id: int, rows: Sequence[CreativeSummaryRow]) -> int:
    return _replace(conn, brand_creative_summary, brand_id, [dataclasses.asdict(r) for r in rows], CREATIVE_KEY)


@persistence
def replace_funnel_summary(conn: Connection, brand_id: int, rows: Sequence[FunnelSummaryRow]) -> int:
    return _replace(conn, brand_funnel_summary, brand_id, [dataclasses.asdict(r) for r in rows], FUNNEL_KEY)


@persistence
def load_creative_summary(conn: Connection, brand_id: int) -> list[CreativeSummaryRow]:
    result = conn.execute(
        select(brand_creative_summary)
        .where(brand_creative_summary.c.brand_id == brand_id)
        .order_by(brand_creative_summary.c.month)
    )
    return [CreativeSummaryRow(**row._asdict()) for row in result]


@persistence
def load_funnel_summary(conn: Connection, brand_id: int) -> list[FunnelSummaryRow]:
    result = conn.execute(
        select(brand_funnel_summary)
        .where(brand_funnel_summary.c.brand_id == brand_id)
        .order_by(brand_funnel_summary.c.month, brand_funnel_summary.c.funnel_url)
    )
    return [FunnelSummaryRow(**row._asdict()) for row in result]


def _replace(
    conn: Connection,
    table: Table,
    brand_id: int,
    rows: Sequence[dict[str, Any]],
    key: Sequence[str],
) -> int:
    """Upsert every row, then drop this brand's keys the recompute no longer produced."""
    if any(row["brand_id"] != brand_id for row in rows):
        raise ValueError("Summary rows must all belong to the brand being replaced")
    written = _upsert(conn, table, rows, key)
    columns = [table.c[name] for name in key]
    fresh = {tuple(row[name] for name in key) for row in rows}
    existing = conn.execute(select(*columns).where(table.c.brand_id == brand_id)).all()
    stale = [tuple(row) for row in existing if tuple(row) not in fresh]
    if stale:
        logger.info("Pruning %s stale %s rows for brand %s", len(stale), table.name, brand_id)
        for values in stale:
            conn.execute(delete(table).where(and_(*(col == value for col, value in zip(columns, values)))))
    return written
