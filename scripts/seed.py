"""Seed the database with the tracked competitor brands."""

from __future__ import annotations

import sys

from dotenv import load_dotenv

from adwatch.db import store
from adwatch.db.migrate import run_migrations
from adwatch.db.session import create_engine_from_env, transaction
from adwatch.ingest import load_brands


def main() -> None:
    load_dotenv()
    limit = int(sys.argv[1]) if len(sys.argv) > 1 else None
    engine = create_engine_from_env()
    run_migrations(engine)
    brands = load_brands(limit=limit)
    with transaction(engine) as conn:
        for brand in brands:
            store.ensure_brand(conn, brand.brand_name, brand.ads_library_url)
    print(f"Seed complete: {len(brands)} brands")


if __name__ == "__main__":
    main()
