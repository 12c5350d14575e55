"""Command line entry point for ingestion and summary refresh."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import pathlib
import sys
from typing import Any, Sequence

from dotenv import load_dotenv
from pydantic import ValidationError

from adwatch.db import store
from adwatch.db.session import create_engine_from_env, transaction
from adwatch.errors import AdwatchError
from adwatch.ingest.raw_ads import UNKNOWN_BRAND, RawAdIngestor
from adwatch.jobs.refresh import ingest, refresh_summaries
from adwatch.jobs.schemas import IngestPayload

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="adwatch", description="Competitor ad ingestion and summaries")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    ingest_cmd = sub.add_parser("ingest", help="Fetch and store a brand's ads")
    target = ingest_cmd.add_mutually_exclusive_group(required=True)
    target.add_argument("--ads-library-url")
    target.add_argument("--brand-id", type=int)
    ingest_cmd.add_argument("--brand-name")
    ingest_cmd.add_argument("--start-date")
    ingest_cmd.add_argument("--end-date")
    ingest_cmd.add_argument("--count", type=int)
    ingest_cmd.add_argument("--month", help="Ingest a single calendar month, YYYY-MM")
    ingest_cmd.add_argument("--no-refresh", action="store_true", help="Skip the summary refresh")

    refresh_cmd = sub.add_parser("refresh", help="Rebuild summaries for one brand or all active brands")
    refresh_cmd.add_argument("--brand-id", type=int)
    refresh_cmd.add_argument("--ingest-count", type=int, help="Re-ingest the most recent N ads first")

    json_cmd = sub.add_parser("ingest-json", help="Store a previously fetched scraper payload")
    json_cmd.add_argument("path", type=pathlib.Path)
    json_cmd.add_argument("--ads-library-url", required=True)
    json_cmd.add_argument("--brand-name")
    return parser


def ingest_payload_from_args(args: argparse.Namespace) -> IngestPayload:
    data: dict[str, Any] = {
        "ads_library_url": args.ads_library_url,
        "brand_id": args.brand_id,
        "brand_name": args.brand_name,
        "start_date": args.start_date,
        "end_date": args.end_date,
        "count": args.count,
        "refresh_summaries": not args.no_refresh,
    }
    if args.month:
        year, _, month = args.month.partition("-")
        data.update(year=int(year), month=int(month))
    return IngestPayload.model_validate(data)


async def ingest_json(path: pathlib.Path, ads_library_url: str, brand_name: str | None) -> dict[str, Any]:
    items = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(items, dict):
        items = items.get("items") or items.get("data") or []
    engine = create_engine_from_env()
    with transaction(engine) as conn:
        brand = store.ensure_brand(conn, brand_name or UNKNOWN_BRAND, ads_library_url)
    result = await RawAdIngestor(engine).ingest_items(brand, items)
    return result.as_dict()


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        if args.command == "ingest":
            output = asyncio.run(ingest(ingest_payload_from_args(args)))
        elif args.command == "refresh":
            output = asyncio.run(refresh_summaries({"brand_id": args.brand_id, "ingest_count": args.ingest_count}))
        else:
            output = asyncio.run(ingest_json(args.path, args.ads_library_url, args.brand_name))
    except ValidationError as exc:
        logger.error("Invalid arguments: %s", exc)
        return 2
    except (AdwatchError, ValueError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1
    print(json.dumps(output, indent=2, default=str))
    if args.command == "refresh" and output["totals"]["failed"]:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
