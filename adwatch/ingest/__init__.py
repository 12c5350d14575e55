"""Ingestion helpers."""

from __future__ import annotations

import pathlib

import yaml

from adwatch.ingest.models import SeedBrand

BRANDS_PATH = pathlib.Path(__file__).with_name("brands.yml")


def load_brands(limit: int | None = None, path: pathlib.Path = BRANDS_PATH) -> list[SeedBrand]:
    data = yaml.safe_load(path.read_text()) or []
    brands = [SeedBrand(**item) for item in data]
    if limit:
        return brands[:limit]
    return brands
