"""Trigger payloads for ingestion and summary refresh."""

from __future__ import annotations

from datetime import date

from pydantic import BaseModel, Field, model_validator

from adwatch.ingest.raw_ads import MAX_CREATIVES_PER_BRAND, month_window


class IngestPayload(BaseModel):
    ads_library_url: str | None = None
    brand_id: int | None = None
    brand_name: str | None = Field(default=None, max_length=120)
    start_date: date | None = None
    end_date: date | None = None
    count: int | None = Field(default=None, ge=1)
    year: int | None = Field(default=None, ge=2000, le=2100)
    month: int | None = Field(default=None, ge=1, le=12)
    refresh_summaries: bool = True

    @model_validator(mode="after")
    def _check_target_and_window(self) -> "IngestPayload":
        if self.brand_id is None and not self.ads_library_url:
            raise ValueError("Provide ads_library_url or brand_id")
        if (self.year is None) != (self.month is None):
            raise ValueError("year and month must be given together")
        if self.year is not None:
            if self.start_date or self.end_date:
                raise ValueError("Use either year/month or start_date/end_date")
            window = month_window(self.year, self.month)
            self.start_date, self.end_date = window.start_date, window.end_date
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class RefreshPayload(BaseModel):
    brand_id: int | None = None
    ingest_count: int | None = Field(default=None, ge=1, le=MAX_CREATIVES_PER_BRAND)
