"""camp_etl.sources

Scrape source records and their embedded health statistics.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from urllib.parse import urlparse

import psycopg


@dataclass
class ScraperHealth:
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    consecutive_failures: int = 0
    total_runs: int = 0
    success_rate: float = 0.0
    last_error: str | None = None
    needs_regeneration: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "consecutive_failures": self.consecutive_failures,
            "total_runs": self.total_runs,
            "success_rate": self.success_rate,
            "last_error": self.last_error,
            "needs_regeneration": self.needs_regeneration,
        }


@dataclass
class ScrapeSource:
    id: str
    name: str
    url: str
    domain: str | None
    city_slug: str
    organization_id: str | None
    is_active: bool
    scrape_frequency_hours: int
    next_scheduled_scrape: datetime | None
    health: ScraperHealth
    data_quality_score: int | None = None
    quality_tier: str | None = None


SOURCE_COLS = """
    id, name, url, domain, city_slug, organization_id, is_active,
    scrape_frequency_hours, next_scheduled_scrape,
    last_success_at, last_failure_at, consecutive_failures, total_runs,
    success_rate, last_error, needs_regeneration,
    data_quality_score, quality_tier
"""


def row_to_source(row: tuple) -> ScrapeSource:
    return ScrapeSource(
        id=str(row[0]),
        name=row[1],
        url=row[2],
        domain=row[3],
        city_slug=row[4],
        organization_id=str(row[5]) if row[5] is not None else None,
        is_active=row[6],
        scrape_frequency_hours=row[7],
        next_scheduled_scrape=row[8],
        health=ScraperHealth(
            last_success_at=row[9],
            last_failure_at=row[10],
            consecutive_failures=row[11],
            total_runs=row[12],
            success_rate=row[13],
            last_error=row[14],
            needs_regeneration=row[15],
        ),
        data_quality_score=row[16],
        quality_tier=row[17],
    )


def get_source(
    conn: psycopg.Connection,
    source_id: str,
    for_update: bool = False,
) -> ScrapeSource | None:
    lock = " FOR UPDATE" if for_update else ""
    row = conn.execute(
        f"SELECT {SOURCE_COLS} FROM scrape_source WHERE id = %s{lock}",
        (source_id,),
    ).fetchone()
    return row_to_source(row) if row else None


def create_source(
    conn: psycopg.Connection,
    name: str,
    url: str,
    city_slug: str = "portland",
    scrape_frequency_hours: int = 24,
    organization_id: str | None = None,
    is_active: bool = True,
) -> str:
    """Register a new scrape source; returns its id."""
    row = conn.execute(
        """
        INSERT INTO scrape_source
            (name, url, domain, city_slug, scrape_frequency_hours,
             organization_id, is_active)
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            name, url, urlparse(url).netloc or None, city_slug,
            scrape_frequency_hours, organization_id, is_active,
        ),
    ).fetchone()
    return str(row[0])
