"""camp_etl.import_pipeline

Import one scrape job's raw payload into the catalog.

Flow per job:
  1. load the raw payload (fatal if missing, already processed, or empty)
  2. resolve or create the owning organization
  3. enrich sessions from raw text, then expand flexible date ranges
  4. group sessions into camps by source product id or base name
  5. per session, inside its own savepoint:
       validate -> status -> quarantine | resolve location -> dedupe ->
       create or refresh in place
  6. recompute source quality, check the zero-price ratio, and mark the
     raw payload processed

Each per-session step returns an ImportCounters delta, and the orchestrator
folds the deltas together. Fatal operational errors come back as a failed
ImportResult and leave source health untouched.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any

import psycopg

from camp_etl.alerts import create_alert_unless_recent
from camp_etl.config import PipelineConfig, RegionalProfile
from camp_etl.dedup import (
    apply_session_refresh,
    find_existing_session,
    generate_dedupe_key,
    plan_session_refresh,
)
from camp_etl.flexible_dates import expand_sessions
from camp_etl.geocoding import Geocoder
from camp_etl.jobs import get_raw_data_for_job, mark_raw_data_processed
from camp_etl.locations import LocationResolver
from camp_etl.models import ScrapedSession, ScrapeResult, ValidationError, ValidationResult
from camp_etl.normalize import slug_name, strip_week_suffix, trim
from camp_etl.parsers import enrich_session
from camp_etl.sources import ScrapeSource, get_source
from camp_etl.validation import (
    SourceQuality,
    calculate_source_quality,
    determine_session_status,
    validate_session,
)

log = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 20
DEFAULT_CAPACITY = 20
UNNAMED_CAMP = "Unnamed Camp"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class FatalImportError(Exception):
    """Pipeline misconfiguration or unusable input; aborts the job's import."""


class SourceNotFound(FatalImportError):
    pass


class CityMappingNotFound(FatalImportError):
    pass


class RawDataNotFound(FatalImportError):
    pass


class RawDataAlreadyProcessed(FatalImportError):
    pass


class NoSessionsInResult(FatalImportError):
    pass


# ---------------------------------------------------------------------------
# Accumulator
# ---------------------------------------------------------------------------

@dataclass
class ImportCounters:
    sessions_found: int = 0
    sessions_processed: int = 0
    organizations_created: int = 0
    camps_created: int = 0
    sessions_created: int = 0
    sessions_updated: int = 0
    locations_created: int = 0
    duplicates_skipped: int = 0
    sessions_quarantined: int = 0
    session_errors: int = 0
    zero_price_sessions: int = 0
    completeness_scores: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def __add__(self, other: ImportCounters) -> ImportCounters:
        merged: dict[str, Any] = {}
        for f in fields(self):
            a, b = getattr(self, f.name), getattr(other, f.name)
            merged[f.name] = a + b
        merged["errors"] = merged["errors"][:MAX_REPORTED_ERRORS]
        return ImportCounters(**merged)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessions_found": self.sessions_found,
            "sessions_processed": self.sessions_processed,
            "organizations_created": self.organizations_created,
            "camps_created": self.camps_created,
            "sessions_created": self.sessions_created,
            "sessions_updated": self.sessions_updated,
            "locations_created": self.locations_created,
            "duplicates_skipped": self.duplicates_skipped,
            "sessions_quarantined": self.sessions_quarantined,
            "session_errors": self.session_errors,
            "zero_price_sessions": self.zero_price_sessions,
            "errors": self.errors[:MAX_REPORTED_ERRORS],
        }


@dataclass
class ImportResult:
    success: bool
    job_id: str
    source_id: str | None = None
    counters: ImportCounters = field(default_factory=ImportCounters)
    errors: list[str] = field(default_factory=list)
    resulting_session_id: str | None = None
    quality: SourceQuality | None = None
    alert_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "job_id": self.job_id,
            "source_id": self.source_id,
            "resulting_session_id": self.resulting_session_id,
            "data_quality_score": self.quality.score if self.quality else None,
            "quality_tier": self.quality.tier if self.quality else None,
            "alert_id": self.alert_id,
            "errors": self.errors[:MAX_REPORTED_ERRORS],
            **{k: v for k, v in self.counters.to_dict().items() if k != "errors"},
        }


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def group_key(session: ScrapedSession) -> str:
    if session.source_product_id:
        return f"product:{session.source_product_id}"
    return f"name:{strip_week_suffix(session.name or UNNAMED_CAMP)}"


def group_sessions(sessions: list[ScrapedSession]) -> dict[str, list[ScrapedSession]]:
    """Group in first-seen order by product id, else by name minus '- Week N'."""
    groups: dict[str, list[ScrapedSession]] = {}
    for session in sessions:
        groups.setdefault(group_key(session), []).append(session)
    return groups


def should_raise_zero_price_alert(
    total_sessions: int,
    zero_price_sessions: int,
    min_sessions: int = 3,
    max_ratio: float = 0.8,
) -> bool:
    if total_sessions < min_sessions:
        return False
    return zero_price_sessions / total_sessions > max_ratio


def partial_data(session: ScrapedSession) -> dict[str, Any]:
    """What a reviewer needs to fix a quarantined session by hand."""
    return {
        "name": session.name,
        "dateRaw": session.date_raw,
        "priceRaw": session.price_raw,
        "ageGradeRaw": session.age_grade_raw,
        "timeRaw": session.time_raw,
        "location": session.location,
        "description": session.description,
        "startDate": session.start_date,
        "endDate": session.end_date,
        "registrationUrl": session.registration_url,
    }


# ---------------------------------------------------------------------------
# Persistence steps
# ---------------------------------------------------------------------------

@dataclass
class _JobContext:
    conn: psycopg.Connection
    job_id: str
    source: ScrapeSource
    organization_id: str
    config: PipelineConfig
    resolver: LocationResolver
    now: datetime


def _resolve_organization(
    conn: psycopg.Connection,
    source: ScrapeSource,
    result: ScrapeResult,
) -> tuple[str, bool]:
    if source.organization_id:
        return source.organization_id, False
    org = result.organization or {}
    name = trim(org.get("name")) if isinstance(org.get("name"), str) else None
    website = trim(org.get("website")) if isinstance(org.get("website"), str) else None
    name = name or source.name
    website = website or source.url
    slug = slug_name(name) or slug_name(source.url)
    row = conn.execute(
        """
        INSERT INTO organization (name, slug, website)
        VALUES (%s, %s, %s)
        ON CONFLICT (slug) DO NOTHING
        RETURNING id
        """,
        (name, slug, website),
    ).fetchone()
    created = row is not None
    if row is None:
        row = conn.execute("SELECT id FROM organization WHERE slug = %s", (slug,)).fetchone()
    org_id = str(row[0])
    conn.execute(
        "UPDATE scrape_source SET organization_id = %s WHERE id = %s AND organization_id IS NULL",
        (org_id, source.id),
    )
    return org_id, created


def _upsert_camp(
    ctx: _JobContext,
    group: list[ScrapedSession],
) -> tuple[str, bool]:
    first = group[0]
    name = strip_week_suffix(first.name or UNNAMED_CAMP) or UNNAMED_CAMP
    slug = slug_name(name) or "camp"
    row = ctx.conn.execute(
        """
        INSERT INTO camp
            (organization_id, name, slug, description, categories,
             min_age, max_age, min_grade, max_grade, image_urls)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (organization_id, slug) DO NOTHING
        RETURNING id
        """,
        (
            ctx.organization_id, name, slug,
            first.description or f"{name} camp",
            [first.category] if first.category else ["General"],
            first.min_age, first.max_age, first.min_grade, first.max_grade,
            list(first.image_urls),
        ),
    ).fetchone()
    created = row is not None
    if row is None:
        row = ctx.conn.execute(
            "SELECT id FROM camp WHERE organization_id = %s AND slug = %s",
            (ctx.organization_id, slug),
        ).fetchone()
    return str(row[0]), created


def _insert_pending(
    ctx: _JobContext,
    session: ScrapedSession,
    validation: ValidationResult,
    extra_errors: list[ValidationError],
) -> str:
    errors = validation.errors_as_dicts() + [e.to_dict() for e in extra_errors]
    row = ctx.conn.execute(
        """
        INSERT INTO pending_session
            (job_id, source_id, raw_data, partial_data, validation_errors,
             completeness_score, status, created_at)
        VALUES (%s, %s, %s::jsonb, %s::jsonb, %s::jsonb, %s, 'pending_review', %s)
        RETURNING id
        """,
        (
            ctx.job_id, ctx.source.id,
            json.dumps(session.to_dict(), default=str),
            json.dumps(partial_data(session), default=str),
            json.dumps(errors, default=str),
            validation.completeness_score, ctx.now,
        ),
    ).fetchone()
    return str(row[0])


def _insert_session(
    ctx: _JobContext,
    session: ScrapedSession,
    validation: ValidationResult,
    status: str,
    camp_id: str,
    location_id: str,
) -> str:
    norm = validation.normalized
    enrolled = session.enrolled_count or 0
    if session.capacity is not None:
        capacity = session.capacity
    elif session.spots_left is not None:
        capacity = enrolled + session.spots_left
    else:
        capacity = DEFAULT_CAPACITY
    row = ctx.conn.execute(
        """
        INSERT INTO session
            (camp_id, location_id, organization_id, source_id, name, dedupe_key,
             start_date, end_date, drop_off_hour, drop_off_minute,
             pick_up_hour, pick_up_minute, price_in_cents, capacity,
             enrolled_count, spots_left, min_age, max_age, min_grade, max_grade,
             registration_url, source_product_id, status, completeness_score,
             missing_fields, data_source, last_scraped_at)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 'scraped', %s)
        RETURNING id
        """,
        (
            camp_id, location_id, ctx.organization_id, ctx.source.id,
            session.name or UNNAMED_CAMP,
            generate_dedupe_key(ctx.source.id, session.name, norm.start_date),
            norm.start_date, norm.end_date or norm.start_date,
            norm.drop_off_hour, norm.drop_off_minute,
            norm.pick_up_hour, norm.pick_up_minute,
            norm.price_in_cents, capacity, enrolled, session.spots_left,
            norm.min_age, norm.max_age, norm.min_grade, norm.max_grade,
            norm.registration_url, session.source_product_id, status,
            validation.completeness_score, validation.missing_fields, ctx.now,
        ),
    ).fetchone()
    return str(row[0])


def _import_session(
    ctx: _JobContext,
    session: ScrapedSession,
    camp_id: str,
) -> tuple[ImportCounters, str | None]:
    """Validate, classify and persist one session. Returns (delta, catalog session id)."""
    cfg = ctx.config
    validation = validate_session(session, cfg.max_session_days)
    status = determine_session_status(
        validation.completeness_score,
        session.price_in_cents,
        session.price_raw,
        cfg.review_min_score,
        cfg.active_score,
        overlong_span=any(e.field == "dateRange" for e in validation.errors),
    )
    delta = ImportCounters(
        sessions_processed=1,
        completeness_scores=[validation.completeness_score],
        zero_price_sessions=int(session.price_in_cents == 0),
    )
    start_date = validation.normalized.start_date

    if status == "pending_review" or start_date is None:
        extra = []
        if status != "pending_review":
            extra.append(ValidationError(
                "startDate",
                "A valid start date is required to catalog a session",
                session.start_date,
            ))
        _insert_pending(ctx, session, validation, extra)
        delta.sessions_quarantined = 1
        return delta, None

    location = ctx.resolver.resolve(session)
    delta.locations_created = int(location.created)

    existing = find_existing_session(
        ctx.conn, ctx.source.id, ctx.organization_id, session.name, start_date,
    )
    if existing is not None:
        refresh = plan_session_refresh(existing, session, ctx.source.id)
        apply_session_refresh(ctx.conn, existing.id, refresh, ctx.now)
        delta.duplicates_skipped = 1
        delta.sessions_updated = int(not refresh.is_empty)
        return delta, existing.id

    session_id = _insert_session(ctx, session, validation, status, camp_id, location.location_id)
    delta.sessions_created = 1
    return delta, session_id


def _update_source_metrics(
    ctx: _JobContext,
    quality: SourceQuality,
    counters: ImportCounters,
) -> None:
    ctx.conn.execute(
        """
        UPDATE scrape_source
        SET data_quality_score     = %s,
            quality_tier           = %s,
            session_count          = (SELECT count(*) FROM session WHERE source_id = %s),
            active_session_count   = (SELECT count(*) FROM session
                                      WHERE source_id = %s AND status = 'active'),
            last_sessions_found_at = CASE WHEN %s > 0 THEN %s ELSE last_sessions_found_at END
        WHERE id = %s
        """,
        (
            quality.score, quality.tier, ctx.source.id, ctx.source.id,
            counters.sessions_found, ctx.now, ctx.source.id,
        ),
    )


# ---------------------------------------------------------------------------
# Top-level runners
# ---------------------------------------------------------------------------

def _load_job_input(
    conn: psycopg.Connection,
    job_id: str,
    profiles: dict[str, RegionalProfile],
):
    raw = get_raw_data_for_job(conn, job_id)
    if raw is None:
        raise RawDataNotFound("No raw data found")
    if raw.processed_at is not None:
        raise RawDataAlreadyProcessed(f"Raw data {raw.id} was already processed")
    source = get_source(conn, raw.source_id)
    if source is None:
        return raw, None, None, None
    profile = profiles.get(source.city_slug)
    result = ScrapeResult.from_dict(raw.payload)
    return raw, source, profile, result


def import_job(
    conn: psycopg.Connection,
    job_id: str,
    config: PipelineConfig,
    profiles: dict[str, RegionalProfile],
    geocoder: Geocoder | None = None,
    now: datetime | None = None,
) -> ImportResult:
    """Import a job's raw payload. Caller manages the outer transaction."""
    now = now or datetime.now(timezone.utc)
    raw = None
    try:
        raw, source, profile, result = _load_job_input(conn, job_id, profiles)
        if source is None:
            raise SourceNotFound("Source not found")
        if profile is None:
            raise CityMappingNotFound(f"City mapping not found for {source.city_slug!r}")
        if not result.sessions:
            raise NoSessionsInResult("No sessions in scrape result")
    except FatalImportError as exc:
        log.warning("import of job %s aborted: %s", job_id, exc)
        if raw is not None and raw.processed_at is None:
            mark_raw_data_processed(conn, raw.id, now, processing_error=str(exc))
        return ImportResult(
            success=False,
            job_id=job_id,
            source_id=raw.source_id if raw else None,
            errors=[str(exc)],
        )

    org_id, org_created = _resolve_organization(conn, source, result)
    counters = ImportCounters(organizations_created=int(org_created))

    enriched = [enrich_session(s, profile.seasons or None) for s in result.sessions]
    sessions = expand_sessions(enriched, config.max_session_days)
    counters += ImportCounters(sessions_found=len(sessions))

    ctx = _JobContext(
        conn=conn,
        job_id=job_id,
        source=source,
        organization_id=org_id,
        config=config,
        resolver=LocationResolver(conn, org_id, profile, geocoder),
        now=now,
    )

    first_session_id: str | None = None
    for group in group_sessions(sessions).values():
        try:
            with conn.transaction():
                camp_id, camp_created = _upsert_camp(ctx, group)
        except Exception as exc:
            log.warning("camp upsert failed for %r: %s", group[0].name, exc)
            counters += ImportCounters(
                session_errors=len(group),
                errors=[f"camp {group[0].name!r}: {exc}"],
            )
            continue
        counters += ImportCounters(camps_created=int(camp_created))

        for session in group:
            try:
                with conn.transaction():
                    delta, session_id = _import_session(ctx, session, camp_id)
            except Exception as exc:
                ctx.resolver.clear_cache()
                log.warning("session %r failed: %s", session.name, exc)
                counters += ImportCounters(
                    session_errors=1,
                    errors=[f"session {session.name!r}: {exc}"],
                )
                continue
            counters += delta
            if first_session_id is None and session_id is not None:
                first_session_id = session_id

    quality = calculate_source_quality(
        counters.completeness_scores, config.high_quality, config.medium_quality,
    )
    _update_source_metrics(ctx, quality, counters)

    alert_id = None
    if should_raise_zero_price_alert(
        counters.sessions_processed,
        counters.zero_price_sessions,
        config.zero_price_min_sessions,
        config.zero_price_max_ratio,
    ):
        pct = round(100 * counters.zero_price_sessions / counters.sessions_processed)
        alert_id = create_alert_unless_recent(
            conn, source.id, "scraper_degraded",
            f'Scraper "{source.name}": {counters.zero_price_sessions} of '
            f"{counters.sessions_processed} sessions ({pct}%) have a zero price. "
            "Suspected zero-price extraction failure.",
            "warning", now, config.zero_price_dedupe_hours,
        )

    if first_session_id is not None:
        mark_raw_data_processed(conn, raw.id, now, resulting_session_id=first_session_id)
    else:
        mark_raw_data_processed(
            conn, raw.id, now,
            processing_error=(
                f"No catalog session produced: {counters.sessions_quarantined} quarantined, "
                f"{counters.session_errors} failed"
            ),
        )

    log.info(
        "job %s imported: %d created, %d duplicates, %d quarantined, %d errors",
        job_id, counters.sessions_created, counters.duplicates_skipped,
        counters.sessions_quarantined, counters.session_errors,
    )
    return ImportResult(
        success=True,
        job_id=job_id,
        source_id=source.id,
        counters=counters,
        errors=counters.errors[:MAX_REPORTED_ERRORS],
        resulting_session_id=first_session_id,
        quality=quality,
        alert_id=alert_id,
    )


def import_latest_for_source(
    conn: psycopg.Connection,
    source_id: str,
    config: PipelineConfig,
    profiles: dict[str, RegionalProfile],
    geocoder: Geocoder | None = None,
    now: datetime | None = None,
) -> ImportResult:
    """Import the most recently completed job of a source."""
    row = conn.execute(
        """
        SELECT id FROM scrape_job
        WHERE source_id = %s AND status = 'completed'
        ORDER BY completed_at DESC
        LIMIT 1
        """,
        (source_id,),
    ).fetchone()
    if row is None:
        return ImportResult(
            success=False,
            job_id="",
            source_id=source_id,
            errors=["No completed scrape job found"],
        )
    return import_job(conn, str(row[0]), config, profiles, geocoder, now)
