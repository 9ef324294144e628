"""camp_etl.geocoding

OpenCage geocoding client and a bounded worker pool for batch lookups.

The client raises typed errors so callers can choose their policy:
  - the GeocodePool retries TransientGeocoderError with exponential
    backoff and aborts its remaining queue on GeocoderQuotaExceeded;
  - the Location Resolver looks up through a pool and swallows the final
    GeocoderError, keeping going with partial address data.

The API key is read from OPENCAGE_API_KEY; without it lookups return
None with a warning.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import CancelledError, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

import psycopg
import requests

log = logging.getLogger(__name__)

OPENCAGE_URL = "https://api.opencagedata.com/geocode/v1/json"
API_KEY_ENV = "OPENCAGE_API_KEY"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class GeocoderError(Exception):
    """Lookup failed in a way that is not 'no match'."""


class TransientGeocoderError(GeocoderError):
    """Network error, timeout, 429 or 5xx; worth retrying."""


class GeocoderQuotaExceeded(GeocoderError):
    """Credits exhausted or key disabled (HTTP 402/403); stop calling."""


class _Skipped(Exception):
    pass


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

@dataclass
class GeocodeResult:
    latitude: float
    longitude: float
    street: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None


class Geocoder(Protocol):
    def lookup(self, query: str, near_city: str | None = None) -> GeocodeResult | None:
        ...


def build_geocode_query(
    street: str | None = None,
    city: str | None = None,
    state: str | None = None,
    zip_code: str | None = None,
    fallback: str | None = None,
) -> str | None:
    """'123 Main St, Portland, OR 97201' from whatever fragments exist."""
    tail = " ".join(p for p in (state, zip_code) if p)
    parts = [p for p in (street, city, tail) if p]
    if parts:
        return ", ".join(parts)
    return fallback


def _components_to_result(item: dict[str, Any]) -> GeocodeResult | None:
    geometry = item.get("geometry") or {}
    lat, lng = geometry.get("lat"), geometry.get("lng")
    if lat is None or lng is None:
        return None
    c = item.get("components") or {}
    street = None
    if c.get("road"):
        street = f"{c['house_number']} {c['road']}" if c.get("house_number") else c["road"]
    return GeocodeResult(
        latitude=float(lat),
        longitude=float(lng),
        street=street,
        city=c.get("city") or c.get("town") or c.get("village") or c.get("suburb"),
        state=c.get("state_code") or c.get("state"),
        zip=c.get("postcode"),
    )


class OpenCageGeocoder:
    """Thin requests-based client for the OpenCage forward geocoding API."""

    def __init__(
        self,
        api_key: str | None = None,
        session: requests.Session | None = None,
        timeout: float = 15.0,
        country_code: str = "us",
    ) -> None:
        self._api_key = api_key if api_key is not None else os.environ.get(API_KEY_ENV, "")
        self._session = session or requests.Session()
        self._timeout = timeout
        self._country_code = country_code

    def lookup(self, query: str, near_city: str | None = None) -> GeocodeResult | None:
        """Return the best match, None for no match; raise GeocoderError otherwise."""
        if not self._api_key:
            log.warning("%s not set; skipping geocode of %r", API_KEY_ENV, query)
            return None
        q = query
        if near_city and near_city.lower() not in query.lower():
            q = f"{query}, {near_city}"
        try:
            resp = self._session.get(
                OPENCAGE_URL,
                params={
                    "q": q,
                    "key": self._api_key,
                    "countrycode": self._country_code,
                    "limit": 1,
                },
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise TransientGeocoderError(f"geocode request failed: {exc}") from exc

        if resp.status_code in (402, 403):
            raise GeocoderQuotaExceeded(f"geocoder refused request: HTTP {resp.status_code}")
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientGeocoderError(f"geocoder unavailable: HTTP {resp.status_code}")
        if resp.status_code != 200:
            raise GeocoderError(f"geocoder error: HTTP {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise GeocoderError(f"geocoder returned invalid JSON: {exc}") from exc
        results = payload.get("results") or []
        if not results:
            return None
        return _components_to_result(results[0])


# ---------------------------------------------------------------------------
# Bounded pool
# ---------------------------------------------------------------------------

@dataclass
class RetryPolicy:
    """Exponential backoff between attempts of one lookup."""

    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2.0 ** (attempt - 1)), self.max_delay)


@dataclass
class GeocodeRequest:
    key: str
    query: str
    near_city: str | None = None


@dataclass
class PoolOutcome:
    results: dict[str, GeocodeResult | None] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    stop_reason: str | None = None


class GeocodePool:
    """Run lookups through at most max_workers concurrent calls.

    ``run`` geocodes a batch; ``lookup`` makes the pool usable wherever a
    Geocoder is expected, so import-time lookups share the same retry and
    concurrency cap. After a quota error every later ``lookup`` fails fast.
    """

    def __init__(
        self,
        geocoder: Geocoder,
        max_workers: int = 3,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._geocoder = geocoder
        self._max_workers = max_workers
        self._retry = retry or RetryPolicy()
        self._sleep = sleep
        self._slots = threading.BoundedSemaphore(max_workers)
        self._quota_error: str | None = None

    def _call(self, req: GeocodeRequest, stop: threading.Event) -> GeocodeResult | None:
        for attempt in range(1, self._retry.max_attempts + 1):
            if stop.is_set():
                raise _Skipped()
            try:
                with self._slots:
                    return self._geocoder.lookup(req.query, req.near_city)
            except TransientGeocoderError as exc:
                if attempt >= self._retry.max_attempts:
                    raise
                delay = self._retry.delay_for(attempt)
                log.warning(
                    "geocode %s attempt %d failed (%s); retrying in %.1fs",
                    req.key, attempt, exc, delay,
                )
                self._sleep(delay)
        return None

    def lookup(self, query: str, near_city: str | None = None) -> GeocodeResult | None:
        if self._quota_error is not None:
            raise GeocoderQuotaExceeded(self._quota_error)
        try:
            return self._call(GeocodeRequest(query, query, near_city), threading.Event())
        except GeocoderQuotaExceeded as exc:
            self._quota_error = str(exc)
            raise

    def run(self, requests_: list[GeocodeRequest]) -> PoolOutcome:
        outcome = PoolOutcome()
        stop = threading.Event()
        with ThreadPoolExecutor(max_workers=self._max_workers) as executor:
            futures = {executor.submit(self._call, req, stop): req for req in requests_}
            for future in as_completed(futures):
                req = futures[future]
                try:
                    outcome.results[req.key] = future.result()
                except (CancelledError, _Skipped):
                    outcome.skipped.append(req.key)
                except GeocoderQuotaExceeded as exc:
                    outcome.failures[req.key] = str(exc)
                    if outcome.stop_reason is None:
                        outcome.stop_reason = str(exc)
                        log.warning("geocoder quota exhausted; aborting remaining queue")
                        stop.set()
                        for other in futures:
                            other.cancel()
                except GeocoderError as exc:
                    outcome.failures[req.key] = str(exc)
        return outcome


def as_pool(
    geocoder: Geocoder,
    max_workers: int = 3,
    retry: RetryPolicy | None = None,
) -> GeocodePool:
    """Wrap a bare geocoder in a pool; an existing pool is returned as is."""
    if isinstance(geocoder, GeocodePool):
        return geocoder
    return GeocodePool(geocoder, max_workers=max_workers, retry=retry)


# ---------------------------------------------------------------------------
# Location backfill
# ---------------------------------------------------------------------------

@dataclass
class BackfillCounters:
    locations_considered: int = 0
    locations_geocoded: int = 0
    locations_not_found: int = 0
    geocode_failures: int = 0
    locations_skipped: int = 0
    db_errors: int = 0
    stop_reason: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "locations_considered": self.locations_considered,
            "locations_geocoded": self.locations_geocoded,
            "locations_not_found": self.locations_not_found,
            "geocode_failures": self.geocode_failures,
            "locations_skipped": self.locations_skipped,
            "db_errors": self.db_errors,
            "stop_reason": self.stop_reason,
            "warnings": self.warnings[:50],
        }


def backfill_location_coordinates(
    conn: psycopg.Connection,
    pool: GeocodePool,
    limit: int = 100,
) -> BackfillCounters:
    """Geocode stored locations that still lack coordinates.

    Fills coordinates and any address component that is still NULL.
    Caller manages the transaction.
    """
    ctrs = BackfillCounters()
    rows = conn.execute(
        """
        SELECT id, name, street, city, state, zip
        FROM location
        WHERE latitude IS NULL OR longitude IS NULL
        ORDER BY created_at
        LIMIT %s
        """,
        (limit,),
    ).fetchall()
    reqs = []
    for loc_id, name, street, city, state, zip_code in rows:
        query = build_geocode_query(street, city, state, zip_code, fallback=name)
        if query:
            reqs.append(GeocodeRequest(key=str(loc_id), query=query, near_city=city))
    ctrs.locations_considered = len(reqs)

    outcome = pool.run(reqs)
    ctrs.stop_reason = outcome.stop_reason
    ctrs.locations_skipped = len(outcome.skipped)
    ctrs.geocode_failures = len(outcome.failures)
    for key, message in outcome.failures.items():
        ctrs.warnings.append(f"location {key}: {message}")

    for key, result in outcome.results.items():
        if result is None:
            ctrs.locations_not_found += 1
            continue
        try:
            with conn.transaction():
                conn.execute(
                    """
                    UPDATE location
                    SET latitude  = %s,
                        longitude = %s,
                        street    = COALESCE(street, %s),
                        city      = COALESCE(city, %s),
                        state     = COALESCE(state, %s),
                        zip       = COALESCE(zip, %s)
                    WHERE id = %s
                    """,
                    (
                        result.latitude, result.longitude, result.street,
                        result.city, result.state, result.zip, key,
                    ),
                )
            ctrs.locations_geocoded += 1
        except psycopg.Error as exc:
            ctrs.db_errors += 1
            ctrs.warnings.append(f"location {key}: {exc}")
    return ctrs
