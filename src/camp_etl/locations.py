"""camp_etl.locations

Location resolution for one import run.

Resolution order for a session's venue:
  1. a structured address supplied by the scraper;
  2. street/city/state/zip parsed out of the free-text location using the
     source's regional profile;
  3. the geocoder, for coordinates and any component still missing. Bare
     geocoders are wrapped in a GeocodePool so transient errors are retried.

Locations are cached by raw name for the life of the resolver and stored
once per (organization, name), so re-imports reuse the existing row and
never re-geocode it. Geocoder failures leave a partial record behind.
"""

from __future__ import annotations

import dataclasses
import logging
import re
from dataclasses import dataclass

import psycopg

from camp_etl.config import RegionalProfile
from camp_etl.geocoding import Geocoder, GeocoderError, as_pool, build_geocode_query
from camp_etl.models import ScrapedSession, StructuredAddress
from camp_etl.normalize import normalize_space

log = logging.getLogger(__name__)

DEFAULT_LOCATION_NAME = "Main Location"

_ZIP_RE = re.compile(r"\b(\d{5})(?:-\d{4})?\b")
_STREET_RE = re.compile(r"\b(\d+\s+[A-Za-z0-9][^,;\n]*)")
_TRAILING_ZIP_RE = re.compile(r"\s+\d{5}(?:-\d{4})?\s*$")


# ---------------------------------------------------------------------------
# Free-text address parsing
# ---------------------------------------------------------------------------

def _find_city(text: str, profile: RegionalProfile) -> re.Match[str] | None:
    """Last allow-listed city mention; the venue city usually trails the street."""
    best: re.Match[str] | None = None
    for city in profile.cities:
        for m in re.finditer(rf"\b{re.escape(city)}\b", text, re.IGNORECASE):
            if best is None or m.start() > best.start():
                best = m
    return best


def parse_address(text: str | None, profile: RegionalProfile) -> StructuredAddress:
    """Best-effort split of a free-text location into address components."""
    addr = StructuredAddress()
    text = normalize_space(text)
    if not text:
        return addr

    for m in _ZIP_RE.finditer(text):
        if any(m.group(1).startswith(prefix) for prefix in profile.zip_prefixes):
            addr.zip = m.group(1)
            break

    # Abbreviations are matched case-sensitively so the word "or" is not Oregon.
    state_alt = "|".join(re.escape(s) for s in profile.states)
    state_re = re.compile(rf"\b({state_alt})\b")
    state_match = None
    for m in state_re.finditer(text):
        state_match = m
    if state_match:
        addr.state = state_match.group(1)

    city_match = _find_city(text, profile)
    if city_match:
        canonical = next(c for c in profile.cities if c.lower() == city_match.group(0).lower())
        addr.city = canonical

    street_match = _STREET_RE.search(text)
    if street_match and not (addr.zip and street_match.group(1).strip() == addr.zip):
        street = street_match.group(1)
        street_start = street_match.start(1)
        # Cut back anything that bled in from the city/state/zip tail.
        if city_match and street_start < city_match.start() < street_match.end(1):
            street = text[street_start:city_match.start()]
        street = re.sub(rf"\s+\b(?:{state_alt})\b.*$", "", street)
        street = _TRAILING_ZIP_RE.sub("", street)
        street = street.strip(" ,.-")
        if re.match(r"^\d+\s+[A-Za-z]", street):
            addr.street = street

    return addr


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

@dataclass
class LocationOutcome:
    location_id: str
    created: bool


class LocationResolver:
    """Per-run, per-organization location cache backed by the location table."""

    def __init__(
        self,
        conn: psycopg.Connection,
        organization_id: str,
        profile: RegionalProfile,
        geocoder: Geocoder | None = None,
    ) -> None:
        self._conn = conn
        self._organization_id = organization_id
        self._profile = profile
        self._geocoder = as_pool(geocoder) if geocoder is not None else None
        self._cache: dict[str, str] = {}

    def clear_cache(self) -> None:
        """Forget cached ids; call after rolling back a savepoint that may have inserted one."""
        self._cache.clear()

    def _geocode(self, addr: StructuredAddress, name: str) -> StructuredAddress:
        if self._geocoder is None or addr.has_coordinates:
            return addr
        query = build_geocode_query(addr.street, addr.city, addr.state, addr.zip, fallback=name)
        if not query:
            return addr
        try:
            result = self._geocoder.lookup(query, addr.city or self._profile.default_city)
        except GeocoderError as exc:
            log.warning("geocoding %r failed: %s", query, exc)
            return addr
        if result is None:
            log.info("no geocoder match for %r", query)
            return addr
        return dataclasses.replace(
            addr,
            latitude=result.latitude,
            longitude=result.longitude,
            street=addr.street or result.street,
            city=addr.city or result.city,
            state=addr.state or result.state,
            zip=addr.zip or result.zip,
        )

    def resolve(self, session: ScrapedSession) -> LocationOutcome:
        name = normalize_space(session.location) or (
            session.address.street if session.address and session.address.street else None
        ) or DEFAULT_LOCATION_NAME

        cached = self._cache.get(name)
        if cached is not None:
            return LocationOutcome(cached, created=False)

        row = self._conn.execute(
            "SELECT id FROM location WHERE organization_id = %s AND name = %s",
            (self._organization_id, name),
        ).fetchone()
        if row:
            self._cache[name] = str(row[0])
            return LocationOutcome(str(row[0]), created=False)

        if session.address is not None:
            addr = dataclasses.replace(session.address)
        else:
            addr = parse_address(name, self._profile)
        addr = self._geocode(addr, name)

        row = self._conn.execute(
            """
            INSERT INTO location
                (organization_id, name, street, city, state, zip,
                 latitude, longitude, city_slug)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (organization_id, name) DO NOTHING
            RETURNING id
            """,
            (
                self._organization_id, name, addr.street, addr.city, addr.state,
                addr.zip, addr.latitude, addr.longitude, self._profile.city_slug,
            ),
        ).fetchone()
        created = row is not None
        if row is None:
            row = self._conn.execute(
                "SELECT id FROM location WHERE organization_id = %s AND name = %s",
                (self._organization_id, name),
            ).fetchone()
        location_id = str(row[0])
        self._cache[name] = location_id
        return LocationOutcome(location_id, created=created)
