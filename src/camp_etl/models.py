"""camp_etl.models

Typed records for scraper output and validation results.

Scrapers emit loosely-typed JSON. ScrapedSession.from_dict() turns one
session object into a record whose required fields can each be asked for
their FieldState: present (usable value), unparsed (the source gave us
text we could not turn into a value) or absent (the source never said).
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from camp_etl.normalize import coerce_int, coerce_number, is_placeholder, trim


class FieldState(str, enum.Enum):
    PRESENT = "present"
    UNPARSED = "unparsed"
    ABSENT = "absent"


# ---------------------------------------------------------------------------
# Required fields: name -> (value attributes, raw-text attribute)
# ---------------------------------------------------------------------------

REQUIRED_FIELDS: dict[str, tuple[tuple[str, ...], str | None]] = {
    "startDate": (("start_date",), "date_raw"),
    "endDate": (("end_date",), "date_raw"),
    "dropOffTime": (("drop_off_hour",), "time_raw"),
    "pickUpTime": (("pick_up_hour",), "time_raw"),
    "location": (("location", "address"), None),
    "ageRequirements": (("min_age", "max_age", "min_grade", "max_grade"), "age_grade_raw"),
    "price": (("price_in_cents",), "price_raw"),
}

# JSON key -> attribute name, for every scalar field a scraper may send.
_JSON_FIELDS: dict[str, str] = {
    "name": "name",
    "description": "description",
    "category": "category",
    "location": "location",
    "startDate": "start_date",
    "endDate": "end_date",
    "dateRaw": "date_raw",
    "timeRaw": "time_raw",
    "dropOffHour": "drop_off_hour",
    "dropOffMinute": "drop_off_minute",
    "pickUpHour": "pick_up_hour",
    "pickUpMinute": "pick_up_minute",
    "priceInCents": "price_in_cents",
    "priceRaw": "price_raw",
    "minAge": "min_age",
    "maxAge": "max_age",
    "minGrade": "min_grade",
    "maxGrade": "max_grade",
    "ageGradeRaw": "age_grade_raw",
    "registrationUrl": "registration_url",
    "sourceProductId": "source_product_id",
    "sourceSessionId": "source_session_id",
    "isAvailable": "is_available",
    "capacity": "capacity",
    "enrolledCount": "enrolled_count",
    "spotsLeft": "spots_left",
    "isFlexible": "is_flexible",
}

_NUMERIC_ATTRS = frozenset({
    "drop_off_hour", "drop_off_minute", "pick_up_hour", "pick_up_minute",
})
_INT_ATTRS = frozenset({
    "price_in_cents", "min_age", "max_age", "min_grade", "max_grade",
    "capacity", "enrolled_count", "spots_left",
})
_BOOL_ATTRS = frozenset({"is_available", "is_flexible"})


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return trim(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


# ---------------------------------------------------------------------------
# StructuredAddress
# ---------------------------------------------------------------------------

@dataclass
class StructuredAddress:
    street: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    latitude: float | None = None
    longitude: float | None = None

    @classmethod
    def from_dict(cls, data: Any) -> StructuredAddress | None:
        if not isinstance(data, dict):
            return None
        lat = coerce_number(data.get("latitude"))
        lon = coerce_number(data.get("longitude"))
        addr = cls(
            street=_text(data.get("street")),
            city=_text(data.get("city")),
            state=_text(data.get("state")),
            zip=_text(data.get("zip")),
            latitude=float(lat) if lat is not None else None,
            longitude=float(lon) if lon is not None else None,
        )
        return addr if addr.has_any() else None

    def has_any(self) -> bool:
        return any(v is not None for v in (
            self.street, self.city, self.state, self.zip, self.latitude, self.longitude,
        ))

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "street": self.street,
            "city": self.city,
            "state": self.state,
            "zip": self.zip,
            "latitude": self.latitude,
            "longitude": self.longitude,
        }


# ---------------------------------------------------------------------------
# ScrapedSession
# ---------------------------------------------------------------------------

@dataclass
class ScrapedSession:
    name: str | None = None
    description: str | None = None
    category: str | None = None
    location: str | None = None
    address: StructuredAddress | None = None
    start_date: str | None = None
    end_date: str | None = None
    date_raw: str | None = None
    time_raw: str | None = None
    drop_off_hour: int | float | None = None
    drop_off_minute: int | float | None = None
    pick_up_hour: int | float | None = None
    pick_up_minute: int | float | None = None
    price_in_cents: int | None = None
    price_raw: str | None = None
    min_age: int | None = None
    max_age: int | None = None
    min_grade: int | None = None
    max_grade: int | None = None
    age_grade_raw: str | None = None
    registration_url: str | None = None
    source_product_id: str | None = None
    source_session_id: str | None = None
    image_urls: list[str] = field(default_factory=list)
    is_available: bool | None = None
    capacity: int | None = None
    enrolled_count: int | None = None
    spots_left: int | None = None
    is_flexible: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> ScrapedSession:
        """Build from one scraper JSON object, dropping values of the wrong type."""
        if not isinstance(data, dict):
            return cls()
        kwargs: dict[str, Any] = {}
        for key, attr in _JSON_FIELDS.items():
            value = data.get(key)
            if attr in _NUMERIC_ATTRS:
                kwargs[attr] = coerce_number(value)
            elif attr in _INT_ATTRS:
                kwargs[attr] = coerce_int(value)
            elif attr in _BOOL_ATTRS:
                kwargs[attr] = value if isinstance(value, bool) else None
            else:
                kwargs[attr] = _text(value)
        kwargs["is_flexible"] = bool(kwargs.get("is_flexible"))
        kwargs["address"] = StructuredAddress.from_dict(data.get("address"))
        images = data.get("imageUrls")
        kwargs["image_urls"] = (
            [u for u in images if isinstance(u, str) and u.strip()]
            if isinstance(images, list) else []
        )
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """camelCase JSON form, the inverse of from_dict for stored payloads."""
        out: dict[str, Any] = {
            key: getattr(self, attr)
            for key, attr in _JSON_FIELDS.items()
            if getattr(self, attr) is not None
        }
        if self.address is not None:
            out["address"] = self.address.to_dict()
        if self.image_urls:
            out["imageUrls"] = list(self.image_urls)
        return out

    def field_state(self, field_name: str) -> FieldState:
        """Classify a required field as present, unparsed or absent."""
        attrs, raw_attr = REQUIRED_FIELDS[field_name]
        saw_placeholder = False
        for attr in attrs:
            value = getattr(self, attr)
            if value is None:
                continue
            if isinstance(value, StructuredAddress):
                return FieldState.PRESENT
            if is_placeholder(value):
                saw_placeholder = True
                continue
            return FieldState.PRESENT
        if saw_placeholder:
            return FieldState.UNPARSED
        if raw_attr is not None and getattr(self, raw_attr):
            return FieldState.UNPARSED
        return FieldState.ABSENT

    def field_states(self) -> dict[str, FieldState]:
        return {name: self.field_state(name) for name in REQUIRED_FIELDS}


# ---------------------------------------------------------------------------
# ScrapeResult
# ---------------------------------------------------------------------------

@dataclass
class ScrapeResult:
    """The raw result object a scraper hands to the pipeline."""

    success: bool
    sessions: list[ScrapedSession] = field(default_factory=list)
    organization: dict[str, Any] | None = None
    scraped_at: str | None = None
    error: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> ScrapeResult:
        if not isinstance(data, dict):
            return cls(success=False, error="raw payload is not a JSON object")
        sessions = data.get("sessions")
        org = data.get("organization")
        return cls(
            success=bool(data.get("success", False)),
            sessions=[ScrapedSession.from_dict(s) for s in sessions]
            if isinstance(sessions, list) else [],
            organization=org if isinstance(org, dict) else None,
            scraped_at=_text(data.get("scrapedAt")),
            error=_text(data.get("error")),
        )


# ---------------------------------------------------------------------------
# Validation output
# ---------------------------------------------------------------------------

@dataclass
class ValidationError:
    field: str
    error: str
    attempted_value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "error": self.error,
            "attempted_value": self.attempted_value,
        }


@dataclass
class NormalizedSession:
    """Typed projection of a ScrapedSession; unparseable values are None."""

    name: str | None
    start_date: date | None
    end_date: date | None
    drop_off_hour: int | None
    drop_off_minute: int
    pick_up_hour: int | None
    pick_up_minute: int
    location: str | None
    min_age: int | None
    max_age: int | None
    min_grade: int | None
    max_grade: int | None
    price_in_cents: int | None
    registration_url: str | None


@dataclass
class ValidationResult:
    is_complete: bool
    completeness_score: int
    missing_fields: list[str]
    errors: list[ValidationError]
    normalized: NormalizedSession
    field_states: dict[str, FieldState] = field(default_factory=dict)

    def errors_as_dicts(self) -> list[dict[str, Any]]:
        return [e.to_dict() for e in self.errors]
