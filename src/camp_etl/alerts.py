"""camp_etl.alerts

Scraper alert sink: create, de-duplicate, acknowledge and list alerts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import psycopg

log = logging.getLogger(__name__)

ALERT_TYPES = frozenset({
    "scraper_disabled",
    "scraper_degraded",
    "high_change_volume",
    "scraper_needs_regeneration",
    "new_sources_pending",
    "rate_limited",
})
SEVERITIES = ("info", "warning", "error", "critical")


class AlertAlreadyAcknowledged(ValueError):
    """Raised when acknowledging an alert a second time."""


@dataclass
class Alert:
    id: str
    source_id: str | None
    alert_type: str
    message: str
    severity: str
    created_at: datetime
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "alert_type": self.alert_type,
            "message": self.message,
            "severity": self.severity,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "acknowledged_by": self.acknowledged_by,
        }


_ALERT_COLS = (
    "id, source_id, alert_type, message, severity, created_at, "
    "acknowledged_at, acknowledged_by"
)


def _row_to_alert(row: tuple) -> Alert:
    return Alert(
        id=str(row[0]),
        source_id=str(row[1]) if row[1] is not None else None,
        alert_type=row[2],
        message=row[3],
        severity=row[4],
        created_at=row[5],
        acknowledged_at=row[6],
        acknowledged_by=row[7],
    )


def create_alert(
    conn: psycopg.Connection,
    source_id: str | None,
    alert_type: str,
    message: str,
    severity: str,
    now: datetime | None = None,
) -> str:
    if alert_type not in ALERT_TYPES:
        raise ValueError(f"unknown alert type: {alert_type!r}")
    if severity not in SEVERITIES:
        raise ValueError(f"unknown severity: {severity!r}")
    row = conn.execute(
        """
        INSERT INTO scraper_alert (source_id, alert_type, message, severity, created_at)
        VALUES (%s, %s, %s, %s, COALESCE(%s, now()))
        RETURNING id
        """,
        (source_id, alert_type, message, severity, now),
    ).fetchone()
    log.warning("alert %s/%s for source %s: %s", severity, alert_type, source_id, message)
    return str(row[0])


def create_alert_unless_recent(
    conn: psycopg.Connection,
    source_id: str,
    alert_type: str,
    message: str,
    severity: str,
    now: datetime,
    window_hours: int = 24,
) -> str | None:
    """Create an alert unless an unacknowledged one of the same type exists in the window."""
    row = conn.execute(
        """
        SELECT id FROM scraper_alert
        WHERE source_id = %s
          AND alert_type = %s
          AND acknowledged_at IS NULL
          AND created_at > %s
        LIMIT 1
        """,
        (source_id, alert_type, now - timedelta(hours=window_hours)),
    ).fetchone()
    if row:
        return None
    return create_alert(conn, source_id, alert_type, message, severity, now)


def acknowledge_alert(
    conn: psycopg.Connection,
    alert_id: str,
    acknowledged_by: str | None = None,
    now: datetime | None = None,
) -> None:
    row = conn.execute(
        "SELECT acknowledged_at FROM scraper_alert WHERE id = %s FOR UPDATE",
        (alert_id,),
    ).fetchone()
    if row is None:
        raise LookupError(f"alert {alert_id} not found")
    if row[0] is not None:
        raise AlertAlreadyAcknowledged(f"alert {alert_id} already acknowledged")
    conn.execute(
        """
        UPDATE scraper_alert
        SET acknowledged_at = COALESCE(%s, now()),
            acknowledged_by = %s
        WHERE id = %s
        """,
        (now, acknowledged_by or "system", alert_id),
    )


def list_unacknowledged_alerts(
    conn: psycopg.Connection,
    source_id: str | None = None,
    limit: int = 50,
) -> list[Alert]:
    rows = conn.execute(
        f"""
        SELECT {_ALERT_COLS}
        FROM scraper_alert
        WHERE acknowledged_at IS NULL
          AND (%s::uuid IS NULL OR source_id = %s::uuid)
        ORDER BY created_at DESC
        LIMIT %s
        """,
        (source_id, source_id, limit),
    ).fetchall()
    return [_row_to_alert(r) for r in rows]


def recent_alerts_for_source(
    conn: psycopg.Connection,
    source_id: str,
    limit: int = 5,
) -> list[Alert]:
    rows = conn.execute(
        f"""
        SELECT {_ALERT_COLS}
        FROM scraper_alert
        WHERE source_id = %s
        ORDER BY created_at DESC
        LIMIT %s
        """,
        (source_id, limit),
    ).fetchall()
    return [_row_to_alert(r) for r in rows]
