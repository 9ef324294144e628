"""camp_etl.shared

Run reporting helpers shared by every CLI mode: the text report printed to
the operator and the JSON run report written under ./artifacts/reports.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol


class SupportsToDict(Protocol):
    def to_dict(self) -> dict[str, Any]: ...


REPORTS_DIR = Path("./artifacts/reports")


def build_counters_report(
    title: str,
    counters: dict[str, Any],
    dry_run: bool = False,
    max_messages: int = 20,
) -> str:
    """Render a counters dict as the operator-facing text block.

    Scalar entries become aligned "name: value" lines; list entries
    (warnings, errors) are printed afterwards, truncated to max_messages.
    """
    scalars = {k: v for k, v in counters.items() if not isinstance(v, (list, dict))}
    lists = {k: v for k, v in counters.items() if isinstance(v, list)}
    width = max((len(k) for k in scalars), default=0) + 1
    lines = [
        "=" * 60,
        title,
        f"  dry_run: {dry_run}",
        "=" * 60,
    ]
    for key, value in scalars.items():
        lines.append(f"  {key + ':':<{width}} {value}")
    for key, items in lists.items():
        if not items:
            continue
        lines.append(f"\n{key.replace('_', ' ').capitalize()} ({len(items)}):")
        for item in items[:max_messages]:
            lines.append(f"  {item}")
        if len(items) > max_messages:
            lines.append(f"  ... and {len(items) - max_messages} more")
    lines.append("=" * 60)
    return "\n".join(lines)


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    parameters: dict[str, Any],
    counters: SupportsToDict | dict[str, Any],
    reports_dir: Path | None = None,
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **parameters,
        "counters": counters if isinstance(counters, dict) else counters.to_dict(),
    }
    report_path = (reports_dir or REPORTS_DIR) / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
