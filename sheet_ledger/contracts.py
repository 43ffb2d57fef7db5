"""Versioned contracts for machine-readable sheet-ledger outputs."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

CONTRACT_VERSIONS = {
    "ledger.inspect": "1.0.0",
    "ledger.import_summary": "1.0.0",
    "ledger.export_summary": "1.0.0",
}
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utc_now_iso(now: datetime | None = None) -> str:
    """Second-precision UTC stamp such as ``2024-01-05T08:30:00Z``."""
    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(TIMESTAMP_FORMAT)


def build_contract(name: str) -> dict[str, str]:
    if name not in CONTRACT_VERSIONS:
        known = ", ".join(sorted(CONTRACT_VERSIONS))
        raise ValueError(f"Unknown contract '{name}'. Known contracts: {known}")
    return {"name": name, "version": CONTRACT_VERSIONS[name]}


def build_run_summary(
    *,
    contract: str,
    command: str,
    input_path: Path | None,
    status: str = "ok",
    output_path: Path | None = None,
    metrics: dict[str, Any] | None = None,
    warnings: list[str] | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    summary = {
        "contract": build_contract(contract),
        "command": command,
        "status": status,
        "generated_at": utc_now_iso(),
        "input_file": str(input_path) if input_path else None,
        "output_file": str(output_path) if output_path else None,
        "warnings_count": len(warnings or []),
        "warnings": list(warnings or []),
        "metrics": metrics or {},
    }
    if details:
        summary.update(details)
    return summary
