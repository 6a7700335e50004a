"""
JSON exporter — Produces the machine-readable assessment document.

The document carries the raw findings plus the catalog snapshot (thresholds
and weights included), which is everything needed to re-score the report
later without the engine's original execution context.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from .. import __version__

logger = logging.getLogger("m365_identity_risk.reporting.json")

SCHEMA_VERSION = "1.0"


class ExportFormatError(Exception):
    """Raised when a file is not a readable assessment export."""
    pass


def build_export(
    report_id: str,
    context: Any,
    catalog: Any,
    findings: Iterable[Any],
    assessment: Any,
    reputation_stats: Optional[dict] = None,
    warnings: Optional[list[str]] = None,
    exclusions_applied: Iterable[str] = (),
) -> dict:
    """Assemble the export document for one account."""
    user = context.user
    reputation = [entry.to_dict() for entry in context.reputation.values()]
    return {
        "schema_version": SCHEMA_VERSION,
        "metadata": {
            "engine": "M365 Identity Risk Engine",
            "version": __version__,
            "report_id": report_id,
            "account": user.user_principal_name,
            "user_id": user.id,
            "display_name": user.display_name,
            "as_of": context.as_of.isoformat(),
            "generated_utc": datetime.now(timezone.utc).isoformat(),
            "mode": "READ-ONLY",
        },
        "catalog": catalog.to_dict(),
        "findings": [f.to_dict() for f in findings],
        "scores": assessment.to_dict(),
        "context": {
            "sign_in_count": len(context.telemetry.sign_ins),
            "trusted_locations": context.trusted_locations.to_dict(),
            "account_protection": context.account_protection.to_dict(),
            "oauth_grants": [c.to_dict() for c in context.oauth],
        },
        "reputation": {
            "stats": reputation_stats or {},
            "entries": reputation,
        },
        "warnings": list(warnings or []),
        "exclusions": {"applied": sorted(exclusions_applied)},
    }


def export_json(document: dict, output_dir: Path, filename: str = "assessment.json") -> Path:
    """
    Write an assessment document to disk.

    Returns:
        Path to the created JSON file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    filepath = output_dir / filename

    with open(filepath, "w", encoding="utf-8") as fh:
        json.dump(document, fh, indent=2, default=str, ensure_ascii=False)

    logger.debug(f"Wrote {filepath}")
    return filepath


def load_export(path: str | Path) -> dict:
    """Read an export back, checking it is one this engine can re-score."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            document = json.load(fh)
    except (OSError, json.JSONDecodeError) as e:
        raise ExportFormatError(f"Cannot read export {path}: {e}") from e

    if not isinstance(document, dict):
        raise ExportFormatError(f"{path} is not an assessment export")
    version = document.get("schema_version")
    if version != SCHEMA_VERSION:
        raise ExportFormatError(
            f"{path} has schema_version {version!r}; expected {SCHEMA_VERSION}"
        )
    for key in ("catalog", "findings", "scores"):
        if key not in document:
            raise ExportFormatError(f"{path} is missing '{key}'")
    return document


def export_batch_summary(
    outcomes: list[dict],
    output_dir: Path,
    batch_id: str,
    graph_stats: Optional[dict] = None,
) -> Path:
    """Write the batch summary: every account with its status, level or error."""
    output_dir.mkdir(parents=True, exist_ok=True)
    succeeded = [o for o in outcomes if o.get("status") == "succeeded"]
    failed = [o for o in outcomes if o.get("status") != "succeeded"]
    payload = {
        "schema_version": SCHEMA_VERSION,
        "batch_id": batch_id,
        "generated_utc": datetime.now(timezone.utc).isoformat(),
        "accounts_total": len(outcomes),
        "accounts_succeeded": len(succeeded),
        "accounts_failed": len(failed),
        "accounts": outcomes,
        "failures": [{"account": o["account"], "error": o.get("error", "")} for o in failed],
        "graph_requests": graph_stats or {},
    }
    return export_json(payload, output_dir, filename="batch_summary.json")
