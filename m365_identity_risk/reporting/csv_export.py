"""
CSV exporter — Produces flat CSV views of findings and entity scores.
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Iterable


FINDING_FIELDS = [
    "key", "indicator_id", "family", "entity_scope", "triggered", "points",
    "excluded", "sign_in_id", "created_at", "ip_address", "country",
    "summary", "details",
]

SCORE_FIELDS = ["entity_scope", "raw_points", "level", "contributing", "excluded"]


def export_csv(document: dict, output_dir: Path, triggered_only: bool = True) -> list[Path]:
    """
    Write findings and score CSVs from an assessment document.

    Returns:
        List of created CSV file paths.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    created = []
    excluded = set(document.get("exclusions", {}).get("applied", []))

    # --- Findings CSV ---
    findings_path = output_dir / "findings.csv"
    with open(findings_path, "w", newline="", encoding="utf-8-sig") as fh:
        writer = csv.DictWriter(fh, fieldnames=FINDING_FIELDS, extrasaction="ignore")
        writer.writeheader()
        for f in document.get("findings", []):
            if triggered_only and not f["triggered"]:
                continue
            evidence = f.get("evidence") or {}
            row = {field: f.get(field, "") for field in FINDING_FIELDS}
            row.update({
                "excluded": f["key"] in excluded,
                "sign_in_id": evidence.get("sign_in_id", ""),
                "created_at": evidence.get("created_at", ""),
                "ip_address": evidence.get("ip_address", ""),
                "country": evidence.get("country", ""),
                "summary": evidence.get("summary", ""),
                # Flatten evidence details to string
                "details": "; ".join(
                    f"{k}={v}" for k, v in (evidence.get("details") or {}).items()
                ),
            })
            writer.writerow(row)
    created.append(findings_path)

    # --- Entity Scores CSV ---
    scores = document.get("scores", {})
    scores_path = output_dir / "scores.csv"
    with open(scores_path, "w", newline="", encoding="utf-8-sig") as fh:
        writer = csv.DictWriter(fh, fieldnames=SCORE_FIELDS)
        writer.writeheader()
        for s in _entity_scores(scores):
            writer.writerow({
                "entity_scope": s["entity_scope"],
                "raw_points": s["raw_points"],
                "level": s["level"],
                "contributing": " ".join(s["contributing_findings"]),
                "excluded": " ".join(s["excluded_findings"]),
            })
    created.append(scores_path)

    return created


def _entity_scores(scores: dict) -> Iterable[dict]:
    if scores.get("account"):
        yield scores["account"]
    yield from scores.get("sign_ins", [])
