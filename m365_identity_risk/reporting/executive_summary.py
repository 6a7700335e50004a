"""
Executive summary — One-page Markdown summary of an account assessment.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

TEMPLATE_DIR = Path(__file__).parent / "templates"
TEMPLATE_NAME = "executive_summary.md.j2"

LEVEL_GUIDANCE = {
    "Critical": "Treat the account as compromised: revoke sessions, reset "
                "credentials and review mailbox rules and consents now.",
    "High": "Strong compromise indicators. Investigate within 24 hours.",
    "Medium": "Several risk signals. Review the listed findings this week.",
    "Low": "Minor risk signals. Review during routine hygiene.",
    "None": "No scored risk signals.",
}


def _environment() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape([]),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def render_executive_summary(document: dict) -> str:
    """Render the Markdown summary for one assessment document."""
    excluded = set(document.get("exclusions", {}).get("applied", []))
    names = {d["id"]: d["name"] for d in document["catalog"]["indicators"]}
    triggered = [
        {
            "key": f["key"],
            "indicator_id": f["indicator_id"],
            "name": names.get(f["indicator_id"], f["indicator_id"]),
            "points": f["points"],
            "summary": f["evidence"].get("summary", ""),
            "when": f["evidence"].get("created_at"),
        }
        for f in document["findings"]
        if f["triggered"] and f["key"] not in excluded
    ]
    risky = [f for f in triggered if f["points"] > 0]
    mitigating = [f for f in triggered if f["points"] < 0]
    risky.sort(key=lambda f: (-f["points"], f["indicator_id"], f["key"]))

    scores = document["scores"]
    summary = scores["executive_summary"]
    template = _environment().get_template(TEMPLATE_NAME)
    return template.render(
        metadata=document["metadata"],
        catalog_version=document["catalog"]["version"],
        account=scores["account"],
        summary=summary,
        guidance=LEVEL_GUIDANCE.get(summary["level"], ""),
        risky_sign_ins=[s for s in scores["sign_ins"] if s["raw_points"] > 0],
        findings=risky,
        mitigating=mitigating,
        excluded=sorted(excluded),
        warnings=document.get("warnings", []),
        reputation=document.get("reputation", {}).get("stats", {}),
        generated_utc=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC"),
    )


def export_executive_summary(document: dict, output_dir: Path) -> Path:
    """
    Generate a concise executive summary in Markdown.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    filepath = output_dir / "executive_summary.md"

    with open(filepath, "w", encoding="utf-8") as fh:
        fh.write(render_executive_summary(document))

    return filepath
