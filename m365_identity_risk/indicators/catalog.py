"""
Indicator catalog loading and validation.

The catalog is a versioned JSON document holding the indicator definitions
and the scoring settings (threshold table, executive weights, negative-total
policy). Ids form a closed set: every id must have a registered evaluator.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional

from ..config import DEFAULT_CATALOG_PATH
from ..scoring.models import ScoringSettings
from .base import (
    EVALUATORS,
    EvidenceScaling,
    IndicatorDefinition,
    IndicatorFamily,
    family_for_id,
)

logger = logging.getLogger("m365_identity_risk.indicators.catalog")


class CatalogError(Exception):
    """Raised when the catalog document is invalid."""
    pass


@dataclass(frozen=True)
class Catalog:
    version: str
    indicators: tuple[IndicatorDefinition, ...] = ()
    settings: ScoringSettings = field(default_factory=ScoringSettings)

    def __iter__(self) -> Iterator[IndicatorDefinition]:
        return iter(self.indicators)

    def __len__(self) -> int:
        return len(self.indicators)

    def __contains__(self, indicator_id: str) -> bool:
        return any(d.id == indicator_id for d in self.indicators)

    def get(self, indicator_id: str) -> Optional[IndicatorDefinition]:
        for definition in self.indicators:
            if definition.id == indicator_id:
                return definition
        return None

    def family(self, family: IndicatorFamily) -> tuple[IndicatorDefinition, ...]:
        return tuple(d for d in self.indicators if d.family == family)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "scoring": self.settings.to_dict(),
            "indicators": [d.to_dict() for d in self.indicators],
        }


def _ensure_evaluators_registered():
    # Importing the evaluator modules populates EVALUATORS
    from . import signin_risk, user_risk  # noqa: F401


def _parse_scaling(raw: Any, indicator_id: str) -> Optional[EvidenceScaling]:
    if not raw:
        return None
    try:
        bands = tuple((float(b["min"]), int(b["points"])) for b in raw["bands"])
        scaling = EvidenceScaling(field=str(raw["field"]), bands=bands)
    except (KeyError, TypeError, ValueError) as e:
        raise CatalogError(f"{indicator_id}: invalid scaling block ({e})") from e
    if not scaling.bands:
        raise CatalogError(f"{indicator_id}: scaling declares no bands")
    return scaling


def _parse_indicator(raw: Any) -> IndicatorDefinition:
    if not isinstance(raw, dict) or not raw.get("id"):
        raise CatalogError(f"Indicator entry without an id: {raw!r}")
    indicator_id = str(raw["id"]).strip().upper()

    try:
        family = IndicatorFamily(raw.get("family"))
    except ValueError:
        raise CatalogError(f"{indicator_id}: unknown family {raw.get('family')!r}") from None
    if family_for_id(indicator_id) != family:
        raise CatalogError(f"{indicator_id}: id prefix does not match family {family.value}")

    points = raw.get("points")
    if isinstance(points, bool) or not isinstance(points, int):
        raise CatalogError(f"{indicator_id}: points must be an integer, got {points!r}")

    return IndicatorDefinition(
        id=indicator_id,
        family=family,
        base_points=points,
        name=raw.get("name") or indicator_id,
        description=raw.get("description") or "",
        scaling=_parse_scaling(raw.get("scaling"), indicator_id),
    )


def catalog_from_dict(data: dict, require_evaluators: bool = True) -> Catalog:
    """
    Build a Catalog from its JSON form.
    Exported catalog snapshots are re-read with require_evaluators=False so
    reports can be re-scored without the evaluator code.
    """
    if not isinstance(data, dict):
        raise CatalogError("Catalog document must be a JSON object")

    definitions = [_parse_indicator(raw) for raw in data.get("indicators") or []]
    if not definitions:
        raise CatalogError("Catalog defines no indicators")

    seen: set[str] = set()
    for definition in definitions:
        if definition.id in seen:
            raise CatalogError(f"Duplicate indicator id: {definition.id}")
        seen.add(definition.id)

    if require_evaluators:
        _ensure_evaluators_registered()
        unknown = sorted(seen - set(EVALUATORS))
        if unknown:
            raise CatalogError(f"No evaluator registered for: {', '.join(unknown)}")
        disabled = sorted(set(EVALUATORS) - seen)
        if disabled:
            logger.info(f"Indicators not in catalog (disabled): {', '.join(disabled)}")

    try:
        settings = ScoringSettings.from_dict(data.get("scoring"))
    except (KeyError, TypeError, ValueError) as e:
        raise CatalogError(f"Invalid scoring settings: {e}") from e

    return Catalog(
        version=str(data.get("version") or "unversioned"),
        indicators=tuple(sorted(definitions, key=lambda d: d.id)),
        settings=settings,
    )


def load_catalog(path: Optional[str | Path] = None) -> Catalog:
    """Load and validate a catalog file (the packaged default when path is None)."""
    path = Path(path or DEFAULT_CATALOG_PATH)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise CatalogError(f"Cannot read catalog {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise CatalogError(f"Catalog {path} is not valid JSON: {e}") from e

    catalog = catalog_from_dict(data)
    logger.info(f"Loaded catalog {catalog.version} ({len(catalog)} indicators) from {path}")
    return catalog
