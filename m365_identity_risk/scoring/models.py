"""
Scoring data models — Defines structured types for the scoring engine output.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Iterable, Optional


class RiskLevel(IntEnum):
    """Ordered severity: None < Low < Medium < High < Critical."""
    NONE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @classmethod
    def from_label(cls, label: str) -> "RiskLevel":
        try:
            return cls[str(label).strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown risk level: {label!r}") from None


@dataclass(frozen=True)
class ThresholdTable:
    """
    Lower bounds per level, evaluated highest to lowest.
    The first band whose minimum is <= points wins; below every band is NONE.
    """
    bands: tuple[tuple[int, RiskLevel], ...] = (
        (10, RiskLevel.CRITICAL),
        (7, RiskLevel.HIGH),
        (4, RiskLevel.MEDIUM),
        (1, RiskLevel.LOW),
    )

    def __post_init__(self):
        ordered = tuple(sorted(self.bands, key=lambda b: b[1], reverse=True))
        object.__setattr__(self, "bands", ordered)
        for (hi_min, hi_level), (lo_min, lo_level) in zip(ordered, ordered[1:]):
            if hi_level == lo_level:
                raise ValueError(f"Duplicate threshold for level {hi_level.label}")
            if hi_min <= lo_min:
                raise ValueError(
                    f"Threshold for {hi_level.label} ({hi_min}) must exceed "
                    f"{lo_level.label} ({lo_min})"
                )
        if any(level == RiskLevel.NONE for _, level in ordered):
            raise ValueError("NONE is the implicit level below every threshold")

    def level_for(self, points: int) -> RiskLevel:
        for minimum, level in self.bands:
            if points >= minimum:
                return level
        return RiskLevel.NONE

    def to_list(self) -> list[dict]:
        return [{"level": level.label, "min": minimum} for minimum, level in self.bands]

    @classmethod
    def from_list(cls, items: Iterable[dict]) -> "ThresholdTable":
        return cls(bands=tuple(
            (int(item["min"]), RiskLevel.from_label(item["level"])) for item in items
        ))


@dataclass(frozen=True)
class ExecutiveWeights:
    """OverallScore = UserRisk x W_user + HighSignInRisk x W_signin + min(SignIns, Cap)."""
    user_risk: int = 2
    high_sign_in_risk: int = 4
    sign_in_cap: int = 3

    def to_dict(self) -> dict:
        return {
            "user_risk_weight": self.user_risk,
            "high_sign_in_risk_weight": self.high_sign_in_risk,
            "sign_in_cap": self.sign_in_cap,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ExecutiveWeights":
        data = data or {}
        default = cls()
        return cls(
            user_risk=int(data.get("user_risk_weight", default.user_risk)),
            high_sign_in_risk=int(data.get("high_sign_in_risk_weight", default.high_sign_in_risk)),
            sign_in_cap=int(data.get("sign_in_cap", default.sign_in_cap)),
        )


@dataclass(frozen=True)
class ScoringSettings:
    """Everything the scorer reads; travels with every export."""
    thresholds: ThresholdTable = field(default_factory=ThresholdTable)
    weights: ExecutiveWeights = field(default_factory=ExecutiveWeights)
    allow_negative_totals: bool = False

    def to_dict(self) -> dict:
        return {
            "thresholds": self.thresholds.to_list(),
            "executive_summary": self.weights.to_dict(),
            "allow_negative_totals": self.allow_negative_totals,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ScoringSettings":
        data = data or {}
        thresholds = (
            ThresholdTable.from_list(data["thresholds"])
            if data.get("thresholds") else ThresholdTable()
        )
        return cls(
            thresholds=thresholds,
            weights=ExecutiveWeights.from_dict(data.get("executive_summary")),
            allow_negative_totals=bool(data.get("allow_negative_totals", False)),
        )


DEFAULT_SETTINGS = ScoringSettings()


@dataclass(frozen=True)
class RiskScore:
    """Score for a single entity (the account or one sign-in)."""
    entity_scope: str
    raw_points: int = 0
    level: RiskLevel = RiskLevel.NONE
    contributing_findings: tuple[str, ...] = ()
    excluded_findings: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "entity_scope": self.entity_scope,
            "raw_points": self.raw_points,
            "level": self.level.label,
            "contributing_findings": list(self.contributing_findings),
            "excluded_findings": list(self.excluded_findings),
        }


@dataclass(frozen=True)
class ExecutiveSummary:
    user_risk_count: int = 0
    high_sign_in_risk_count: int = 0
    sign_in_count: int = 0
    overall_score: int = 0
    level: RiskLevel = RiskLevel.NONE
    weights: ExecutiveWeights = field(default_factory=ExecutiveWeights)

    def to_dict(self) -> dict:
        return {
            "user_risk_count": self.user_risk_count,
            "high_sign_in_risk_count": self.high_sign_in_risk_count,
            "sign_in_count": self.sign_in_count,
            "overall_score": self.overall_score,
            "level": self.level.label,
            "weights": self.weights.to_dict(),
        }


@dataclass(frozen=True)
class AssessmentScore:
    """Complete scoring result for one account."""
    account: RiskScore
    sign_ins: tuple[RiskScore, ...] = ()
    summary: ExecutiveSummary = field(default_factory=ExecutiveSummary)

    def sign_in(self, entity_scope: str) -> Optional[RiskScore]:
        for score in self.sign_ins:
            if score.entity_scope == entity_scope:
                return score
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "account": self.account.to_dict(),
            "sign_ins": [s.to_dict() for s in self.sign_ins],
            "executive_summary": self.summary.to_dict(),
        }
