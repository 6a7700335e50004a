"""
Indicator base types — definitions, findings, evidence and the evaluator registry.

An evaluator is a pure function ``(context, entity) -> Verdict`` registered for
exactly one indicator id. The engine wraps verdicts in Findings using the
catalog's points; evidence is for display only and is never scored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Mapping, Optional, Union

if TYPE_CHECKING:
    from .context import AccountContext


class IndicatorFamily(str, Enum):
    USER_RISK = "UserRisk"
    SIGN_IN_RISK = "SignInRisk"

    @property
    def prefix(self) -> str:
        return "UR" if self is IndicatorFamily.USER_RISK else "SR"


def family_for_id(indicator_id: str) -> Optional[IndicatorFamily]:
    prefix = indicator_id.split("-", 1)[0].upper()
    for family in IndicatorFamily:
        if family.prefix == prefix:
            return family
    return None


# ─── Definitions ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class EvidenceScaling:
    """
    Evidence-strength weighting: points of the first band whose minimum is
    <= the numeric evidence value. Falls back to the definition's base points.
    """
    field: str
    bands: tuple[tuple[float, int], ...]

    def __post_init__(self):
        object.__setattr__(
            self, "bands", tuple(sorted(self.bands, key=lambda b: b[0], reverse=True))
        )

    def points_for(self, details: Mapping[str, Any], default: int) -> int:
        value = details.get(self.field)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return default
        for minimum, points in self.bands:
            if value >= minimum:
                return points
        return default

    def to_dict(self) -> dict:
        return {
            "field": self.field,
            "bands": [{"min": m, "points": p} for m, p in self.bands],
        }


@dataclass(frozen=True)
class IndicatorDefinition:
    id: str
    family: IndicatorFamily
    base_points: int
    name: str = ""
    description: str = ""
    scaling: Optional[EvidenceScaling] = None

    @property
    def mitigating(self) -> bool:
        return self.base_points < 0

    def points_for(self, details: Mapping[str, Any]) -> int:
        if self.scaling is None:
            return self.base_points
        return self.scaling.points_for(details, self.base_points)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "family": self.family.value,
            "name": self.name,
            "points": self.base_points,
            "description": self.description,
        }
        if self.scaling is not None:
            data["scaling"] = self.scaling.to_dict()
        return data


# ─── Evidence ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AccountEvidence:
    kind: ClassVar[str] = "account"
    summary: str = ""
    details: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "summary": self.summary, "details": dict(self.details)}


@dataclass(frozen=True)
class SignInEvidence:
    kind: ClassVar[str] = "signin"
    sign_in_id: str = ""
    created_at: Optional[str] = None
    ip_address: Optional[str] = None
    country: Optional[str] = None
    summary: str = ""
    details: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "sign_in_id": self.sign_in_id,
            "created_at": self.created_at,
            "ip_address": self.ip_address,
            "country": self.country,
            "summary": self.summary,
            "details": dict(self.details),
        }


Evidence = Union[AccountEvidence, SignInEvidence]


def evidence_from_dict(data: Optional[dict]) -> Evidence:
    data = data or {}
    if data.get("kind") == SignInEvidence.kind:
        return SignInEvidence(
            sign_in_id=data.get("sign_in_id") or "",
            created_at=data.get("created_at"),
            ip_address=data.get("ip_address"),
            country=data.get("country"),
            summary=data.get("summary") or "",
            details=dict(data.get("details") or {}),
        )
    return AccountEvidence(
        summary=data.get("summary") or "",
        details=dict(data.get("details") or {}),
    )


# ─── Findings ───────────────────────────────────────────────────────────────

@dataclass(frozen=True, order=True)
class FindingKey:
    """Stable identity of a finding: ``"<indicator_id>|<entity_scope>"``."""
    indicator_id: str
    entity_scope: str

    SEPARATOR: ClassVar[str] = "|"

    def __str__(self) -> str:
        return f"{self.indicator_id}{self.SEPARATOR}{self.entity_scope}"

    @classmethod
    def parse(cls, text: str) -> "FindingKey":
        indicator_id, sep, scope = str(text).partition(cls.SEPARATOR)
        if not sep or not indicator_id or not scope:
            raise ValueError(f"Not a finding key: {text!r}")
        return cls(indicator_id.strip(), scope.strip())


@dataclass(frozen=True)
class Finding:
    indicator_id: str
    family: IndicatorFamily
    entity_scope: str
    triggered: bool
    points: int
    evidence: Evidence = field(default_factory=AccountEvidence)

    @property
    def key(self) -> FindingKey:
        return FindingKey(self.indicator_id, self.entity_scope)

    def to_dict(self) -> dict:
        return {
            "key": str(self.key),
            "indicator_id": self.indicator_id,
            "family": self.family.value,
            "entity_scope": self.entity_scope,
            "triggered": self.triggered,
            "points": self.points,
            "evidence": self.evidence.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Finding":
        return cls(
            indicator_id=data["indicator_id"],
            family=IndicatorFamily(data["family"]),
            entity_scope=data["entity_scope"],
            triggered=bool(data["triggered"]),
            points=int(data["points"]),
            evidence=evidence_from_dict(data.get("evidence")),
        )


# ─── Evaluator registry ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class Verdict:
    triggered: bool
    summary: str = ""
    details: Mapping[str, Any] = field(default_factory=dict)


def hit(summary: str, **details) -> Verdict:
    return Verdict(True, summary, details)


def miss(summary: str = "", **details) -> Verdict:
    return Verdict(False, summary, details)


Evaluator = Callable[["AccountContext", Any], Verdict]

EVALUATORS: dict[str, Evaluator] = {}


def register(indicator_id: str) -> Callable[[Evaluator], Evaluator]:
    """Bind an evaluator to one indicator id; each id may be bound once."""
    if family_for_id(indicator_id) is None:
        raise ValueError(f"Indicator id {indicator_id!r} has no known family prefix")

    def decorator(func: Evaluator) -> Evaluator:
        if indicator_id in EVALUATORS:
            raise ValueError(f"Evaluator already registered for {indicator_id}")
        EVALUATORS[indicator_id] = func
        return func

    return decorator
