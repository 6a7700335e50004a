"""Scoring package — per-entity risk scores, levels and the executive summary."""

from .models import (
    AssessmentScore,
    ExecutiveSummary,
    ExecutiveWeights,
    RiskLevel,
    RiskScore,
    ScoringSettings,
    ThresholdTable,
)
from .engine import (
    ConsistencyViolation,
    executive_summary,
    recompute_from_export,
    score,
    score_assessment,
    summarize_counts,
    verify_consistency,
)

__all__ = [
    "AssessmentScore",
    "ExecutiveSummary",
    "ExecutiveWeights",
    "RiskLevel",
    "RiskScore",
    "ScoringSettings",
    "ThresholdTable",
    "ConsistencyViolation",
    "executive_summary",
    "recompute_from_export",
    "score",
    "score_assessment",
    "summarize_counts",
    "verify_consistency",
]
