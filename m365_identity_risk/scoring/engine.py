"""
Scoring Engine — reduces findings into per-entity risk scores and the
executive summary.

Scoring model:
  - Excluded (false-positive) findings are dropped by FindingKey.
  - Triggered points are summed per entity; totals floor at 0 unless the
    catalog allows negative totals.
  - Totals map to a level through the threshold table, highest band first.
  - OverallScore = UserRisk x W_user + HighSignInRisk x W_signin + min(SignIns, Cap)

Only ``points``, ``triggered`` and keys are read here; evidence never is.
Every function is pure, so a report re-scored later gives the same numbers.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from ..exclusions import store as exclusion_store
from ..indicators.base import Finding, IndicatorFamily
from .models import (
    DEFAULT_SETTINGS,
    AssessmentScore,
    ExecutiveSummary,
    RiskLevel,
    RiskScore,
    ScoringSettings,
)

logger = logging.getLogger("m365_identity_risk.scoring")


class ConsistencyViolation(Exception):
    """Two computations over the same findings produced different scores."""
    def __init__(self, differences: list[str]):
        self.differences = differences
        super().__init__("Score recomputation mismatch: " + "; ".join(differences))


def score(
    findings: Iterable[Finding],
    exclusions: exclusion_store.ExclusionInput = None,
    settings: ScoringSettings = DEFAULT_SETTINGS,
    entity_scope: str = "",
) -> RiskScore:
    """
    Score one entity's findings.

    Excluding a finding removes its points either way: dropping a risky
    finding never raises the total, while dropping a mitigating (negative)
    one takes its discount away and so never lowers it.
    """
    lookup = exclusion_store.as_exclusion_lookup(exclusions)
    contributing, excluded = [], []
    total = 0
    scopes = set()

    for finding in findings:
        scopes.add(finding.entity_scope)
        if not finding.triggered:
            continue
        key = str(finding.key)
        if lookup.is_excluded(finding.key):
            excluded.append(key)
            continue
        total += finding.points
        contributing.append(key)

    if len(scopes) > 1:
        raise ValueError(f"score() expects one entity, got {len(scopes)}: {sorted(scopes)}")
    if not settings.allow_negative_totals:
        total = max(0, total)

    return RiskScore(
        entity_scope=entity_scope or next(iter(scopes), ""),
        raw_points=total,
        level=settings.thresholds.level_for(total),
        contributing_findings=tuple(sorted(contributing)),
        excluded_findings=tuple(sorted(excluded)),
    )


def executive_summary(
    account_findings: Iterable[Finding],
    sign_in_scores: Iterable[RiskScore],
    exclusions: exclusion_store.ExclusionInput = None,
    settings: ScoringSettings = DEFAULT_SETTINGS,
) -> ExecutiveSummary:
    lookup = exclusion_store.as_exclusion_lookup(exclusions)
    user_risk_count = sum(
        1 for f in account_findings
        if f.family == IndicatorFamily.USER_RISK
        and f.triggered
        and not lookup.is_excluded(f.key)
    )
    scores = list(sign_in_scores)
    high_count = sum(1 for s in scores if s.level >= RiskLevel.HIGH)
    sign_in_count = sum(1 for s in scores if s.raw_points > 0)
    return summarize_counts(user_risk_count, high_count, sign_in_count, settings)


def summarize_counts(
    user_risk_count: int,
    high_sign_in_risk_count: int,
    sign_in_count: int,
    settings: ScoringSettings = DEFAULT_SETTINGS,
) -> ExecutiveSummary:
    w = settings.weights
    overall = (
        user_risk_count * w.user_risk
        + high_sign_in_risk_count * w.high_sign_in_risk
        + min(sign_in_count, w.sign_in_cap)
    )
    return ExecutiveSummary(
        user_risk_count=user_risk_count,
        high_sign_in_risk_count=high_sign_in_risk_count,
        sign_in_count=sign_in_count,
        overall_score=overall,
        level=settings.thresholds.level_for(overall),
        weights=w,
    )


def score_assessment(
    findings: Iterable[Finding],
    exclusions: exclusion_store.ExclusionInput = None,
    settings: ScoringSettings = DEFAULT_SETTINGS,
    account_scope: str = "",
) -> AssessmentScore:
    """
    Score one account: the account entity, each sign-in entity, and the
    executive summary. Sign-in scores are ordered by entity scope, so the
    result does not depend on the order findings arrive in.
    """
    lookup = exclusion_store.as_exclusion_lookup(exclusions)
    account_findings: list[Finding] = []
    by_sign_in: dict[str, list[Finding]] = {}

    for finding in findings:
        if finding.family == IndicatorFamily.USER_RISK:
            account_findings.append(finding)
        else:
            by_sign_in.setdefault(finding.entity_scope, []).append(finding)

    account = score(account_findings, lookup, settings, entity_scope=account_scope)
    sign_in_scores = tuple(
        score(by_sign_in[scope], lookup, settings, entity_scope=scope)
        for scope in sorted(by_sign_in)
    )
    summary = executive_summary(account_findings, sign_in_scores, lookup, settings)
    return AssessmentScore(account=account, sign_ins=sign_in_scores, summary=summary)


def recompute_from_export(
    document: dict[str, Any],
    exclusions: exclusion_store.ExclusionInput = None,
) -> AssessmentScore:
    """
    Re-score an exported assessment from its recorded findings and catalog
    settings alone. With no exclusions given, the marks recorded in the
    export are re-applied.
    """
    findings = [Finding.from_dict(f) for f in document.get("findings", [])]
    settings = ScoringSettings.from_dict((document.get("catalog") or {}).get("scoring"))
    if exclusions is None:
        exclusions = set(document.get("exclusions", {}).get("applied", []))
    account_scope = (document.get("scores") or {}).get("account", {}).get("entity_scope", "")
    return score_assessment(findings, exclusions, settings, account_scope=account_scope)


def verify_consistency(expected: AssessmentScore, actual: AssessmentScore) -> None:
    """Raise ConsistencyViolation if two computations disagree."""
    if expected == actual:
        return
    differences = []
    exp, act = expected.to_dict(), actual.to_dict()
    if exp["account"] != act["account"]:
        differences.append(
            f"account {exp['account']['raw_points']}/{exp['account']['level']} != "
            f"{act['account']['raw_points']}/{act['account']['level']}"
        )
    exp_sign_ins = {s["entity_scope"]: s for s in exp["sign_ins"]}
    act_sign_ins = {s["entity_scope"]: s for s in act["sign_ins"]}
    for scope in sorted(set(exp_sign_ins) | set(act_sign_ins)):
        if exp_sign_ins.get(scope) != act_sign_ins.get(scope):
            differences.append(f"{scope} differs")
    if exp["executive_summary"] != act["executive_summary"]:
        differences.append(
            f"overall {exp['executive_summary']['overall_score']} != "
            f"{act['executive_summary']['overall_score']}"
        )
    if not differences:
        return
    logger.error(f"Consistency violation: {differences}")
    raise ConsistencyViolation(differences)
