"""
Indicator evaluation engine.

Runs every catalog indicator against every in-scope entity: User-Risk
indicators against the account, Sign-In-Risk indicators against each sign-in.
The result is ordered by (entity order, indicator id), so identical telemetry
always yields identical findings in identical order.
"""

from __future__ import annotations

import logging
from typing import Any

from ..telemetry.models import SignInEvent
from .base import (
    EVALUATORS,
    AccountEvidence,
    Evidence,
    Finding,
    IndicatorDefinition,
    IndicatorFamily,
    SignInEvidence,
    Verdict,
    miss,
)
from .catalog import Catalog
from .context import AccountContext

logger = logging.getLogger("m365_identity_risk.indicators.engine")


def _possible(summary: str) -> str:
    if not summary:
        return "Possible indicator"
    return f"Possible {summary[0].lower()}{summary[1:]}"


def _invoke(definition: IndicatorDefinition, ctx: AccountContext, entity: Any) -> Verdict:
    evaluator = EVALUATORS[definition.id]
    try:
        return evaluator(ctx, entity)
    except Exception as e:
        logger.exception(f"[{definition.id}] Evaluation failed: {e}")
        return miss(f"Evaluation error: {e}", error=str(e))


def _sign_in_evidence(
    definition: IndicatorDefinition,
    verdict: Verdict,
    ctx: AccountContext,
    sign_in: SignInEvent,
) -> SignInEvidence:
    summary = verdict.summary
    details = dict(verdict.details)
    protection = ctx.protection_for(sign_in)
    # Protected sign-ins are reported as a possibility; the finding is kept
    if verdict.triggered and not definition.mitigating and protection.protected:
        summary = _possible(summary)
        details["protected"] = True
        details["protection"] = protection.to_dict()
    return SignInEvidence(
        sign_in_id=sign_in.id,
        created_at=sign_in.created_at.isoformat() if sign_in.created_at else None,
        ip_address=sign_in.ip_address,
        country=sign_in.country,
        summary=summary,
        details=details,
    )


def _finding(
    definition: IndicatorDefinition,
    ctx: AccountContext,
    entity: Any,
    scope: str,
) -> Finding:
    verdict = _invoke(definition, ctx, entity)
    evidence: Evidence
    if definition.family == IndicatorFamily.SIGN_IN_RISK:
        evidence = _sign_in_evidence(definition, verdict, ctx, entity)
    else:
        evidence = AccountEvidence(summary=verdict.summary, details=dict(verdict.details))
    return Finding(
        indicator_id=definition.id,
        family=definition.family,
        entity_scope=scope,
        triggered=verdict.triggered,
        points=definition.points_for(verdict.details),
        evidence=evidence,
    )


def evaluate_account(ctx: AccountContext, catalog: Catalog) -> tuple[Finding, ...]:
    """Evaluate the whole catalog for one account."""
    findings = []
    user = ctx.telemetry.user

    for definition in catalog.family(IndicatorFamily.USER_RISK):
        findings.append(_finding(definition, ctx, user, user.scope))

    sign_in_defs = catalog.family(IndicatorFamily.SIGN_IN_RISK)
    for sign_in in ctx.telemetry.sign_ins:
        for definition in sign_in_defs:
            findings.append(_finding(definition, ctx, sign_in, sign_in.scope))

    triggered = sum(1 for f in findings if f.triggered)
    logger.info(
        f"[{user.user_principal_name}] Evaluation complete — "
        f"{len(findings)} findings, {triggered} triggered"
    )
    return tuple(findings)
