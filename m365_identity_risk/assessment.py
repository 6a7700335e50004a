"""
Per-account assessment pipeline and batch runner.

One account is fully processed (collect → normalize → enrich → evaluate →
score → export) before the next begins, reusing one authenticated Graph
session. Per-account state (reputation cache, evaluation context) is built
fresh for every account. A failed account is recorded and the batch moves on.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from .cache.reputation import AbuseIpCacheEntry, AbuseIPDBClient, ReputationCache
from .classifiers import is_mfa_success
from .collectors import (
    ACCOUNT_COLLECTORS,
    AccountTarget,
    CollectorResult,
    ConnectivityError,
    IdentityCollector,
)
from .config import EngineConfig
from .exclusions.store import ExclusionInput, SQLiteExclusionStore, as_exclusion_lookup
from .graph.client import GraphClient
from .indicators import AccountContext, Catalog, Finding, build_context, evaluate_account
from .reporting import (
    build_export,
    export_batch_summary,
    export_csv,
    export_executive_summary,
    export_json,
)
from .safety.guardian import SafetyGuardian
from .scoring import AssessmentScore, recompute_from_export, score_assessment, verify_consistency
from .telemetry import AccountTelemetry, normalize_account

logger = logging.getLogger("m365_identity_risk.assessment")

UPN_PATTERN = re.compile(r"^[A-Za-z0-9._%+'\-]+@[A-Za-z0-9\-]+(\.[A-Za-z0-9\-]+)*\.[A-Za-z]{2,}$")


class ValidationError(ValueError):
    """Raised when account identifiers are malformed."""
    def __init__(self, invalid: list[str]):
        self.invalid = invalid
        super().__init__(f"Invalid account identifier(s): {', '.join(invalid)}")


def validate_accounts(accounts: Iterable[str]) -> list[str]:
    """Return unique, lower-cased UPNs in input order; reject malformed ones."""
    valid, invalid, seen = [], [], set()
    for raw in accounts:
        upn = (raw or "").strip()
        if not upn:
            continue
        if not UPN_PATTERN.match(upn):
            invalid.append(upn)
            continue
        if upn.lower() not in seen:
            seen.add(upn.lower())
            valid.append(upn.lower())
    if invalid:
        raise ValidationError(invalid)
    return valid


def report_id_for(user_principal_name: str, timestamp: str) -> str:
    return f"{timestamp}:{user_principal_name.lower()}"


@dataclass
class AccountAssessment:
    """Everything produced for one account."""
    report_id: str
    context: AccountContext
    findings: tuple[Finding, ...]
    score: AssessmentScore
    document: dict[str, Any]
    warnings: list[str] = field(default_factory=list)
    files: list[Path] = field(default_factory=list)


@dataclass
class AccountOutcome:
    account: str
    status: str                              # succeeded, failed
    report_id: str = ""
    level: str = ""
    overall_score: Optional[int] = None
    output_dir: str = ""
    warnings: int = 0
    error: str = ""

    def to_dict(self) -> dict:
        data = {
            "account": self.account,
            "status": self.status,
            "report_id": self.report_id,
        }
        if self.status == "succeeded":
            data.update({
                "level": self.level,
                "overall_score": self.overall_score,
                "output_dir": self.output_dir,
                "warnings": self.warnings,
            })
        else:
            data["error"] = self.error
        return data


# ─── Pure stages ────────────────────────────────────────────────────────────

async def enrich_reputation(
    telemetry: AccountTelemetry,
    cache: ReputationCache,
) -> Mapping[str, AbuseIpCacheEntry]:
    """
    Resolve every sign-in IP once and accumulate per-IP usage counters.
    The cache is cleared first so no other account's entries survive.
    """
    cache.clear()
    for sign_in in telemetry.sign_ins:
        if not sign_in.ip_address:
            continue
        await cache.lookup(sign_in.ip_address)
        cache.record_sign_in(
            sign_in.ip_address,
            mfa=is_mfa_success(sign_in),
            compliant_device=bool(sign_in.device_compliant),
        )
    return cache.snapshot()


def assess_telemetry(
    telemetry: AccountTelemetry,
    catalog: Catalog,
    config: EngineConfig,
    report_id: str,
    reputation: Optional[Mapping[str, AbuseIpCacheEntry]] = None,
    as_of: Optional[datetime] = None,
    exclusions: ExclusionInput = None,
    warnings: Optional[list[str]] = None,
    reputation_stats: Optional[dict] = None,
) -> AccountAssessment:
    """Evaluate, score and export one account's normalized telemetry."""
    context = build_context(telemetry, config.detection, reputation, as_of)
    findings = evaluate_account(context, catalog)

    lookup = as_exclusion_lookup(exclusions)
    score = score_assessment(findings, lookup, catalog.settings, account_scope=context.user.scope)
    applied = [str(f.key) for f in findings if lookup.is_excluded(f.key)]

    document = build_export(
        report_id=report_id,
        context=context,
        catalog=catalog,
        findings=findings,
        assessment=score,
        reputation_stats=reputation_stats,
        warnings=warnings,
        exclusions_applied=applied,
    )
    # The export must re-score to exactly what was just computed
    verify_consistency(score, recompute_from_export(document))

    return AccountAssessment(
        report_id=report_id,
        context=context,
        findings=findings,
        score=score,
        document=document,
        warnings=list(warnings or []),
    )


def write_outputs(assessment: AccountAssessment, output_dir: Path, formats: Iterable[str]) -> list[Path]:
    return write_outputs_for_document(assessment.document, output_dir, formats)


def write_outputs_for_document(document: dict, output_dir: Path, formats: Iterable[str]) -> list[Path]:
    formats = set(formats)
    files = [export_json(document, output_dir)]
    if "csv" in formats:
        files.extend(export_csv(document, output_dir))
    if "executive" in formats:
        files.append(export_executive_summary(document, output_dir))
    return files


def rescore_export(document: dict[str, Any], exclusions: ExclusionInput = None) -> dict[str, Any]:
    """
    Return a copy of an export re-scored under a new set of false-positive
    marks. Findings are untouched; only scores and the applied marks change.
    """
    lookup = as_exclusion_lookup(exclusions if exclusions is not None else ())
    rescored = recompute_from_export(document, lookup)

    updated = copy.deepcopy(document)
    updated["scores"] = rescored.to_dict()
    updated["exclusions"] = {
        "applied": sorted(f["key"] for f in document["findings"] if lookup.is_excluded(f["key"])),
    }
    verify_consistency(rescored, recompute_from_export(updated))
    return updated


# ─── Collection ─────────────────────────────────────────────────────────────

async def collect_account(
    graph: GraphClient,
    config: EngineConfig,
    user_principal_name: str,
    as_of: datetime,
) -> tuple[dict, list[str]]:
    """
    Collect the raw payload for one account.
    Raises ConnectivityError when the user or its sign-ins cannot be read.
    """
    target = AccountTarget(
        user_principal_name=user_principal_name,
        since=AccountTarget.window_start(as_of, config.collection.lookback_days),
    )
    identity = await IdentityCollector(graph, config.collection, target).execute()
    target = target.with_user_id(identity.data["user"]["id"])

    outcomes = await asyncio.gather(
        *(cls(graph, config.collection, target).execute() for cls in ACCOUNT_COLLECTORS),
        return_exceptions=True,
    )
    results: list[CollectorResult] = [identity]
    for cls, res in zip(ACCOUNT_COLLECTORS, outcomes):
        if isinstance(res, ConnectivityError):
            raise res
        if isinstance(res, Exception):
            raise ConnectivityError(f"{cls.name} collection failed: {res}") from res
        results.append(res)

    payload: dict[str, Any] = {}
    warnings: list[str] = []
    for res in results:
        payload.update(res.data)
        warnings.extend(res.messages)
    return payload, warnings


# ─── Runner ─────────────────────────────────────────────────────────────────

class AssessmentRunner:
    """Runs a batch of accounts against one authenticated Graph session."""

    def __init__(
        self,
        config: EngineConfig,
        catalog: Catalog,
        graph: GraphClient,
        reputation_client: Optional[AbuseIPDBClient] = None,
        exclusion_store: Optional[SQLiteExclusionStore] = None,
    ):
        self.config = config
        self.catalog = catalog
        self.graph = graph
        self.reputation_client = reputation_client
        self.exclusion_store = exclusion_store

    async def assess_account(self, user_principal_name: str) -> AccountAssessment:
        as_of = datetime.now(timezone.utc)
        report_id = report_id_for(user_principal_name, self.config.output.timestamp)

        raw, warnings = await collect_account(self.graph, self.config, user_principal_name, as_of)
        telemetry = normalize_account(raw)

        # Fresh cache per account; never shared across the batch
        cache = ReputationCache(self.reputation_client, self.config.reputation.max_queries)
        reputation = await enrich_reputation(telemetry, cache)
        stats = cache.stats()
        if stats["degraded"]:
            warnings.append(
                f"[reputation] {stats['degraded']} lookup(s) degraded to unknown"
            )

        exclusions = (
            self.exclusion_store.lookup_for(report_id) if self.exclusion_store else None
        )
        assessment = assess_telemetry(
            telemetry,
            self.catalog,
            self.config,
            report_id=report_id,
            reputation=reputation,
            as_of=as_of,
            exclusions=exclusions,
            warnings=warnings,
            reputation_stats=stats,
        )
        output_dir = self.config.output.account_dir(user_principal_name)
        assessment.files = write_outputs(assessment, output_dir, self.config.output.formats)
        return assessment

    async def run_batch(self, accounts: Iterable[str]) -> list[AccountOutcome]:
        """Assess accounts sequentially; one failure never aborts the rest."""
        accounts = list(accounts)
        outcomes = []
        for index, upn in enumerate(accounts, 1):
            logger.info(f"[{index}/{len(accounts)}] Assessing {upn}")
            try:
                assessment = await self.assess_account(upn)
            except Exception as e:
                logger.exception(f"Assessment failed for {upn}")
                outcomes.append(AccountOutcome(
                    account=upn,
                    status="failed",
                    report_id=report_id_for(upn, self.config.output.timestamp),
                    error=f"{type(e).__name__}: {e}",
                ))
                continue

            summary = assessment.score.summary
            outcomes.append(AccountOutcome(
                account=upn,
                status="succeeded",
                report_id=assessment.report_id,
                level=summary.level.label,
                overall_score=summary.overall_score,
                output_dir=str(self.config.output.account_dir(upn)),
                warnings=len(assessment.warnings),
            ))

        export_batch_summary(
            [o.to_dict() for o in outcomes],
            self.config.output.batch_dir,
            batch_id=self.config.output.timestamp,
            graph_stats=self.graph.get_stats(),
        )
        failed = sum(1 for o in outcomes if o.status != "succeeded")
        logger.info(f"Batch complete — {len(outcomes) - failed} succeeded, {failed} failed")
        return outcomes


def build_reputation_client(
    config: EngineConfig,
    guardian: SafetyGuardian,
) -> Optional[AbuseIPDBClient]:
    api_key = config.reputation.resolve_api_key()
    if not config.reputation.enabled or not api_key:
        return None
    return AbuseIPDBClient(api_key, guardian, max_age_days=config.reputation.max_age_days)
