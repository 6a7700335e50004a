"""Indicators package — IOC catalog, evaluators and the evaluation engine."""

from .base import (
    EVALUATORS,
    AccountEvidence,
    EvidenceScaling,
    Finding,
    FindingKey,
    IndicatorDefinition,
    IndicatorFamily,
    SignInEvidence,
    Verdict,
    register,
)
from . import user_risk, signin_risk  # noqa: F401  (registers evaluators)
from .catalog import Catalog, CatalogError, catalog_from_dict, load_catalog
from .context import AccountContext, build_context
from .engine import evaluate_account

__all__ = [
    "EVALUATORS",
    "AccountEvidence",
    "EvidenceScaling",
    "Finding",
    "FindingKey",
    "IndicatorDefinition",
    "IndicatorFamily",
    "SignInEvidence",
    "Verdict",
    "register",
    "Catalog",
    "CatalogError",
    "catalog_from_dict",
    "load_catalog",
    "AccountContext",
    "build_context",
    "evaluate_account",
]
