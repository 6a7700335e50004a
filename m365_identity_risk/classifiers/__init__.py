"""Classifiers package — ancillary facts consumed by indicator evaluators."""

from .conditional_access import (
    ProtectionFact,
    UNPROTECTED,
    classify_account_protection,
    classify_sign_in_protection,
)
from .mfa import is_mfa_success, mfa_signals
from .oauth import OAuthClassification, classify_oauth_grant
from .trusted_locations import TrustedLocationSet, resolve_trusted_locations

__all__ = [
    "ProtectionFact",
    "UNPROTECTED",
    "classify_account_protection",
    "classify_sign_in_protection",
    "is_mfa_success",
    "mfa_signals",
    "OAuthClassification",
    "classify_oauth_grant",
    "TrustedLocationSet",
    "resolve_trusted_locations",
]
