"""Telemetry package — normalized record types and the raw-payload normalizer."""

from .models import (
    AccountTelemetry,
    AppliedPolicy,
    AuditEntry,
    ConditionalAccessPolicy,
    InboxRule,
    NamedLocation,
    OAuthGrant,
    RoleAssignment,
    SignInEvent,
    UserProfile,
)
from .normalizer import normalize_account, normalize_sign_in, parse_datetime

__all__ = [
    "AccountTelemetry",
    "AppliedPolicy",
    "AuditEntry",
    "ConditionalAccessPolicy",
    "InboxRule",
    "NamedLocation",
    "OAuthGrant",
    "RoleAssignment",
    "SignInEvent",
    "UserProfile",
    "normalize_account",
    "normalize_sign_in",
    "parse_datetime",
]
