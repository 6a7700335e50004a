"""
Normalized telemetry records.
Every field that Graph may omit is Optional or an empty tuple; records are
frozen so evaluators can share them without copying.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class UserProfile:
    id: str
    user_principal_name: str
    display_name: Optional[str] = None
    account_enabled: Optional[bool] = None
    user_type: str = "Member"
    created_at: Optional[datetime] = None
    last_password_change: Optional[datetime] = None
    auth_methods: tuple[str, ...] = ()       # Graph type names, e.g. "fido2AuthenticationMethod"
    auth_methods_available: bool = False     # False when the methods endpoint was not readable
    risk_level: Optional[str] = None         # Identity Protection riskyUser.riskLevel
    risk_state: Optional[str] = None
    risk_detail: Optional[str] = None
    group_ids: tuple[str, ...] = ()

    @property
    def scope(self) -> str:
        return f"account:{self.user_principal_name.lower()}"


@dataclass(frozen=True)
class RoleAssignment:
    role_name: str
    role_definition_id: Optional[str] = None
    directory_scope: str = "/"
    assignment_type: str = "active"


@dataclass(frozen=True)
class AppliedPolicy:
    id: Optional[str]
    display_name: Optional[str]
    result: Optional[str]                    # success, failure, notApplied, reportOnly...
    enforced_grant_controls: tuple[str, ...] = ()


@dataclass(frozen=True)
class SignInEvent:
    id: str
    created_at: Optional[datetime] = None
    app_display_name: Optional[str] = None
    app_id: Optional[str] = None
    client_app_used: Optional[str] = None
    ip_address: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    user_agent: Optional[str] = None
    error_code: Optional[int] = None
    failure_reason: Optional[str] = None
    authentication_requirement: Optional[str] = None
    mfa_factor_count: int = 0
    satisfied_by_claim: bool = False
    mfa_method: Optional[str] = None
    device_compliant: Optional[bool] = None
    device_managed: Optional[bool] = None
    conditional_access_status: Optional[str] = None
    applied_policies: tuple[AppliedPolicy, ...] = ()
    risk_level: Optional[str] = None
    risk_event_types: tuple[str, ...] = ()
    asn: Optional[int] = None
    session_id: Optional[str] = None
    correlation_id: Optional[str] = None
    is_interactive: Optional[bool] = None

    @property
    def scope(self) -> str:
        return f"signin:{self.id}"

    @property
    def succeeded(self) -> bool:
        return self.error_code == 0


@dataclass(frozen=True)
class AuditEntry:
    id: str
    activity: str
    activity_at: Optional[datetime] = None
    category: Optional[str] = None
    result: Optional[str] = None
    initiated_by: Optional[str] = None       # UPN or app display name
    initiated_by_id: Optional[str] = None
    target_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class InboxRule:
    id: str
    display_name: str = ""
    enabled: bool = True
    forward_to: tuple[str, ...] = ()
    forward_as_attachment_to: tuple[str, ...] = ()
    redirect_to: tuple[str, ...] = ()
    delete: bool = False
    permanent_delete: bool = False
    move_to_folder: Optional[str] = None     # Folder display name when resolvable
    mark_as_read: bool = False
    keywords: tuple[str, ...] = ()           # subject/body conditions, lower-cased

    @property
    def forwarding_targets(self) -> tuple[str, ...]:
        return self.forward_to + self.forward_as_attachment_to + self.redirect_to


@dataclass(frozen=True)
class OAuthGrant:
    id: str
    client_id: str
    consent_type: str = "Principal"          # Principal (user) or AllPrincipals (admin)
    scopes: tuple[str, ...] = ()
    client_app_id: Optional[str] = None
    client_display_name: Optional[str] = None
    publisher_verified: Optional[bool] = None
    tags: tuple[str, ...] = ()

    @property
    def is_admin_consent(self) -> bool:
        return self.consent_type == "AllPrincipals"


@dataclass(frozen=True)
class ConditionalAccessPolicy:
    id: str
    display_name: str = ""
    state: str = "disabled"
    include_users: tuple[str, ...] = ()
    exclude_users: tuple[str, ...] = ()
    include_groups: tuple[str, ...] = ()
    exclude_groups: tuple[str, ...] = ()
    include_roles: tuple[str, ...] = ()
    exclude_roles: tuple[str, ...] = ()
    include_applications: tuple[str, ...] = ()
    exclude_applications: tuple[str, ...] = ()
    grant_controls: tuple[str, ...] = ()
    authentication_strength: Optional[str] = None
    client_app_types: tuple[str, ...] = ()


@dataclass(frozen=True)
class NamedLocation:
    id: str
    display_name: str = ""
    kind: str = "ip"                         # ip, country, other
    is_trusted: bool = False
    ip_ranges: tuple[str, ...] = ()
    countries: tuple[str, ...] = ()


@dataclass(frozen=True)
class AccountTelemetry:
    """Everything the evaluators may read for one account."""
    user: UserProfile
    roles: tuple[RoleAssignment, ...] = ()
    sign_ins: tuple[SignInEvent, ...] = ()
    audits: tuple[AuditEntry, ...] = ()
    inbox_rules: tuple[InboxRule, ...] = ()
    oauth_grants: tuple[OAuthGrant, ...] = ()
    ca_policies: tuple[ConditionalAccessPolicy, ...] = ()
    named_locations: tuple[NamedLocation, ...] = ()
    inbox_rules_available: bool = False
