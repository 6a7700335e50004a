"""
Telemetry Normalizer — shapes raw Graph payloads into frozen telemetry records.

Input is the merged collector payload for one account:

    {
        "user": {...},                     # /users/{id}
        "auth_methods": [...] | None,      # None when the endpoint was not readable
        "group_ids": [...],
        "role_assignments": [...],         # roleAssignments with $expand=roleDefinition
        "risky_user": {...} | None,
        "sign_ins": [...],
        "directory_audits": [...],
        "inbox_rules": [...] | None,
        "mail_folders": {folder_id: display_name},
        "oauth_grants": [...],
        "service_principals": {object_id: {...}},
        "ca_policies": [...],
        "named_locations": [...],
    }

Missing keys, JSON nulls and empty collections never raise.
"""

from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

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

logger = logging.getLogger("m365_identity_risk.telemetry")

_FRACTION_RE = re.compile(r"\.(\d{6})\d+")

# authenticationDetails methods that are not a second factor
_FIRST_FACTOR_METHODS = {"password", "previously satisfied", ""}

_CLAIM_MARKERS = (
    "mfa requirement satisfied",
    "satisfied by claim",
    "previously satisfied",
)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a Graph ISO-8601 timestamp; returns None for anything unusable."""
    if not value or not isinstance(value, str):
        return None
    text = _FRACTION_RE.sub(r".\1", value.strip()).replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _strings(values: Iterable[Any]) -> tuple[str, ...]:
    return tuple(str(v) for v in values if v not in (None, ""))


def _as_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _odata_type(item: dict) -> str:
    return (item.get("@odata.type") or "").split(".")[-1]


def _addresses(recipients: Any) -> tuple[str, ...]:
    out = []
    for r in _as_list(recipients):
        address = _as_dict(_as_dict(r).get("emailAddress")).get("address")
        if address:
            out.append(address.lower())
    return tuple(out)


# ── User ────────────────────────────────────────────────────────────────────

def normalize_user(
    raw_user: Any,
    auth_methods: Any = None,
    risky_user: Any = None,
    group_ids: Any = None,
) -> UserProfile:
    user = _as_dict(raw_user)
    risky = _as_dict(risky_user)
    upn = user.get("userPrincipalName") or user.get("mail") or user.get("id") or "unknown"
    methods_available = isinstance(auth_methods, list)
    return UserProfile(
        id=user.get("id") or upn,
        user_principal_name=upn,
        display_name=user.get("displayName"),
        account_enabled=user.get("accountEnabled"),
        user_type=user.get("userType") or "Member",
        created_at=parse_datetime(user.get("createdDateTime")),
        last_password_change=parse_datetime(user.get("lastPasswordChangeDateTime")),
        auth_methods=tuple(sorted({
            _odata_type(_as_dict(m)) for m in _as_list(auth_methods)
        } - {""})),
        auth_methods_available=methods_available,
        risk_level=risky.get("riskLevel"),
        risk_state=risky.get("riskState"),
        risk_detail=risky.get("riskDetail"),
        group_ids=tuple(sorted(_strings(_as_list(group_ids)))),
    )


def normalize_role_assignment(raw: Any) -> RoleAssignment:
    item = _as_dict(raw)
    definition = _as_dict(item.get("roleDefinition"))
    return RoleAssignment(
        role_name=definition.get("displayName") or item.get("roleName") or "Unknown role",
        role_definition_id=item.get("roleDefinitionId") or definition.get("templateId"),
        directory_scope=item.get("directoryScopeId") or "/",
        assignment_type=item.get("assignmentType") or "active",
    )


# ── Sign-ins ────────────────────────────────────────────────────────────────

def _count_second_factors(details: list) -> int:
    count = 0
    for step in details:
        step = _as_dict(step)
        method = (step.get("authenticationMethod") or "").strip().lower()
        if step.get("succeeded") and method not in _FIRST_FACTOR_METHODS:
            count += 1
    return count


def _satisfied_by_claim(details: list) -> bool:
    for step in details:
        step = _as_dict(step)
        text = " ".join(
            str(step.get(k) or "")
            for k in ("authenticationMethod", "authenticationStepResultDetail",
                      "authenticationMethodDetail")
        ).lower()
        if any(marker in text for marker in _CLAIM_MARKERS):
            return True
    return False


def _fallback_sign_in_id(item: dict) -> str:
    """Stable id for a sign-in Graph returned without id or correlationId."""
    basis = "|".join(str(item.get(k) or "") for k in
                     ("createdDateTime", "ipAddress", "appId", "userId", "sessionId"))
    return "anon-" + hashlib.sha256(basis.encode("utf-8")).hexdigest()[:16]


def normalize_sign_in(raw: Any) -> SignInEvent:
    item = _as_dict(raw)
    status = _as_dict(item.get("status"))
    location = _as_dict(item.get("location"))
    device = _as_dict(item.get("deviceDetail"))
    mfa_detail = _as_dict(item.get("mfaDetail"))
    details = _as_list(item.get("authenticationDetails"))

    risk_events = _as_list(item.get("riskEventTypes_v2")) or _as_list(item.get("riskEventTypes"))

    policies = []
    for p in _as_list(item.get("appliedConditionalAccessPolicies")):
        p = _as_dict(p)
        policies.append(AppliedPolicy(
            id=p.get("id"),
            display_name=p.get("displayName"),
            result=p.get("result"),
            enforced_grant_controls=_strings(_as_list(p.get("enforcedGrantControls"))),
        ))

    country = location.get("countryOrRegion")
    return SignInEvent(
        id=str(item.get("id") or item.get("correlationId") or _fallback_sign_in_id(item)),
        created_at=parse_datetime(item.get("createdDateTime")),
        app_display_name=item.get("appDisplayName"),
        app_id=item.get("appId"),
        client_app_used=item.get("clientAppUsed"),
        ip_address=(item.get("ipAddress") or None),
        country=country.upper() if isinstance(country, str) and country else None,
        city=location.get("city") or None,
        user_agent=item.get("userAgent") or None,
        error_code=_as_int(status.get("errorCode")),
        failure_reason=status.get("failureReason"),
        authentication_requirement=item.get("authenticationRequirement"),
        mfa_factor_count=_count_second_factors(details),
        satisfied_by_claim=_satisfied_by_claim(details),
        mfa_method=mfa_detail.get("authMethod") or None,
        device_compliant=device.get("isCompliant"),
        device_managed=device.get("isManaged"),
        conditional_access_status=item.get("conditionalAccessStatus"),
        applied_policies=tuple(policies),
        risk_level=item.get("riskLevelDuringSignIn"),
        risk_event_types=_strings(risk_events),
        asn=_as_int(item.get("autonomousSystemNumber")),
        session_id=item.get("sessionId") or None,
        correlation_id=item.get("correlationId") or None,
        is_interactive=item.get("isInteractive"),
    )


# ── Audits ──────────────────────────────────────────────────────────────────

def normalize_audit(raw: Any) -> AuditEntry:
    item = _as_dict(raw)
    initiated = _as_dict(item.get("initiatedBy"))
    by_user = _as_dict(initiated.get("user"))
    by_app = _as_dict(initiated.get("app"))
    return AuditEntry(
        id=str(item.get("id") or "unknown"),
        activity=item.get("activityDisplayName") or "",
        activity_at=parse_datetime(item.get("activityDateTime")),
        category=item.get("category"),
        result=item.get("result"),
        initiated_by=by_user.get("userPrincipalName") or by_app.get("displayName"),
        initiated_by_id=by_user.get("id") or by_app.get("servicePrincipalId"),
        target_ids=_strings(
            _as_dict(t).get("id") for t in _as_list(item.get("targetResources"))
        ),
    )


# ── Mailbox ─────────────────────────────────────────────────────────────────

def normalize_inbox_rule(raw: Any, folders: Optional[dict] = None) -> InboxRule:
    item = _as_dict(raw)
    conditions = _as_dict(item.get("conditions"))
    actions = _as_dict(item.get("actions"))
    folder_id = actions.get("moveToFolder")
    folder_name = None
    if folder_id:
        folder_name = _as_dict(folders).get(folder_id, folder_id)

    keywords = []
    for key in ("subjectContains", "bodyContains", "bodyOrSubjectContains"):
        keywords.extend(str(k).lower() for k in _as_list(conditions.get(key)) if k)

    return InboxRule(
        id=str(item.get("id") or "unknown"),
        display_name=item.get("displayName") or "",
        enabled=bool(item.get("isEnabled", True)),
        forward_to=_addresses(actions.get("forwardTo")),
        forward_as_attachment_to=_addresses(actions.get("forwardAsAttachmentTo")),
        redirect_to=_addresses(actions.get("redirectTo")),
        delete=bool(actions.get("delete")),
        permanent_delete=bool(actions.get("permanentDelete")),
        move_to_folder=folder_name,
        mark_as_read=bool(actions.get("markAsRead")),
        keywords=tuple(sorted(set(keywords))),
    )


# ── OAuth ───────────────────────────────────────────────────────────────────

def normalize_oauth_grant(raw: Any, service_principals: Optional[dict] = None) -> OAuthGrant:
    item = _as_dict(raw)
    client_id = item.get("clientId") or "unknown"
    sp = _as_dict(_as_dict(service_principals).get(client_id))
    publisher = _as_dict(sp.get("verifiedPublisher"))
    verified: Optional[bool] = None
    if sp:
        verified = bool(publisher.get("verifiedPublisherId"))
    return OAuthGrant(
        id=str(item.get("id") or client_id),
        client_id=client_id,
        consent_type=item.get("consentType") or "Principal",
        scopes=tuple(sorted(set((item.get("scope") or "").split()))),
        client_app_id=sp.get("appId"),
        client_display_name=sp.get("displayName"),
        publisher_verified=verified,
        tags=_strings(_as_list(sp.get("tags"))),
    )


# ── Conditional Access ──────────────────────────────────────────────────────

def normalize_ca_policy(raw: Any) -> ConditionalAccessPolicy:
    p = _as_dict(raw)
    # `or {}` handles JSON null values (key present but None)
    conditions = p.get("conditions", {}) or {}
    users = conditions.get("users", {}) or {}
    applications = conditions.get("applications", {}) or {}
    grant = p.get("grantControls", {}) or {}
    strength = grant.get("authenticationStrength", {}) or {}
    return ConditionalAccessPolicy(
        id=p.get("id") or "unknown",
        display_name=p.get("displayName") or "",
        state=p.get("state") or "disabled",
        include_users=_strings(users.get("includeUsers", []) or []),
        exclude_users=_strings(users.get("excludeUsers", []) or []),
        include_groups=_strings(users.get("includeGroups", []) or []),
        exclude_groups=_strings(users.get("excludeGroups", []) or []),
        include_roles=_strings(users.get("includeRoles", []) or []),
        exclude_roles=_strings(users.get("excludeRoles", []) or []),
        include_applications=_strings(applications.get("includeApplications", []) or []),
        exclude_applications=_strings(applications.get("excludeApplications", []) or []),
        grant_controls=_strings(grant.get("builtInControls", []) or []),
        authentication_strength=strength.get("displayName") or strength.get("id"),
        client_app_types=_strings(conditions.get("clientAppTypes", []) or []),
    )


def normalize_named_location(raw: Any) -> NamedLocation:
    item = _as_dict(raw)
    odata = _odata_type(item)
    if odata == "ipNamedLocation" or "ipRanges" in item:
        kind = "ip"
    elif odata == "countryNamedLocation" or "countriesAndRegions" in item:
        kind = "country"
    else:
        kind = "other"
    return NamedLocation(
        id=item.get("id") or "unknown",
        display_name=item.get("displayName") or "",
        kind=kind,
        is_trusted=bool(item.get("isTrusted")),
        ip_ranges=_strings(
            _as_dict(r).get("cidrAddress") for r in _as_list(item.get("ipRanges"))
        ),
        countries=tuple(c.upper() for c in _strings(_as_list(item.get("countriesAndRegions")))),
    )


# ── Account ─────────────────────────────────────────────────────────────────

def _time_key(value: Optional[datetime], ident: str) -> tuple:
    return (value or _EPOCH, ident)


def normalize_account(raw: Optional[dict]) -> AccountTelemetry:
    """Normalize the merged collector payload of one account."""
    data = _as_dict(raw)
    user = normalize_user(
        data.get("user"),
        auth_methods=data.get("auth_methods"),
        risky_user=data.get("risky_user"),
        group_ids=data.get("group_ids"),
    )

    sign_ins = sorted(
        (normalize_sign_in(s) for s in _as_list(data.get("sign_ins"))),
        key=lambda s: _time_key(s.created_at, s.id),
    )
    audits = sorted(
        (normalize_audit(a) for a in _as_list(data.get("directory_audits"))),
        key=lambda a: _time_key(a.activity_at, a.id),
    )
    folders = _as_dict(data.get("mail_folders"))
    raw_rules = data.get("inbox_rules")
    rules = sorted(
        (normalize_inbox_rule(r, folders) for r in _as_list(raw_rules)),
        key=lambda r: r.id,
    )
    sps = _as_dict(data.get("service_principals"))
    grants = sorted(
        (normalize_oauth_grant(g, sps) for g in _as_list(data.get("oauth_grants"))),
        key=lambda g: g.id,
    )
    roles = sorted(
        (normalize_role_assignment(r) for r in _as_list(data.get("role_assignments"))),
        key=lambda r: (r.role_name, r.directory_scope),
    )
    policies = sorted(
        (normalize_ca_policy(p) for p in _as_list(data.get("ca_policies"))),
        key=lambda p: p.id,
    )
    locations = sorted(
        (normalize_named_location(n) for n in _as_list(data.get("named_locations"))),
        key=lambda n: n.id,
    )

    telemetry = AccountTelemetry(
        user=user,
        roles=tuple(roles),
        sign_ins=tuple(sign_ins),
        audits=tuple(audits),
        inbox_rules=tuple(rules),
        oauth_grants=tuple(grants),
        ca_policies=tuple(policies),
        named_locations=tuple(locations),
        inbox_rules_available=isinstance(raw_rules, list),
    )
    logger.debug(
        f"Normalized {user.user_principal_name}: {len(sign_ins)} sign-ins, "
        f"{len(audits)} audits, {len(rules)} inbox rules, {len(grants)} grants"
    )
    return telemetry
