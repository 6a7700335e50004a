"""
User-Risk evaluators (UR-xx) — evaluated once per account.
"""

from __future__ import annotations

from datetime import timedelta

from ..telemetry.models import AuditEntry, InboxRule, UserProfile
from .base import Verdict, hit, miss, register
from .context import AccountContext

# Authentication method types that are not a second factor
PASSWORD_ONLY_METHODS = {"passwordAuthenticationMethod"}

SECURITY_INFO_ACTIVITIES = {
    "user registered security info",
    "user changed default security info",
    "user deleted security info",
    "user registered all required security info",
    "admin registered security info",
    "admin deleted security info",
    "admin updated security info",
    "update user authentication method",
    "reset user's mfa",
}

PASSWORD_RESET_ACTIVITIES = {
    "reset user password",
    "reset password (by admin)",
    "change user password",
    "set force change user password",
}

# Folders attackers commonly move mail into to hide it
HIDING_FOLDERS = {
    "rss feeds",
    "rss subscriptions",
    "conversation history",
    "archive",
    "junk email",
    "deleted items",
    "notes",
}

AT_RISK_STATES = {"atrisk", "confirmedcompromised"}


def _within_window(ctx: AccountContext, entry: AuditEntry) -> bool:
    if entry.activity_at is None:
        return False
    window = timedelta(days=ctx.detection.recent_change_days)
    return ctx.as_of - window <= entry.activity_at <= ctx.as_of


@register("UR-01")
def no_mfa_registered(ctx: AccountContext, user: UserProfile) -> Verdict:
    if not user.auth_methods_available:
        return miss("Authentication methods could not be read", methods_available=False)
    strong = sorted(set(user.auth_methods) - PASSWORD_ONLY_METHODS)
    if strong:
        return miss(f"{len(strong)} MFA method(s) registered", methods=strong)
    return hit("No MFA method registered", methods=list(user.auth_methods))


@register("UR-02")
def forwarding_rule(ctx: AccountContext, user: UserProfile) -> Verdict:
    if not ctx.telemetry.inbox_rules_available:
        return miss("Inbox rules could not be read", rules_available=False)
    rules = [
        {"rule": r.display_name, "targets": list(r.forwarding_targets)}
        for r in ctx.telemetry.inbox_rules
        if r.enabled and r.forwarding_targets
    ]
    if not rules:
        return miss("No forwarding inbox rules")
    targets = sorted({t for r in rules for t in r["targets"]})
    return hit(
        f"{len(rules)} inbox rule(s) forward mail to {', '.join(targets)}",
        rules=rules,
    )


def _suspicious_reasons(rule: InboxRule, keywords: set[str]) -> list[str]:
    reasons = []
    if rule.delete or rule.permanent_delete:
        reasons.append("deletes messages")
    if rule.move_to_folder and rule.move_to_folder.lower() in HIDING_FOLDERS:
        reasons.append(f"moves messages to '{rule.move_to_folder}'")
    matched = sorted(k for k in rule.keywords if any(word in k for word in keywords))
    if matched:
        reasons.append(f"matches keywords: {', '.join(matched)}")
    name = rule.display_name.strip()
    if len(name) <= 2 or not any(c.isalnum() for c in name):
        reasons.append(f"obscure rule name '{rule.display_name}'")
    if rule.mark_as_read and reasons:
        reasons.append("marks messages as read")
    return reasons


@register("UR-03")
def suspicious_inbox_rule(ctx: AccountContext, user: UserProfile) -> Verdict:
    if not ctx.telemetry.inbox_rules_available:
        return miss("Inbox rules could not be read", rules_available=False)
    keywords = {k.lower() for k in ctx.detection.inbox_rule_keywords}
    flagged = []
    for rule in ctx.telemetry.inbox_rules:
        if not rule.enabled:
            continue
        reasons = _suspicious_reasons(rule, keywords)
        if reasons:
            flagged.append({"rule": rule.display_name, "reasons": reasons})
    if not flagged:
        return miss("No suspicious inbox rules")
    return hit(
        f"{len(flagged)} suspicious inbox rule(s): "
        + "; ".join(f"'{f['rule']}' {', '.join(f['reasons'])}" for f in flagged),
        rules=flagged,
    )


@register("UR-04")
def active_admin_role(ctx: AccountContext, user: UserProfile) -> Verdict:
    roles = sorted({r.role_name for r in ctx.telemetry.roles if r.assignment_type == "active"})
    if not roles:
        return miss("No active directory roles")
    return hit(f"Active role(s): {', '.join(roles)}", roles=roles)


@register("UR-05")
def risky_user(ctx: AccountContext, user: UserProfile) -> Verdict:
    state = (user.risk_state or "").lower()
    level = (user.risk_level or "").lower()
    details = {"risk_level": user.risk_level, "risk_state": user.risk_state,
               "risk_detail": user.risk_detail}
    if state in AT_RISK_STATES and level not in ("", "none", "hidden"):
        return hit(f"Identity Protection: {user.risk_state} ({user.risk_level})", **details)
    if state == "confirmedcompromised":
        return hit("Identity Protection: confirmed compromised", **details)
    return miss("Not flagged by Identity Protection", **details)


@register("UR-06")
def auth_method_changed(ctx: AccountContext, user: UserProfile) -> Verdict:
    changes = [
        {
            "activity": a.activity,
            "at": a.activity_at.isoformat(),
            "initiated_by": a.initiated_by,
        }
        for a in ctx.telemetry.audits
        if a.activity.lower() in SECURITY_INFO_ACTIVITIES
        and (a.result or "success").lower() == "success"
        and _within_window(ctx, a)
    ]
    if not changes:
        return miss(f"No security info changes in {ctx.detection.recent_change_days} days")
    return hit(
        f"{len(changes)} security info change(s) in the last "
        f"{ctx.detection.recent_change_days} days",
        changes=changes,
    )


@register("UR-07")
def high_risk_oauth_consent(ctx: AccountContext, user: UserProfile) -> Verdict:
    high = [c for c in ctx.oauth if c.level == "High"]
    if not high:
        return miss(f"{len(ctx.oauth)} OAuth grant(s), none high risk")
    return hit(
        f"High-risk OAuth consent: {', '.join(sorted({c.app_name for c in high}))}",
        grants=[c.to_dict() for c in high],
    )


def _by_someone_else(entry: AuditEntry, user: UserProfile) -> bool:
    if entry.initiated_by_id and entry.initiated_by_id == user.id:
        return False
    if entry.initiated_by and entry.initiated_by.lower() == user.user_principal_name.lower():
        return False
    return bool(entry.initiated_by or entry.initiated_by_id)


@register("UR-08")
def password_reset_by_other(ctx: AccountContext, user: UserProfile) -> Verdict:
    resets = [
        {"activity": a.activity, "at": a.activity_at.isoformat(), "initiated_by": a.initiated_by}
        for a in ctx.telemetry.audits
        if a.activity.lower() in PASSWORD_RESET_ACTIVITIES
        and (a.result or "success").lower() == "success"
        and _within_window(ctx, a)
        and _by_someone_else(a, user)
    ]
    if not resets:
        return miss("No password resets by another actor")
    actors = sorted({r["initiated_by"] or "unknown" for r in resets})
    return hit(f"Password reset by {', '.join(actors)}", resets=resets)
