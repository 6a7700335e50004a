"""
Sign-In-Risk evaluators (SR-xx) — evaluated once per sign-in event.

Reputation-backed indicators only fire on a known reputation answer; unknown,
private and skipped entries never trigger.
"""

from __future__ import annotations

from ..classifiers import is_mfa_success, mfa_signals
from ..telemetry.models import SignInEvent
from .base import Verdict, hit, miss, register
from .context import AccountContext

LEGACY_CLIENT_APPS = {
    "exchange activesync",
    "imap4",
    "pop3",
    "authenticated smtp",
    "mapi over http",
    "offline address book",
    "outlook anywhere (rpc over http)",
    "exchange web services",
    "exchange online powershell",
    "autodiscover",
    "reporting web services",
    "other clients",
}

RISKY_SIGN_IN_LEVELS = {"medium", "high"}

# status.errorCode values for a denied, failed or abandoned MFA challenge
MFA_FAILURE_CODES = {
    500121: "strong authentication failed or was denied",
    50074: "strong authentication required but not completed",
    50076: "MFA required by policy but not completed",
    50158: "external security challenge not satisfied",
    500133: "MFA token expired before completion",
}

ANONYMIZER_RISK_EVENTS = {"anonymizedipaddress", "tor"}


def _lower(value) -> str:
    return (value or "").strip().lower()


@register("SR-01")
def legacy_authentication(ctx: AccountContext, s: SignInEvent) -> Verdict:
    client = _lower(s.client_app_used)
    if client in LEGACY_CLIENT_APPS:
        return hit(f"Legacy protocol used: {s.client_app_used}", client_app=s.client_app_used)
    return miss(client_app=s.client_app_used)


@register("SR-02")
def no_mfa_on_sign_in(ctx: AccountContext, s: SignInEvent) -> Verdict:
    if not s.succeeded:
        return miss("Sign-in did not succeed")
    signals = mfa_signals(s)
    if is_mfa_success(s):
        return miss("MFA satisfied", signals=signals)
    return hit(
        f"Successful sign-in without MFA (requirement: "
        f"{s.authentication_requirement or 'unknown'})",
        signals=signals,
    )


@register("SR-03")
def identity_protection_sign_in_risk(ctx: AccountContext, s: SignInEvent) -> Verdict:
    level = _lower(s.risk_level)
    if level in RISKY_SIGN_IN_LEVELS:
        return hit(
            f"Identity Protection rated sign-in {level} risk",
            risk_level=s.risk_level,
            risk_event_types=list(s.risk_event_types),
        )
    return miss(risk_level=s.risk_level)


@register("SR-04")
def outside_safe_countries(ctx: AccountContext, s: SignInEvent) -> Verdict:
    safe = set(ctx.detection.safe_countries)
    if not safe:
        return miss("No safe countries configured")
    if not s.country:
        return miss("Sign-in country unknown")
    if s.country in safe:
        return miss(country=s.country)
    return hit(f"Sign-in from {s.country}, outside safe countries", country=s.country,
               safe_countries=sorted(safe))


@register("SR-05")
def mfa_denied_or_interrupted(ctx: AccountContext, s: SignInEvent) -> Verdict:
    reason = MFA_FAILURE_CODES.get(s.error_code or 0)
    if reason is None and "mfa denied" in _lower(s.failure_reason):
        reason = "MFA denied by user"
    if reason is None:
        return miss(error_code=s.error_code)
    return hit(f"MFA challenge failed: {reason}", error_code=s.error_code,
               failure_reason=s.failure_reason)


@register("SR-06")
def impossible_travel(ctx: AccountContext, s: SignInEvent) -> Verdict:
    previous = ctx.previous_located.get(s.id)
    if previous is None or previous.country == s.country:
        return miss()
    hours = (s.created_at - previous.created_at).total_seconds() / 3600
    if hours >= ctx.detection.impossible_travel_hours:
        return miss(hours_since_previous=round(hours, 2))
    return hit(
        f"{previous.country} to {s.country} in {hours:.1f}h",
        previous_sign_in=previous.id,
        previous_country=previous.country,
        previous_ip=previous.ip_address,
        hours_between=round(hours, 2),
    )


@register("SR-07")
def unmanaged_device(ctx: AccountContext, s: SignInEvent) -> Verdict:
    if not s.succeeded:
        return miss("Sign-in did not succeed")
    if s.device_compliant or s.device_managed:
        return miss(device_compliant=s.device_compliant, device_managed=s.device_managed)
    return hit("Sign-in from an unmanaged, non-compliant device",
               device_compliant=s.device_compliant, device_managed=s.device_managed)


@register("SR-08")
def conditional_access_not_applied(ctx: AccountContext, s: SignInEvent) -> Verdict:
    if s.succeeded and _lower(s.conditional_access_status) == "notapplied":
        return hit("No Conditional Access policy applied to the sign-in")
    return miss(conditional_access_status=s.conditional_access_status)


@register("SR-09")
def suspicious_ip_asn(ctx: AccountContext, s: SignInEvent) -> Verdict:
    location = ctx.trusted_locations.trusted_location_name(s.ip_address)
    if location is not None:
        return miss(f"IP inside trusted location '{location}'", trusted_location=location)

    rep = ctx.reputation_for(s.ip_address)
    if not rep.known:
        return miss("IP reputation unknown", reputation_status=rep.status)

    detection = ctx.detection
    hosting = bool(rep.usage_type) and rep.usage_type in detection.suspicious_usage_types
    bad_asn = s.asn is not None and s.asn in detection.suspicious_asns
    details = {
        "abuse_score": rep.abuse_score,
        "usage_type": rep.usage_type,
        "asn": s.asn,
        "isp": rep.isp,
    }
    if rep.abuse_score >= detection.suspicious_abuse_score and (hosting or bad_asn):
        source = rep.usage_type if hosting else f"AS{s.asn}"
        return hit(
            f"IP {s.ip_address} abuse score {rep.abuse_score} from {source}",
            **details,
        )
    return miss(**details)


@register("SR-10")
def session_multiple_ips(ctx: AccountContext, s: SignInEvent) -> Verdict:
    ips = ctx.session_ips.get(s.session_id or "", ())
    if len(ips) > 1:
        return hit(f"Session used from {len(ips)} IPs", session_id=s.session_id,
                   ip_addresses=list(ips))
    return miss(session_id=s.session_id)


@register("SR-11")
def abuse_reported_ip(ctx: AccountContext, s: SignInEvent) -> Verdict:
    rep = ctx.reputation_for(s.ip_address)
    if not rep.known:
        return miss("IP reputation unknown", reputation_status=rep.status)
    details = {"abuse_score": rep.abuse_score, "total_reports": rep.total_reports}
    if rep.abuse_score >= ctx.detection.suspicious_abuse_score:
        return hit(
            f"IP {s.ip_address} abuse confidence {rep.abuse_score}% "
            f"({rep.total_reports} reports)",
            **details,
        )
    return miss(**details)


@register("SR-12")
def admin_tool_untrusted_network(ctx: AccountContext, s: SignInEvent) -> Verdict:
    admin_apps = {a.lower() for a in ctx.detection.admin_app_names}
    if _lower(s.app_display_name) not in admin_apps:
        return miss(app=s.app_display_name)
    location = ctx.trusted_locations.trusted_location_name(s.ip_address)
    if location is not None:
        return miss(f"{s.app_display_name} from trusted location '{location}'",
                    app=s.app_display_name, trusted_location=location)
    return hit(f"{s.app_display_name} used from untrusted network {s.ip_address}",
               app=s.app_display_name, ip_address=s.ip_address)


@register("SR-13")
def scripted_user_agent(ctx: AccountContext, s: SignInEvent) -> Verdict:
    agent = _lower(s.user_agent)
    matched = sorted(p for p in ctx.detection.scripted_user_agents if p.lower() in agent)
    if agent and matched:
        return hit(f"Scripted user agent: {s.user_agent}", user_agent=s.user_agent,
                   patterns=matched)
    return miss(user_agent=s.user_agent)


@register("SR-14")
def anonymizer_source(ctx: AccountContext, s: SignInEvent) -> Verdict:
    events = sorted(e for e in s.risk_event_types if e.lower() in ANONYMIZER_RISK_EVENTS)
    rep = ctx.reputation_for(s.ip_address)
    tor = rep.known and rep.is_tor is True
    if events or tor:
        sources = events + (["reputation: Tor exit node"] if tor else [])
        return hit(f"Anonymized source ({', '.join(sources)})", risk_events=events, is_tor=tor)
    return miss(reputation_status=rep.status)


@register("SR-15")
def safe_country(ctx: AccountContext, s: SignInEvent) -> Verdict:
    if s.country and s.country in set(ctx.detection.safe_countries):
        return hit(f"Sign-in from safe country {s.country}", country=s.country)
    return miss(country=s.country)


@register("SR-16")
def trusted_named_location(ctx: AccountContext, s: SignInEvent) -> Verdict:
    location = ctx.trusted_locations.trusted_location_name(s.ip_address)
    if location is None:
        return miss()
    return hit(f"Sign-in from trusted location '{location}'", trusted_location=location)
