"""
Tests for the indicator engine and the UR/SR evaluators.

Findings are produced from normalized telemetry built with the helpers in
builders.py; reputation is passed in as a prepared snapshot.
"""

from __future__ import annotations

import pytest

from m365_identity_risk.cache.reputation import AbuseIpCacheEntry
from m365_identity_risk.indicators import EVALUATORS, evaluate_account
from m365_identity_risk.scoring import RiskLevel, score_assessment

from builders import (
    ACCOUNT_SCOPE,
    context,
    raw_sign_in,
    reputation_entry,
    telemetry,
    triggered_ids,
    trusted_location,
)

BAD_IP = "185.220.101.5"


def _by_id(findings, indicator_id, scope=None):
    for f in findings:
        if f.indicator_id == indicator_id and (scope is None or f.entity_scope == scope):
            return f
    raise AssertionError(f"No finding for {indicator_id}")


def _attack_sign_in(sign_in_id="s1", **overrides):
    fields = dict(
        clientAppUsed="IMAP4",
        ipAddress=BAD_IP,
        location={"countryOrRegion": "NL", "city": "Amsterdam"},
        authenticationRequirement="singleFactorAuthentication",
        authenticationDetails=[{"authenticationMethod": "Password", "succeeded": True}],
        deviceDetail={},
    )
    fields.update(overrides)
    return raw_sign_in(sign_in_id, **fields)


# ─── Engine ─────────────────────────────────────────────────────────────────

def test_clean_account_only_mitigates(catalog):
    ctx = context(telemetry(sign_ins=[raw_sign_in()]))
    findings = evaluate_account(ctx, catalog)
    assert triggered_ids(findings) == ["SR-15"]

    result = score_assessment(findings, settings=catalog.settings, account_scope=ACCOUNT_SCOPE)
    assert result.account.raw_points == 0
    assert result.sign_ins[0].raw_points == 0
    assert result.summary.overall_score == 0


def test_clean_account_without_safe_countries_triggers_nothing(catalog):
    ctx = context(telemetry(sign_ins=[raw_sign_in()]), safe_countries=[])
    assert triggered_ids(evaluate_account(ctx, catalog)) == []


def test_account_without_mfa_is_low(catalog):
    ctx = context(telemetry(auth_methods=[
        {"@odata.type": "#microsoft.graph.passwordAuthenticationMethod"},
    ]))
    findings = evaluate_account(ctx, catalog)
    assert triggered_ids(findings) == ["UR-01"]

    result = score_assessment(findings, settings=catalog.settings, account_scope=ACCOUNT_SCOPE)
    assert result.account.raw_points == 3
    assert result.account.level == RiskLevel.LOW
    assert result.summary.user_risk_count == 1


def test_one_finding_per_indicator_and_entity(catalog):
    ctx = context(telemetry(sign_ins=[raw_sign_in("a"), raw_sign_in("b")]))
    findings = evaluate_account(ctx, catalog)
    assert len(findings) == 8 + 2 * 16
    keys = [str(f.key) for f in findings]
    assert len(keys) == len(set(keys))


def test_findings_are_ordered_and_deterministic(catalog):
    tel = telemetry(sign_ins=[
        raw_sign_in("late", createdDateTime="2024-05-31T10:00:00Z"),
        raw_sign_in("early", createdDateTime="2024-05-30T10:00:00Z"),
    ])
    first = evaluate_account(context(tel), catalog)
    second = evaluate_account(context(tel), catalog)
    assert first == second

    assert [f.indicator_id for f in first[:8]] == [f"UR-0{i}" for i in range(1, 9)]
    scopes = [f.entity_scope for f in first[8:]]
    assert scopes == ["signin:early"] * 16 + ["signin:late"] * 16


def test_failing_evaluator_is_isolated(catalog, monkeypatch):
    def boom(ctx, user):
        raise RuntimeError("roles unreadable")

    monkeypatch.setitem(EVALUATORS, "UR-04", boom)
    findings = evaluate_account(context(telemetry(auth_methods=[])), catalog)
    failed = _by_id(findings, "UR-04")
    assert not failed.triggered
    assert failed.evidence.details["error"] == "roles unreadable"
    assert _by_id(findings, "UR-01").triggered


# ─── Sign-in risk ───────────────────────────────────────────────────────────

def test_legacy_protocol_from_bad_ip(catalog):
    ctx = context(
        telemetry(sign_ins=[_attack_sign_in()]),
        reputation={BAD_IP: reputation_entry(BAD_IP, 95)},
    )
    findings = evaluate_account(ctx, catalog)
    fired = triggered_ids(findings, "signin:s1")
    for indicator_id in ("SR-01", "SR-02", "SR-04", "SR-07", "SR-09", "SR-11"):
        assert indicator_id in fired
    assert "SR-15" not in fired

    assert _by_id(findings, "SR-11").points == 3
    assert _by_id(findings, "SR-09").evidence.details["usage_type"] == (
        "Data Center/Web Hosting/Transit"
    )

    result = score_assessment(findings, settings=catalog.settings, account_scope=ACCOUNT_SCOPE)
    assert result.sign_in("signin:s1").level == RiskLevel.CRITICAL
    assert result.summary.high_sign_in_risk_count == 1


@pytest.mark.parametrize("abuse, points", [(95, 3), (80, 2), (60, 1), (30, 1)])
def test_abuse_reported_ip_points_scale_with_score(catalog, abuse, points):
    ctx = context(
        telemetry(sign_ins=[raw_sign_in(ipAddress=BAD_IP)]),
        reputation={BAD_IP: reputation_entry(BAD_IP, abuse)},
    )
    finding = _by_id(evaluate_account(ctx, catalog), "SR-11")
    assert finding.triggered
    assert finding.points == points


def test_unknown_reputation_never_triggers(catalog):
    for reputation in (None, {BAD_IP: AbuseIpCacheEntry(BAD_IP, status="unknown")}):
        ctx = context(telemetry(sign_ins=[raw_sign_in(ipAddress=BAD_IP)]), reputation=reputation)
        fired = triggered_ids(evaluate_account(ctx, catalog))
        assert "SR-09" not in fired
        assert "SR-11" not in fired
        assert "SR-14" not in fired


def test_suspicious_ip_never_fires_inside_trusted_location(catalog):
    ctx = context(
        telemetry(
            sign_ins=[raw_sign_in(ipAddress=BAD_IP)],
            named_locations=[trusted_location("185.220.101.0/24")],
        ),
        reputation={BAD_IP: reputation_entry(BAD_IP, 95)},
    )
    findings = evaluate_account(ctx, catalog)
    sr09 = _by_id(findings, "SR-09")
    assert not sr09.triggered
    assert sr09.evidence.details["trusted_location"] == "HQ"
    assert _by_id(findings, "SR-16").triggered
    assert _by_id(findings, "SR-16").points == -1


def test_suspicious_asn_without_hosting_usage(catalog):
    ctx = context(
        telemetry(sign_ins=[raw_sign_in(ipAddress=BAD_IP, autonomousSystemNumber=64500)]),
        reputation={BAD_IP: reputation_entry(BAD_IP, 40, usage_type="Fixed Line ISP")},
        suspicious_asns=[64500],
    )
    assert _by_id(evaluate_account(ctx, catalog), "SR-09").triggered


def test_tor_reputation_is_anonymizer(catalog):
    ctx = context(
        telemetry(sign_ins=[raw_sign_in(ipAddress=BAD_IP)]),
        reputation={BAD_IP: reputation_entry(BAD_IP, 10, is_tor=True)},
    )
    assert _by_id(evaluate_account(ctx, catalog), "SR-14").triggered


def test_protected_sign_in_findings_are_possible(catalog):
    ctx = context(telemetry(sign_ins=[raw_sign_in(
        clientAppUsed="IMAP4",
        appliedConditionalAccessPolicies=[{
            "id": "p1", "displayName": "Require MFA", "result": "success",
            "enforcedGrantControls": ["Mfa"],
        }],
    )]))
    findings = evaluate_account(ctx, catalog)
    legacy = _by_id(findings, "SR-01")
    assert legacy.triggered
    assert legacy.points == 3
    assert legacy.evidence.summary.startswith("Possible legacy protocol")
    assert legacy.evidence.details["protected"] is True

    mitigating = _by_id(findings, "SR-15")
    assert mitigating.triggered
    assert "protected" not in mitigating.evidence.details


def test_impossible_travel(catalog):
    tel = telemetry(sign_ins=[
        raw_sign_in("us"),
        raw_sign_in("nl", createdDateTime="2024-05-30T11:00:00Z",
                    location={"countryOrRegion": "NL"}),
        raw_sign_in("nl-later", createdDateTime="2024-05-30T20:00:00Z",
                    location={"countryOrRegion": "US"}),
    ])
    findings = evaluate_account(context(tel), catalog)
    travel = _by_id(findings, "SR-06", "signin:nl")
    assert travel.triggered
    assert travel.evidence.details["previous_country"] == "US"
    assert travel.evidence.details["hours_between"] == 1.0
    assert not _by_id(findings, "SR-06", "signin:us").triggered
    assert not _by_id(findings, "SR-06", "signin:nl-later").triggered


def test_session_used_from_multiple_ips(catalog):
    tel = telemetry(sign_ins=[
        raw_sign_in("a", sessionId="sess-1", ipAddress="8.8.8.8"),
        raw_sign_in("b", sessionId="sess-1", ipAddress="1.1.1.1",
                    createdDateTime="2024-05-30T10:05:00Z"),
        raw_sign_in("c", sessionId="sess-2", ipAddress="8.8.8.8",
                    createdDateTime="2024-05-30T10:10:00Z"),
    ])
    findings = evaluate_account(context(tel), catalog)
    assert _by_id(findings, "SR-10", "signin:a").triggered
    assert _by_id(findings, "SR-10", "signin:b").triggered
    assert not _by_id(findings, "SR-10", "signin:c").triggered


def test_mfa_failure_and_scripted_agent(catalog):
    tel = telemetry(sign_ins=[raw_sign_in(
        status={"errorCode": 500121, "failureReason": "Authentication failed"},
        userAgent="python-requests/2.31",
    )])
    fired = triggered_ids(evaluate_account(context(tel), catalog))
    assert "SR-05" in fired
    assert "SR-13" in fired
    assert "SR-02" not in fired


def test_admin_tool_from_untrusted_network(catalog):
    tel = telemetry(sign_ins=[raw_sign_in(appDisplayName="Azure Portal")])
    assert _by_id(evaluate_account(context(tel), catalog), "SR-12").triggered

    trusted = telemetry(
        sign_ins=[raw_sign_in(appDisplayName="Azure Portal", ipAddress="203.0.113.9")],
        named_locations=[trusted_location("203.0.113.0/24")],
    )
    assert not _by_id(evaluate_account(context(trusted), catalog), "SR-12").triggered


# ─── User risk ──────────────────────────────────────────────────────────────

def test_forwarding_and_suspicious_rules(catalog):
    tel = telemetry(inbox_rules=[
        {"id": "r1", "displayName": "Sync", "isEnabled": True,
         "actions": {"forwardTo": [{"emailAddress": {"address": "drop@evil.example"}}]}},
        {"id": "r2", "displayName": ".", "isEnabled": True,
         "conditions": {"subjectContains": ["invoice"]},
         "actions": {"moveToFolder": "f-rss", "markAsRead": True}},
        {"id": "r3", "displayName": "Disabled", "isEnabled": False,
         "actions": {"delete": True}},
    ], mail_folders={"f-rss": "RSS Feeds"})
    findings = evaluate_account(context(tel), catalog)

    forwarding = _by_id(findings, "UR-02")
    assert forwarding.triggered
    assert "drop@evil.example" in forwarding.evidence.summary

    suspicious = _by_id(findings, "UR-03")
    assert suspicious.triggered
    [flagged] = suspicious.evidence.details["rules"]
    assert flagged["rule"] == "."
    assert "marks messages as read" in flagged["reasons"]


def test_unreadable_inbox_rules_do_not_trigger(catalog):
    findings = evaluate_account(context(telemetry(inbox_rules=None)), catalog)
    assert not _by_id(findings, "UR-02").triggered
    assert _by_id(findings, "UR-02").evidence.details["rules_available"] is False


def test_unreadable_auth_methods_do_not_trigger(catalog):
    findings = evaluate_account(context(telemetry(auth_methods=None)), catalog)
    assert not _by_id(findings, "UR-01").triggered


def test_active_admin_role(catalog):
    tel = telemetry(role_assignments=[
        {"roleDefinition": {"displayName": "Global Administrator"}, "assignmentType": "active"},
        {"roleDefinition": {"displayName": "User Administrator"}, "assignmentType": "eligible"},
    ])
    finding = _by_id(evaluate_account(context(tel), catalog), "UR-04")
    assert finding.triggered
    assert finding.evidence.details["roles"] == ["Global Administrator"]


def test_identity_protection_risky_user(catalog):
    tel = telemetry(risky_user={"riskLevel": "high", "riskState": "atRisk"})
    assert _by_id(evaluate_account(context(tel), catalog), "UR-05").triggered

    remediated = telemetry(risky_user={"riskLevel": "none", "riskState": "remediated"})
    assert not _by_id(evaluate_account(context(remediated), catalog), "UR-05").triggered


def _audit(activity, when, by="alice@contoso.com"):
    return {
        "id": f"a-{when}",
        "activityDisplayName": activity,
        "activityDateTime": when,
        "result": "success",
        "initiatedBy": {"user": {"userPrincipalName": by}},
    }


def test_security_info_change_window(catalog):
    recent = telemetry(directory_audits=[
        _audit("User registered security info", "2024-05-29T08:00:00Z"),
    ])
    old = telemetry(directory_audits=[
        _audit("User registered security info", "2024-05-01T08:00:00Z"),
    ])
    assert _by_id(evaluate_account(context(recent), catalog), "UR-06").triggered
    assert not _by_id(evaluate_account(context(old), catalog), "UR-06").triggered
    assert _by_id(
        evaluate_account(context(old, recent_change_days=60), catalog), "UR-06"
    ).triggered


def test_password_reset_by_another_actor(catalog):
    by_admin = telemetry(directory_audits=[
        _audit("Reset user password", "2024-05-31T08:00:00Z", by="helpdesk@contoso.com"),
    ])
    by_self = telemetry(directory_audits=[
        _audit("Change user password", "2024-05-31T08:00:00Z", by="Alice@Contoso.com"),
    ])
    finding = _by_id(evaluate_account(context(by_admin), catalog), "UR-08")
    assert finding.triggered
    assert "helpdesk@contoso.com" in finding.evidence.summary
    assert not _by_id(evaluate_account(context(by_self), catalog), "UR-08").triggered


def test_high_risk_oauth_consent(catalog):
    tel = telemetry(
        oauth_grants=[{"id": "g1", "clientId": "sp-1", "consentType": "Principal",
                       "scope": "Mail.ReadWrite offline_access"}],
        service_principals={"sp-1": {"appId": "app-1", "displayName": "Mail Sync"}},
    )
    finding = _by_id(evaluate_account(context(tel), catalog), "UR-07")
    assert finding.triggered
    assert "Mail Sync" in finding.evidence.summary
