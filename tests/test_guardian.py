"""
Tests for the read-only safety guardian.
"""

from __future__ import annotations

import pytest

from m365_identity_risk.safety.guardian import SafetyGuardian, SafetyViolation

GRAPH = "https://graph.microsoft.com/v1.0"


def test_reads_are_allowed():
    guardian = SafetyGuardian()
    assert guardian.validate_request("GET", f"{GRAPH}/users/alice%40contoso.com")
    assert guardian.validate_request("get", "https://api.abuseipdb.com/api/v2/check")
    assert guardian.get_audit_record()["status"] == "CLEAN"
    assert guardian.checks_performed == 2


def test_batch_is_the_only_allowed_post():
    guardian = SafetyGuardian()
    assert guardian.validate_request("POST", f"{GRAPH}/$batch")
    assert guardian.validate_request("POST", "https://graph.microsoft.com/beta/$batch")
    with pytest.raises(SafetyViolation, match="Write method"):
        guardian.validate_request("POST", f"{GRAPH}/users")


@pytest.mark.parametrize("method", ["PUT", "PATCH", "DELETE"])
def test_write_methods_are_blocked(method):
    guardian = SafetyGuardian()
    with pytest.raises(SafetyViolation):
        guardian.validate_request(method, f"{GRAPH}/users/id-alice")
    assert guardian.get_audit_record()["violations_detected"] == 1


@pytest.mark.parametrize("path", [
    "/users/id-alice/revokeSignInSessions",
    "/identityProtection/riskyUsers/dismiss",
    "/identityProtection/riskyUsers/confirmCompromised",
])
def test_remediation_endpoints_are_blocked_even_for_get(path):
    with pytest.raises(SafetyViolation, match="Write-pattern"):
        SafetyGuardian().validate_request("GET", f"{GRAPH}{path}")


def test_abuse_reports_are_blocked():
    with pytest.raises(SafetyViolation):
        SafetyGuardian().validate_request("GET", "https://api.abuseipdb.com/api/v2/report")


def test_unknown_hosts_are_blocked():
    guardian = SafetyGuardian()
    with pytest.raises(SafetyViolation, match="Unknown destination"):
        guardian.validate_request("GET", "https://example.com/v1.0/users")
    record = guardian.get_audit_record()
    assert record["status"] == "VIOLATIONS_DETECTED"
    assert record["violations"][0]["reason"] == "Host not allowed: example.com"
    assert record["mode"] == "READ-ONLY"
