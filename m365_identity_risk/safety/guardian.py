"""
Safety Guardian — Enforces strict read-only operation.
Every outbound request (Graph and reputation lookups) is validated for method
and destination host before it is sent.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

logger = logging.getLogger("m365_identity_risk.safety")

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

ALLOWED_HOSTS = {
    "graph.microsoft.com",
    "api.abuseipdb.com",
}

# Graph uses POST for batched reads only
SAFE_POST_ENDPOINTS = [
    re.compile(r"^https://graph\.microsoft\.com/(v1\.0|beta)/\$batch$"),
]

BLOCKED_URL_PATTERNS = [
    re.compile(r"/revokeSignInSessions$", re.IGNORECASE),
    re.compile(r"/resetPassword$", re.IGNORECASE),
    re.compile(r"/dismiss$", re.IGNORECASE),
    re.compile(r"/confirmCompromised$", re.IGNORECASE),
    re.compile(r"/api/v2/report$", re.IGNORECASE),
]


class SafetyViolation(Exception):
    """Raised when a write operation or unknown destination is attempted."""
    pass


class SafetyGuardian:
    """
    Validates outbound HTTP requests and keeps an audit of checks and violations.
    """

    def __init__(self, allowed_hosts: Optional[set[str]] = None):
        self.allowed_hosts = set(allowed_hosts or ALLOWED_HOSTS)
        self.violations: list[dict] = []
        self.checks_performed: int = 0
        self.started_at: str = datetime.now(timezone.utc).isoformat()

    def validate_request(self, method: str, url: str) -> bool:
        """Return True if safe, raise SafetyViolation otherwise."""
        self.checks_performed += 1
        method_upper = method.upper()

        host = (urlparse(url).hostname or "").lower()
        if host not in self.allowed_hosts:
            self._record_violation(method_upper, url, f"Host not allowed: {host or '?'}")
            raise SafetyViolation(f"SAFETY VIOLATION: Unknown destination {url}")

        for pattern in BLOCKED_URL_PATTERNS:
            if pattern.search(urlparse(url).path):
                self._record_violation(method_upper, url, "Blocked write-pattern URL")
                raise SafetyViolation(
                    f"SAFETY VIOLATION: Write-pattern URL detected: {method_upper} {url}"
                )

        if method_upper in ("GET", "HEAD", "OPTIONS"):
            return True

        if method_upper == "POST" and any(p.search(url) for p in SAFE_POST_ENDPOINTS):
            return True

        self._record_violation(method_upper, url, "Write HTTP method blocked")
        raise SafetyViolation(f"SAFETY VIOLATION: Write method blocked: {method_upper} {url}")

    def _record_violation(self, method: str, url: str, reason: str):
        self.violations.append({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "method": method,
            "url": url,
            "reason": reason,
        })
        logger.critical(f"SAFETY VIOLATION: {reason} — {method} {url}")

    def get_audit_record(self) -> dict:
        return {
            "mode": "READ-ONLY",
            "started_at": self.started_at,
            "checks_performed": self.checks_performed,
            "violations_detected": len(self.violations),
            "violations": list(self.violations),
            "status": "CLEAN" if not self.violations else "VIOLATIONS_DETECTED",
        }
