"""
External Signal Cache — memoized AbuseIPDB reputation lookups for one account.

Each public IP is queried at most once per account run. Failures (timeouts,
rate limiting, malformed responses) degrade to a neutral "unknown" entry and
never propagate. The cache is cleared before the next account so reputation
and usage counters cannot leak between accounts.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping, Optional

import httpx

from ..config import ABUSEIPDB_CHECK_URL, ABUSEIPDB_TIMEOUT_SECONDS
from ..safety.guardian import SafetyGuardian

logger = logging.getLogger("m365_identity_risk.cache.reputation")


class ReputationUnavailable(Exception):
    """Raised by the client when a reputation answer cannot be obtained."""
    pass


@dataclass(frozen=True)
class AbuseIpCacheEntry:
    ip_address: str
    abuse_score: Optional[int] = None        # None = unknown
    status: str = "unknown"                  # ok, unknown, private, skipped
    queried_at: Optional[str] = None
    country_code: Optional[str] = None
    usage_type: Optional[str] = None
    isp: Optional[str] = None
    domain: Optional[str] = None
    total_reports: int = 0
    is_tor: Optional[bool] = None
    error: Optional[str] = None
    sign_in_count: int = 0
    mfa_sign_in_count: int = 0
    compliant_device_sign_in_count: int = 0

    @property
    def known(self) -> bool:
        return self.status == "ok" and self.abuse_score is not None

    def to_dict(self) -> dict:
        return {
            "ip_address": self.ip_address,
            "abuse_score": self.abuse_score,
            "status": self.status,
            "queried_at": self.queried_at,
            "country_code": self.country_code,
            "usage_type": self.usage_type,
            "isp": self.isp,
            "domain": self.domain,
            "total_reports": self.total_reports,
            "is_tor": self.is_tor,
            "error": self.error,
            "sign_in_count": self.sign_in_count,
            "mfa_sign_in_count": self.mfa_sign_in_count,
            "compliant_device_sign_in_count": self.compliant_device_sign_in_count,
        }


def canonical_ip(ip: Optional[str]) -> Optional[str]:
    """Canonical text form of an IP address, or None if unparsable."""
    if not ip:
        return None
    try:
        return str(ipaddress.ip_address(str(ip).strip()))
    except ValueError:
        return None


def _is_public(ip: str) -> bool:
    address = ipaddress.ip_address(ip)
    return not (
        address.is_private
        or address.is_loopback
        or address.is_reserved
        or address.is_link_local
        or address.is_multicast
        or address.is_unspecified
    )


class AbuseIPDBClient:
    """Thin async client for the AbuseIPDB v2 `check` endpoint."""

    def __init__(
        self,
        api_key: str,
        guardian: Optional[SafetyGuardian] = None,
        max_age_days: int = 90,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.guardian = guardian or SafetyGuardian()
        self.max_age_days = max_age_days
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(ABUSEIPDB_TIMEOUT_SECONDS),
            headers={"Key": api_key, "Accept": "application/json"},
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    async def check(self, ip: str) -> dict[str, Any]:
        """Return the `data` object for ``ip`` or raise ReputationUnavailable."""
        self.guardian.validate_request("GET", ABUSEIPDB_CHECK_URL)
        params = {"ipAddress": ip, "maxAgeInDays": str(self.max_age_days)}
        try:
            response = await self._client.get(ABUSEIPDB_CHECK_URL, params=params)
        except httpx.HTTPError as e:
            raise ReputationUnavailable(f"{type(e).__name__}: {e}") from e

        if response.status_code == 429:
            raise ReputationUnavailable("rate limited (429)")
        if response.status_code != 200:
            raise ReputationUnavailable(f"HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as e:
            raise ReputationUnavailable("malformed JSON response") from e

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict) or not isinstance(
            data.get("abuseConfidenceScore"), (int, float)
        ):
            raise ReputationUnavailable("response missing abuseConfidenceScore")
        return data


class ReputationCache:
    """
    Per-account IP reputation cache.
    Owned by exactly one account's processing; call clear() before reuse.
    """

    def __init__(self, client: Optional[AbuseIPDBClient] = None, max_queries: int = 0):
        self.client = client
        self.max_queries = max_queries
        self._entries: dict[str, AbuseIpCacheEntry] = {}
        self.queries = 0
        self.hits = 0
        self.degraded = 0
        self._warned_unconfigured = False

    def clear(self):
        """Drop every entry and counter."""
        self._entries.clear()
        self.queries = 0
        self.hits = 0
        self.degraded = 0

    def __contains__(self, ip: str) -> bool:
        return canonical_ip(ip) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def lookup(self, ip: Optional[str]) -> AbuseIpCacheEntry:
        key = canonical_ip(ip)
        if key is None:
            return AbuseIpCacheEntry(ip_address=str(ip or ""), status="unknown",
                                     error="unparsable address")

        cached = self._entries.get(key)
        if cached is not None:
            self.hits += 1
            return cached

        entry = await self._query(key)
        self._entries[key] = entry
        return entry

    async def _query(self, ip: str) -> AbuseIpCacheEntry:
        if not _is_public(ip):
            return AbuseIpCacheEntry(ip_address=ip, status="private")

        if self.client is None:
            if not self._warned_unconfigured:
                logger.info("AbuseIPDB not configured — IP reputation will be unknown")
                self._warned_unconfigured = True
            return AbuseIpCacheEntry(ip_address=ip, status="unknown", error="not configured")

        if self.max_queries and self.queries >= self.max_queries:
            logger.warning(f"Reputation budget of {self.max_queries} queries spent; skipping {ip}")
            return AbuseIpCacheEntry(ip_address=ip, status="skipped", error="budget exhausted")

        self.queries += 1
        queried_at = datetime.now(timezone.utc).isoformat()
        try:
            data = await self.client.check(ip)
        except ReputationUnavailable as e:
            self.degraded += 1
            logger.warning(f"Reputation lookup degraded for {ip}: {e}")
            return AbuseIpCacheEntry(
                ip_address=ip, status="unknown", queried_at=queried_at, error=str(e),
            )

        return AbuseIpCacheEntry(
            ip_address=ip,
            abuse_score=int(data["abuseConfidenceScore"]),
            status="ok",
            queried_at=queried_at,
            country_code=data.get("countryCode"),
            usage_type=data.get("usageType"),
            isp=data.get("isp"),
            domain=data.get("domain"),
            total_reports=int(data.get("totalReports") or 0),
            is_tor=data.get("isTor"),
        )

    def record_sign_in(self, ip: Optional[str], mfa: bool, compliant_device: bool):
        """Accumulate usage counters for a sign-in referencing ``ip``."""
        key = canonical_ip(ip)
        if key is None or key not in self._entries:
            return
        entry = self._entries[key]
        self._entries[key] = replace(
            entry,
            sign_in_count=entry.sign_in_count + 1,
            mfa_sign_in_count=entry.mfa_sign_in_count + int(bool(mfa)),
            compliant_device_sign_in_count=(
                entry.compliant_device_sign_in_count + int(bool(compliant_device))
            ),
        )

    def get(self, ip: Optional[str]) -> AbuseIpCacheEntry:
        """Synchronous read; unresolved addresses read as unknown."""
        key = canonical_ip(ip)
        if key is None:
            return AbuseIpCacheEntry(ip_address=str(ip or ""), status="unknown")
        return self._entries.get(key) or AbuseIpCacheEntry(ip_address=key, status="unknown")

    def snapshot(self) -> Mapping[str, AbuseIpCacheEntry]:
        """Read-only view of the resolved entries, sorted by address."""
        return MappingProxyType(dict(sorted(self._entries.items())))

    def stats(self) -> dict:
        return {
            "entries": len(self._entries),
            "queries": self.queries,
            "cache_hits": self.hits,
            "degraded": self.degraded,
        }
