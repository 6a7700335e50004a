"""
Per-account evaluation context.

Built fresh for every account and passed explicitly to every evaluator. All
ancillary facts (reputation snapshot, trusted ranges, CA protection, OAuth
classes, session and travel indexes) are resolved here once, so evaluators
stay pure reads.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Mapping, Optional

from ..cache.reputation import AbuseIpCacheEntry, canonical_ip
from ..classifiers import (
    UNPROTECTED,
    OAuthClassification,
    ProtectionFact,
    TrustedLocationSet,
    classify_account_protection,
    classify_oauth_grant,
    classify_sign_in_protection,
    resolve_trusted_locations,
)
from ..config import DetectionConfig
from ..telemetry.models import AccountTelemetry, SignInEvent, UserProfile


@dataclass(frozen=True)
class AccountContext:
    telemetry: AccountTelemetry
    detection: DetectionConfig
    as_of: datetime
    reputation: Mapping[str, AbuseIpCacheEntry] = field(
        default_factory=lambda: MappingProxyType({})
    )
    trusted_locations: TrustedLocationSet = field(default_factory=TrustedLocationSet)
    account_protection: ProtectionFact = UNPROTECTED
    sign_in_protection: Mapping[str, ProtectionFact] = field(
        default_factory=lambda: MappingProxyType({})
    )
    oauth: tuple[OAuthClassification, ...] = ()
    session_ips: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    previous_located: Mapping[str, SignInEvent] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @property
    def user(self) -> UserProfile:
        return self.telemetry.user

    def reputation_for(self, ip: Optional[str]) -> AbuseIpCacheEntry:
        key = canonical_ip(ip)
        entry = self.reputation.get(key) if key else None
        return entry or AbuseIpCacheEntry(ip_address=key or str(ip or ""), status="unknown")

    def protection_for(self, sign_in: SignInEvent) -> ProtectionFact:
        """Sign-in level CA result first; otherwise what the account's policies promise."""
        fact = self.sign_in_protection.get(sign_in.id, UNPROTECTED)
        return fact if fact.protected else self.account_protection


def _session_index(sign_ins: tuple[SignInEvent, ...]) -> dict[str, tuple[str, ...]]:
    sessions: dict[str, set[str]] = {}
    for s in sign_ins:
        ip = canonical_ip(s.ip_address)
        if s.session_id and ip:
            sessions.setdefault(s.session_id, set()).add(ip)
    return {sid: tuple(sorted(ips)) for sid, ips in sorted(sessions.items())}


def _previous_located_index(sign_ins: tuple[SignInEvent, ...]) -> dict[str, SignInEvent]:
    """Map each successful located sign-in to the successful located one before it."""
    index = {}
    previous = None
    for s in sign_ins:
        if not (s.succeeded and s.country and s.created_at):
            continue
        if previous is not None:
            index[s.id] = previous
        previous = s
    return index


def build_context(
    telemetry: AccountTelemetry,
    detection: Optional[DetectionConfig] = None,
    reputation: Optional[Mapping[str, AbuseIpCacheEntry]] = None,
    as_of: Optional[datetime] = None,
) -> AccountContext:
    """Resolve every ancillary fact for one account."""
    detection = detection or DetectionConfig()
    role_ids = [r.role_definition_id for r in telemetry.roles if r.role_definition_id]
    return AccountContext(
        telemetry=telemetry,
        detection=detection,
        as_of=as_of or datetime.now(timezone.utc),
        reputation=MappingProxyType(dict(reputation or {})),
        trusted_locations=resolve_trusted_locations(telemetry.named_locations),
        account_protection=classify_account_protection(
            telemetry.user, telemetry.ca_policies, role_ids,
        ),
        sign_in_protection=MappingProxyType({
            s.id: classify_sign_in_protection(s) for s in telemetry.sign_ins
        }),
        oauth=tuple(
            classify_oauth_grant(g, detection.oauth_allow_list) for g in telemetry.oauth_grants
        ),
        session_ips=MappingProxyType(_session_index(telemetry.sign_ins)),
        previous_located=MappingProxyType(_previous_located_index(telemetry.sign_ins)),
    )
