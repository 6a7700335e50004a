"""
OAuth consent classifier.

Each grant receives independent votes from its consent type, the sensitivity
of its delegated scopes, and its publisher context. The final level is the
highest vote, so disagreement always resolves toward the riskier class.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from ..telemetry.models import OAuthGrant

LEVELS = ("Low", "Medium", "High")

HIGH_RISK_SCOPES = {
    "Mail.ReadWrite",
    "Mail.Send",
    "Mail.ReadWrite.Shared",
    "Mail.Send.Shared",
    "MailboxSettings.ReadWrite",
    "Files.ReadWrite.All",
    "Sites.ReadWrite.All",
    "Sites.FullControl.All",
    "Directory.ReadWrite.All",
    "Directory.AccessAsUser.All",
    "User.ReadWrite.All",
    "Application.ReadWrite.All",
    "AppRoleAssignment.ReadWrite.All",
    "RoleManagement.ReadWrite.Directory",
    "EWS.AccessAsUser.All",
    "full_access_as_user",
}

MEDIUM_RISK_SCOPES = {
    "Mail.Read",
    "Mail.Read.Shared",
    "MailboxSettings.Read",
    "Files.Read.All",
    "Files.ReadWrite",
    "Sites.Read.All",
    "Contacts.Read",
    "Contacts.ReadWrite",
    "Calendars.ReadWrite",
    "Chat.Read",
    "ChannelMessage.Read.All",
    "Notes.Read.All",
    "People.Read.All",
    "User.Read.All",
    "Directory.Read.All",
    "IMAP.AccessAsUser.All",
    "POP.AccessAsUser.All",
    "SMTP.Send",
}

LOW_RISK_SCOPES = {"openid", "profile", "email", "offline_access", "User.Read"}


@dataclass(frozen=True)
class OAuthClassification:
    grant_id: str
    app_name: str
    level: str
    votes: dict[str, str] = field(default_factory=dict)
    reasons: tuple[str, ...] = ()
    sensitive_scopes: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "grant_id": self.grant_id,
            "app_name": self.app_name,
            "level": self.level,
            "votes": dict(self.votes),
            "reasons": list(self.reasons),
            "sensitive_scopes": list(self.sensitive_scopes),
        }


def _rank(level: str) -> int:
    return LEVELS.index(level)


def _scope_vote(scopes: Iterable[str]) -> tuple[str, list[str]]:
    high = sorted(s for s in scopes if s in HIGH_RISK_SCOPES or s.endswith(".ReadWrite.All"))
    if high:
        return "High", high
    medium = sorted(s for s in scopes if s in MEDIUM_RISK_SCOPES or s.endswith(".Read.All"))
    if medium:
        return "Medium", medium
    return "Low", []


def classify_oauth_grant(grant: OAuthGrant, allow_list: Iterable[str] = ()) -> OAuthClassification:
    allowed = {a.lower() for a in allow_list}
    app_name = grant.client_display_name or grant.client_app_id or grant.client_id
    allow_listed = bool(
        (grant.client_app_id and grant.client_app_id.lower() in allowed)
        or grant.client_id.lower() in allowed
    )
    reasons = []

    scope_level, sensitive = _scope_vote(grant.scopes)
    if sensitive:
        reasons.append(f"{scope_level.lower()}-sensitivity scopes: {', '.join(sensitive)}")

    # Consent vote: a user granting sensitive scopes is the illicit-consent pattern.
    if allow_listed:
        consent_level = "Low"
        reasons.append("application is allow-listed")
    elif not grant.is_admin_consent and scope_level == "High":
        consent_level = "High"
        reasons.append("user consent to high-sensitivity scopes")
    elif sensitive:
        consent_level = "Medium"
        reasons.append(
            "admin consent to sensitive scopes" if grant.is_admin_consent
            else "user consent to sensitive scopes"
        )
    else:
        consent_level = "Low"

    publisher_level = "Low"
    non_trivial = set(grant.scopes) - LOW_RISK_SCOPES
    if grant.publisher_verified is False and non_trivial:
        publisher_level = "Medium"
        reasons.append("publisher is not verified")

    votes = {"consent": consent_level, "scopes": scope_level, "publisher": publisher_level}
    level = max(votes.values(), key=_rank)
    return OAuthClassification(
        grant_id=grant.id,
        app_name=app_name,
        level=level,
        votes=votes,
        reasons=tuple(reasons),
        sensitive_scopes=tuple(sensitive),
    )
