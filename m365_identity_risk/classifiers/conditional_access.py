"""
Conditional Access classifier.

Decides whether a sign-in (from its applied policies) or an account (from the
tenant's policy set) is effectively protected by MFA or device compliance.
Only enabled policies count; report-only and disabled policies never protect.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from ..telemetry.models import ConditionalAccessPolicy, SignInEvent, UserProfile

logger = logging.getLogger("m365_identity_risk.classifiers.ca")

# enforcedGrantControls values reported on sign-in logs
_SIGNIN_MFA_CONTROLS = {"mfa", "requiremultifactorauthentication", "authenticationstrength"}
_SIGNIN_DEVICE_CONTROLS = {
    "requirecompliantdevice",
    "compliantdevice",
    "requiredomainjoineddevice",
    "domainjoineddevice",
}

# builtInControls values on policy objects
_POLICY_MFA_CONTROLS = {"mfa"}
_POLICY_DEVICE_CONTROLS = {"compliantdevice", "domainjoineddevice"}


@dataclass(frozen=True)
class ProtectionFact:
    mfa_enforced: bool = False
    compliant_device_enforced: bool = False
    policies: tuple[str, ...] = field(default=())
    source: str = "none"                     # signin, policy, none

    @property
    def protected(self) -> bool:
        return self.mfa_enforced or self.compliant_device_enforced

    def to_dict(self) -> dict:
        return {
            "protected": self.protected,
            "mfa_enforced": self.mfa_enforced,
            "compliant_device_enforced": self.compliant_device_enforced,
            "policies": list(self.policies),
            "source": self.source,
        }


UNPROTECTED = ProtectionFact()


def classify_sign_in_protection(sign_in: SignInEvent) -> ProtectionFact:
    """Protection enforced on a sign-in according to its applied CA policies."""
    mfa = device = False
    names = []
    for policy in sign_in.applied_policies:
        if (policy.result or "").lower() != "success":
            continue
        controls = {c.replace(" ", "").lower() for c in policy.enforced_grant_controls}
        policy_mfa = bool(controls & _SIGNIN_MFA_CONTROLS)
        policy_device = bool(controls & _SIGNIN_DEVICE_CONTROLS)
        if policy_mfa or policy_device:
            names.append(policy.display_name or policy.id or "unnamed policy")
        mfa = mfa or policy_mfa
        device = device or policy_device

    if not names:
        return UNPROTECTED
    return ProtectionFact(
        mfa_enforced=mfa,
        compliant_device_enforced=device,
        policies=tuple(sorted(set(names))),
        source="signin",
    )


def _targets_user(
    policy: ConditionalAccessPolicy,
    user: UserProfile,
    role_ids: set[str],
) -> bool:
    groups = set(user.group_ids)
    if user.id in policy.exclude_users:
        return False
    if groups & set(policy.exclude_groups) or role_ids & set(policy.exclude_roles):
        return False
    if "GuestsOrExternalUsers" in policy.exclude_users and user.user_type == "Guest":
        return False

    if "All" in policy.include_users or user.id in policy.include_users:
        return True
    if "GuestsOrExternalUsers" in policy.include_users and user.user_type == "Guest":
        return True
    return bool(groups & set(policy.include_groups) or role_ids & set(policy.include_roles))


def _covers_all_apps(policy: ConditionalAccessPolicy) -> bool:
    # App-scoped policies do not protect the account as a whole
    return "All" in policy.include_applications and not policy.exclude_applications


def classify_account_protection(
    user: UserProfile,
    policies: Iterable[ConditionalAccessPolicy],
    role_ids: Iterable[str] = (),
) -> ProtectionFact:
    """
    Protection the tenant's enabled CA policies apply to this account. Only
    policies covering all cloud apps without exclusions count.
    """
    roles = {r for r in role_ids if r}
    mfa = device = False
    names = []
    for policy in policies:
        if policy.state != "enabled" or not _covers_all_apps(policy):
            continue
        if not _targets_user(policy, user, roles):
            continue
        controls = {c.lower() for c in policy.grant_controls}
        policy_mfa = bool(controls & _POLICY_MFA_CONTROLS) or bool(policy.authentication_strength)
        policy_device = bool(controls & _POLICY_DEVICE_CONTROLS)
        if policy_mfa or policy_device:
            names.append(policy.display_name or policy.id)
        mfa = mfa or policy_mfa
        device = device or policy_device

    if not names:
        return UNPROTECTED
    return ProtectionFact(
        mfa_enforced=mfa,
        compliant_device_enforced=device,
        policies=tuple(sorted(set(names))),
        source="policy",
    )
