"""
MFA-success heuristic for sign-in events.

Success is an OR across independent signals; no single signal (in particular
the authentication-factor count) is required.
"""

from __future__ import annotations

from ..telemetry.models import SignInEvent

SATISFIED_REQUIREMENTS = {"satisfied", "mfasatisfied", "multifactorauthenticationsatisfied"}


def mfa_signals(sign_in: SignInEvent) -> dict[str, bool]:
    """Evaluate each MFA signal independently (kept for evidence display)."""
    requirement = (sign_in.authentication_requirement or "").replace(" ", "").lower()
    return {
        "second_factor_succeeded": sign_in.mfa_factor_count > 0,
        "requirement_satisfied": requirement in SATISFIED_REQUIREMENTS,
        "mfa_required_and_signed_in": (
            requirement == "multifactorauthentication" and sign_in.succeeded
        ),
        "satisfied_by_claim": sign_in.satisfied_by_claim,
        "mfa_detail_present": bool(sign_in.mfa_method),
    }


def is_mfa_success(sign_in: SignInEvent) -> bool:
    return any(mfa_signals(sign_in).values())
