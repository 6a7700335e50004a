"""
Identity Collector
Resolves the account and its directory state: user object, registered
authentication methods, group memberships, active role assignments and the
Identity Protection risky-user record. The user lookup is fatal.
"""

from __future__ import annotations

import logging
from urllib.parse import quote

from .base import AccountCollector, CollectorResult, ConnectivityError

logger = logging.getLogger("m365_identity_risk.collectors.identity")

USER_SELECT = (
    "id,displayName,userPrincipalName,mail,accountEnabled,userType,"
    "createdDateTime,lastPasswordChangeDateTime"
)


class IdentityCollector(AccountCollector):
    name = "identity"
    description = "User object, auth methods, groups, role assignments, risky user"
    required = True

    async def collect(self, result: CollectorResult):
        user = await self.fetch_object(
            f"users/{quote(self.target.user_principal_name)}",
            result,
            params={"$select": USER_SELECT},
        )
        if not user or not user.get("id"):
            raise ConnectivityError(
                f"Account {self.target.user_principal_name} could not be resolved"
            )
        result.add_data("user", user)
        user_id = user["id"]

        await self.gather_sections(result, {
            "auth_methods": self._collect_auth_methods(result, user_id),
            "groups": self._collect_groups(result, user_id),
            "role_assignments": self._collect_roles(result, user_id),
            "risky_user": self._collect_risky_user(result, user_id),
        })

    async def _collect_auth_methods(self, result: CollectorResult, user_id: str):
        """Registered methods; None (not []) when the endpoint is unreadable."""
        methods = await self.fetch_all(
            f"users/{user_id}/authentication/methods", result, skip_top=True,
        )
        if methods is None:
            result.add_warning(
                "Auth methods unreadable (requires UserAuthenticationMethod.Read.All); "
                "MFA registration will not be assessed"
            )
        result.add_data("auth_methods", methods)

    async def _collect_groups(self, result: CollectorResult, user_id: str):
        groups = await self.fetch_all(
            f"users/{user_id}/transitiveMemberOf/microsoft.graph.group",
            result,
            params={"$select": "id"},
        )
        result.add_data("group_ids", [g.get("id") for g in groups or [] if g.get("id")])

    async def _collect_roles(self, result: CollectorResult, user_id: str):
        assignments = await self.fetch_all(
            "roleManagement/directory/roleAssignments",
            result,
            params={
                "$filter": f"principalId eq '{user_id}'",
                "$expand": "roleDefinition",
            },
            skip_top=True,
        )
        result.add_data("role_assignments", assignments or [])

    async def _collect_risky_user(self, result: CollectorResult, user_id: str):
        risky = await self.fetch_object(f"identityProtection/riskyUsers/{user_id}", result)
        result.add_data("risky_user", risky)
