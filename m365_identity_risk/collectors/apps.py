"""
OAuth Consent Collector
Delegated permission grants that cover the account (its own user consents and
tenant-wide admin consents), joined with the client service principals.
"""

from __future__ import annotations

import logging

from .base import AccountCollector, CollectorResult

logger = logging.getLogger("m365_identity_risk.collectors.apps")

SP_SELECT = "id,appId,displayName,verifiedPublisher,tags,publisherName"


class AppCollector(AccountCollector):
    name = "applications"
    description = "OAuth2 permission grants and their client service principals"

    async def collect(self, result: CollectorResult):
        if not self.config.collect_oauth_grants:
            result.add_data("oauth_grants", [])
            return

        user_grants = await self.fetch_all(
            f"users/{self.target.user_id}/oauth2PermissionGrants", result,
        ) or []
        admin_grants = await self.fetch_all(
            "oauth2PermissionGrants",
            result,
            params={"$filter": "consentType eq 'AllPrincipals'"},
        ) or []

        grants = {g.get("id"): g for g in user_grants + admin_grants if g.get("id")}
        result.add_data("oauth_grants", list(grants.values()))
        await self._collect_service_principals(result, grants.values())

    async def _collect_service_principals(self, result: CollectorResult, grants):
        """Resolve each client service principal with one $batch per 20 ids."""
        client_ids = sorted({g.get("clientId") for g in grants if g.get("clientId")})
        if not client_ids:
            result.add_data("service_principals", {})
            return

        responses = await self.graph.batch_get(
            [f"/servicePrincipals/{cid}?$select={SP_SELECT}" for cid in client_ids]
        )
        principals = {}
        missing = 0
        for cid, resp in zip(client_ids, responses):
            if resp.get("_error"):
                missing += 1
                continue
            principals[cid] = resp
        if missing:
            result.add_warning(f"{missing}/{len(client_ids)} client service principals unresolved")
        result.endpoints_queried += 1
        result.add_data("service_principals", principals)
