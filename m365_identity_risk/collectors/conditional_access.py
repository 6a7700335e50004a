"""
Conditional Access Collector
CA policies and named locations. A tenant without named locations (or without
Policy.Read.All) yields empty lists; that is never an error.
"""

from __future__ import annotations

import logging

from .base import AccountCollector, CollectorResult

logger = logging.getLogger("m365_identity_risk.collectors.conditional_access")


class ConditionalAccessCollector(AccountCollector):
    name = "conditional_access"
    description = "Conditional Access policies and named locations"

    async def collect(self, result: CollectorResult):
        await self.gather_sections(result, {
            "ca_policies": self._collect_policies(result),
            "named_locations": self._collect_named_locations(result),
        })

    async def _collect_policies(self, result: CollectorResult):
        policies = await self.fetch_all("identity/conditionalAccess/policies", result)
        result.add_data("ca_policies", policies or [])

    async def _collect_named_locations(self, result: CollectorResult):
        locations = await self.fetch_all("identity/conditionalAccess/namedLocations", result)
        if not locations:
            logger.info("[conditional_access] No named locations configured")
        result.add_data("named_locations", locations or [])
