"""
Sign-in & Audit Collector
Sign-in events for the account inside the lookback window (fatal when
unavailable) and the directory audit entries that target it.
"""

from __future__ import annotations

import logging

import httpx

from ..graph.client import GraphAPIError
from .base import AccountCollector, CollectorResult, ConnectivityError

logger = logging.getLogger("m365_identity_risk.collectors.signins")


class SignInCollector(AccountCollector):
    name = "signins"
    description = "Sign-in logs and directory audits for the account"
    required = True

    async def collect(self, result: CollectorResult):
        await self.gather_sections(result, {
            "sign_ins": self._collect_sign_ins(result),
            "directory_audits": self._collect_audits(result),
        })

    async def _collect_sign_ins(self, result: CollectorResult):
        """
        beta exposes authenticationDetails, sessionId and autonomousSystemNumber;
        v1.0 lacks them, which weakens MFA detection but does not break it.
        """
        filters = [f"userId eq '{self.target.user_id}'"]
        if self.target.since_filter:
            filters.append(f"createdDateTime ge {self.target.since_filter}")
        try:
            sign_ins = await self.fetch_all(
                "auditLogs/signIns",
                result,
                params={"$filter": " and ".join(filters), "$orderby": "createdDateTime"},
                beta=self.config.use_beta_sign_ins,
            )
        except (GraphAPIError, httpx.HTTPError) as e:
            raise ConnectivityError(f"Sign-in logs unavailable: {e}") from e
        if sign_ins is None:
            raise ConnectivityError("Sign-in logs unreadable (requires AuditLog.Read.All)")
        result.add_data("sign_ins", sign_ins)

    async def _collect_audits(self, result: CollectorResult):
        filters = [f"targetResources/any(t:t/id eq '{self.target.user_id}')"]
        if self.target.since_filter:
            filters.append(f"activityDateTime ge {self.target.since_filter}")
        audits = await self.fetch_all(
            "auditLogs/directoryAudits",
            result,
            params={"$filter": " and ".join(filters)},
        )
        result.add_data("directory_audits", audits or [])
