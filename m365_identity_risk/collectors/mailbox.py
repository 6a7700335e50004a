"""
Mailbox Collector
Inbox message rules and mail folder names (to resolve moveToFolder targets).
Rules are reported as None, not [], when the mailbox cannot be read.
"""

from __future__ import annotations

import logging

from .base import AccountCollector, CollectorResult

logger = logging.getLogger("m365_identity_risk.collectors.mailbox")


class MailboxCollector(AccountCollector):
    name = "mailbox"
    description = "Inbox rules and mail folders"

    async def collect(self, result: CollectorResult):
        if not self.config.collect_inbox_rules:
            result.add_data("inbox_rules", None)
            return
        await self.gather_sections(result, {
            "inbox_rules": self._collect_rules(result),
            "mail_folders": self._collect_folders(result),
        })

    async def _collect_rules(self, result: CollectorResult):
        rules = await self.fetch_all(
            f"users/{self.target.user_id}/mailFolders/inbox/messageRules",
            result,
            skip_top=True,
        )
        if rules is None:
            result.add_warning("Inbox rules unreadable (requires MailboxSettings.Read)")
        result.add_data("inbox_rules", rules)

    async def _collect_folders(self, result: CollectorResult):
        folders = await self.fetch_all(
            f"users/{self.target.user_id}/mailFolders",
            result,
            params={"$select": "id,displayName", "includeHiddenFolders": "true"},
        )
        result.add_data("mail_folders", {
            f["id"]: f.get("displayName") or f["id"] for f in folders or [] if f.get("id")
        })
