"""
Per-account collectors.

Each collector reads one slice of an account's raw Graph telemetry into a
CollectorResult; the assessment merges the slices into the payload the
telemetry normalizer consumes. A permission gap (403) makes a section
``None`` ("unreadable") rather than empty, so evaluators never mistake
missing visibility for a clean account.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Optional

from ..config import CollectionConfig
from ..graph.client import GraphAPIError, GraphClient

logger = logging.getLogger("m365_identity_risk.collectors")


class ConnectivityError(Exception):
    """Telemetry essential to an account's assessment could not be retrieved."""


@dataclass(frozen=True)
class AccountTarget:
    """The account being collected; user_id is known once identity resolves."""
    user_principal_name: str
    user_id: str = ""
    since: Optional[datetime] = None

    def with_user_id(self, user_id: str) -> "AccountTarget":
        return AccountTarget(self.user_principal_name, user_id, self.since)

    @staticmethod
    def window_start(as_of: datetime, lookback_days: int) -> datetime:
        return as_of - timedelta(days=lookback_days)

    @property
    def since_filter(self) -> str:
        return self.since.strftime("%Y-%m-%dT%H:%M:%SZ") if self.since else ""


@dataclass
class CollectorResult:
    collector: str
    data: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    permission_gaps: list[str] = field(default_factory=list)
    endpoints_queried: int = 0
    items_collected: int = 0
    elapsed_seconds: float = 0.0

    def add_data(self, key: str, value: Any):
        self.data[key] = value
        if isinstance(value, (list, dict)):
            self.items_collected += len(value) if isinstance(value, list) else 1

    def add_warning(self, warning: str):
        self.warnings.append(warning)
        logger.warning(f"[{self.collector}] {warning}")

    def add_permission_gap(self, endpoint: str, detail: str = ""):
        self.permission_gaps.append(endpoint)
        self.add_warning(f"Permission denied: {endpoint}" + (f" ({detail})" if detail else ""))

    @property
    def messages(self) -> list[str]:
        """Warnings prefixed with the collector name, as carried into the export."""
        return [f"[{self.collector}] {w}" for w in self.warnings]


class AccountCollector(ABC):
    """
    Base class for collectors. ``required`` collectors (identity, sign-ins)
    turn any failure into ConnectivityError, which fails the account;
    optional ones degrade to a warning and whatever data they gathered.
    """

    name: str = "base"
    description: str = ""
    required: bool = False

    def __init__(self, graph: GraphClient, config: CollectionConfig, target: AccountTarget):
        self.graph = graph
        self.config = config
        self.target = target

    async def execute(self) -> CollectorResult:
        result = CollectorResult(self.name)
        started = time.monotonic()
        try:
            await self.collect(result)
        except ConnectivityError:
            raise
        except Exception as e:
            if self.required:
                raise ConnectivityError(f"{self.name}: {type(e).__name__}: {e}") from e
            logger.exception(f"[{self.name}] Collection failed for {self.target.user_principal_name}")
            result.add_warning(f"Collection failed: {type(e).__name__}: {e}")

        result.elapsed_seconds = round(time.monotonic() - started, 2)
        logger.debug(
            f"[{self.name}] {self.target.user_principal_name}: {result.items_collected} items "
            f"from {result.endpoints_queried} endpoints in {result.elapsed_seconds}s"
        )
        return result

    @abstractmethod
    async def collect(self, result: CollectorResult):
        raise NotImplementedError

    async def gather_sections(self, result: CollectorResult, sections: dict[str, Awaitable]):
        """Run independent sub-collections concurrently; failures become warnings."""
        outcomes = await asyncio.gather(*sections.values(), return_exceptions=True)
        for name, outcome in zip(sections, outcomes):
            if isinstance(outcome, ConnectivityError):
                raise outcome
            if isinstance(outcome, Exception):
                result.add_warning(f"Section {name} failed: {type(outcome).__name__}: {outcome}")

    async def fetch_all(self, endpoint: str, result: CollectorResult, **kwargs) -> Optional[list]:
        """All pages of ``endpoint``; None on a permission gap, other Graph errors propagate."""
        try:
            items = await self.graph.get_all_pages(
                endpoint, max_pages=self.config.max_pages, **kwargs
            )
        except GraphAPIError as e:
            if e.status_code != 403:
                raise
            result.add_permission_gap(endpoint, str(e))
            return None
        result.endpoints_queried += 1
        return items

    async def fetch_object(self, endpoint: str, result: CollectorResult, **kwargs) -> Optional[dict]:
        """One object; None when absent (404) or unreadable (403)."""
        try:
            data = await self.graph.get_object(endpoint, **kwargs)
        except GraphAPIError as e:
            if e.status_code != 403:
                raise
            result.add_permission_gap(endpoint, str(e))
            return None
        result.endpoints_queried += 1
        return data
