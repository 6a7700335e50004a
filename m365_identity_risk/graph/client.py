"""
Read-only Microsoft Graph client shared by every account of a batch.

All traffic goes through the SafetyGuardian before it leaves the process.
Throttling (429/503/504) and transient network errors are retried with
exponential backoff. A 403 is surfaced as GraphAPIError(403) so collectors
can record a permission gap; a 404 on an object lookup is simply None.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from ..config import (
    GRAPH_BASE_URL,
    GRAPH_API_VERSION,
    GRAPH_BETA_VERSION,
    MAX_RETRIES,
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    BACKOFF_MULTIPLIER,
    DEFAULT_PAGE_SIZE,
    MAX_PAGES_PER_ENDPOINT,
    BATCH_SIZE,
    MAX_CONCURRENT_REQUESTS,
)
from ..safety.guardian import SafetyGuardian, SafetyViolation

logger = logging.getLogger("m365_identity_risk.graph")

RETRYABLE_STATUS = (429, 503, 504)


class GraphAPIError(Exception):
    """Graph answered with a status the client cannot recover from."""

    def __init__(self, status_code: int, message: str, url: str):
        self.status_code = status_code
        self.url = url
        super().__init__(f"Graph returned {status_code} for {url}: {message}")


class GraphClient:
    """
    Async Graph client, used as ``async with GraphClient(token, guardian) as graph``.

    ``transport`` lets tests substitute an httpx.MockTransport.
    """

    def __init__(
        self,
        access_token: str,
        guardian: SafetyGuardian,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        backoff_seconds: float = INITIAL_BACKOFF_SECONDS,
    ):
        self.access_token = access_token
        self.guardian = guardian
        self.transport = transport
        self.backoff_seconds = backoff_seconds
        self._semaphore = asyncio.Semaphore(MAX_CONCURRENT_REQUESTS)
        self._stats = {"requests": 0, "throttled": 0, "forbidden": 0, "pages": 0}
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "GraphClient":
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(60.0, connect=30.0),
            limits=httpx.Limits(
                max_connections=MAX_CONCURRENT_REQUESTS * 2,
                max_keepalive_connections=MAX_CONCURRENT_REQUESTS,
            ),
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Accept": "application/json",
                # Advanced query support ($count, $search)
                "ConsistencyLevel": "eventual",
            },
            transport=self.transport,
        )
        return self

    async def __aexit__(self, *exc_info):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def url_for(self, endpoint: str, beta: bool = False) -> str:
        if endpoint.startswith("https://"):
            return endpoint
        version = GRAPH_BETA_VERSION if beta else GRAPH_API_VERSION
        return f"{GRAPH_BASE_URL}/{version}/{endpoint.lstrip('/')}"

    async def get_object(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
    ) -> Optional[dict]:
        """GET a single resource. None when it does not exist."""
        status, body = await self._send("GET", self.url_for(endpoint, beta), params=params)
        if status == 404:
            return None
        return body

    async def get_all_pages(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
        skip_top: bool = False,
        max_pages: int = MAX_PAGES_PER_ENDPOINT,
    ) -> list[dict]:
        """
        Follow @odata.nextLink until exhausted or ``max_pages`` is reached.

        Some endpoints (authentication methods, messageRules) reject $top;
        pass ``skip_top=True`` for those. A 404 on a collection reads as empty.
        """
        query = dict(params or {})
        if not skip_top:
            query.setdefault("$top", str(DEFAULT_PAGE_SIZE))

        items: list[dict] = []
        url: Optional[str] = self.url_for(endpoint, beta)
        pages = 0
        while url and pages < max_pages:
            status, body = await self._send("GET", url, params=query)
            if status == 404:
                break
            items.extend(body.get("value", []))
            pages += 1
            self._stats["pages"] += 1
            url = body.get("@odata.nextLink")
            # nextLink already carries the query string
            query = None

        if url:
            logger.warning(f"Stopped paging {endpoint} after {max_pages} pages")
        return items

    async def batch_get(self, endpoints: list[str], beta: bool = False) -> list[dict]:
        """
        Resolve many GETs through $batch, BATCH_SIZE per request.

        Results come back in input order; a failed sub-request is
        ``{"_error": True, "status": ..., "_error_message": ...}``.
        """
        batch_url = self.url_for("$batch", beta)
        results: list[dict] = []
        for start in range(0, len(endpoints), BATCH_SIZE):
            chunk = endpoints[start:start + BATCH_SIZE]
            requests = [
                {"id": str(n), "method": "GET", "url": "/" + ep.lstrip("/")}
                for n, ep in enumerate(chunk)
            ]
            _, body = await self._send("POST", batch_url, json_body={"requests": requests})
            responses = {str(r.get("id")): r for r in body.get("responses", [])}

            for n in range(len(chunk)):
                sub = responses.get(str(n), {})
                status = sub.get("status")
                if status == 200:
                    results.append(sub.get("body", {}))
                    continue
                message = (sub.get("body") or {}).get("error", {}).get("message", "Unknown")
                log = logger.debug if status in (403, 404) else logger.warning
                log(f"$batch item {chunk[n]} returned {status}: {message}")
                results.append({"_error": True, "status": status, "_error_message": message})
        return results

    def get_stats(self) -> dict:
        return dict(self._stats)

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> tuple[int, dict[str, Any]]:
        """
        Validate, send and decode one request, retrying throttled and
        transient failures. Returns (status, body) for 200/204/404.
        """
        if self._client is None:
            raise RuntimeError("GraphClient must be used inside 'async with'")
        if method not in ("GET", "POST"):
            raise SafetyViolation(f"GraphClient does not send {method} requests")
        self.guardian.validate_request(method, url)

        backoff = self.backoff_seconds
        for attempt in range(1, MAX_RETRIES + 2):
            try:
                async with self._semaphore:
                    response = await self._client.request(method, url, params=params, json=json_body)
            except (httpx.TimeoutException, httpx.ConnectError) as e:
                if attempt > MAX_RETRIES:
                    raise
                logger.warning(f"{type(e).__name__} on {url} (attempt {attempt}/{MAX_RETRIES})")
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                continue

            self._stats["requests"] += 1
            status = response.status_code
            if status in RETRYABLE_STATUS and attempt <= MAX_RETRIES:
                self._stats["throttled"] += 1
                wait = max(float(response.headers.get("Retry-After", backoff)), backoff)
                logger.warning(f"Graph throttled ({status}) {url}; waiting {wait:.1f}s")
                await asyncio.sleep(wait)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                continue

            if status == 200:
                return status, _json_body(response, url)
            if status in (204, 404):
                logger.debug(f"{status} from {url}")
                return status, {}
            message = _error_message(response)
            if status == 403:
                self._stats["forbidden"] += 1
                logger.warning(f"403 Forbidden: {url}: {message}")
            raise GraphAPIError(status, message, url)

        raise GraphAPIError(429, "Retries exhausted", url)


def _json_body(response: httpx.Response, url: str) -> dict:
    if not response.content.strip():
        return {}
    try:
        body = response.json()
    except ValueError:
        logger.debug(f"Non-JSON 200 body from {url}")
        return {}
    return body if isinstance(body, dict) else {"value": body}


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json() if response.content else {}
    except ValueError:
        return response.text[:200]
    if not isinstance(body, dict):
        return response.text[:200]
    return (body.get("error") or {}).get("message", response.text[:200])
