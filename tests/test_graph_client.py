"""
Tests for the Graph client: paging, throttling, permission errors and $batch.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from m365_identity_risk.graph.client import GraphAPIError, GraphClient
from m365_identity_risk.safety.guardian import SafetyGuardian, SafetyViolation

GRAPH = "https://graph.microsoft.com/v1.0"


def _call(handler, action, guardian=None):
    async def run():
        async with GraphClient(
            "token", guardian or SafetyGuardian(),
            transport=httpx.MockTransport(handler), backoff_seconds=0,
        ) as graph:
            result = await action(graph)
            return result, graph.get_stats()

    return asyncio.run(run())


def test_pages_are_followed():
    seen = []

    def handler(request):
        seen.append(dict(request.url.params))
        if "skiptoken" in request.url.params:
            return httpx.Response(200, json={"value": [{"id": "b"}]})
        return httpx.Response(200, json={
            "value": [{"id": "a"}],
            "@odata.nextLink": f"{GRAPH}/auditLogs/signIns?$skiptoken=x",
        })

    items, stats = _call(handler, lambda g: g.get_all_pages(
        "auditLogs/signIns", params={"$filter": "userId eq 'u'"},
    ))
    assert [i["id"] for i in items] == ["a", "b"]
    assert seen[0] == {"$filter": "userId eq 'u'", "$top": "999"}
    assert seen[1] == {"$skiptoken": "x"}
    assert stats["pages"] == 2


def test_page_cap_stops_paging():
    def handler(request):
        return httpx.Response(200, json={"value": [{"id": "x"}], "@odata.nextLink": f"{GRAPH}/users?next"})

    items, _ = _call(handler, lambda g: g.get_all_pages("users", skip_top=True, max_pages=3))
    assert len(items) == 3


def test_throttling_is_retried():
    attempts = []

    def handler(request):
        attempts.append(1)
        if len(attempts) < 3:
            return httpx.Response(429, headers={"Retry-After": "0"})
        return httpx.Response(200, json={"id": "id-alice"})

    user, stats = _call(handler, lambda g: g.get_object("users/alice@contoso.com"))
    assert user == {"id": "id-alice"}
    assert stats["throttled"] == 2
    assert stats["requests"] == 3


def test_missing_object_is_none_and_forbidden_raises():
    def handler(request):
        if request.url.path.endswith("/riskyUsers/id-alice"):
            return httpx.Response(404, json={"error": {"message": "Not found"}})
        return httpx.Response(403, json={"error": {"message": "Insufficient privileges"}})

    risky, _ = _call(handler, lambda g: g.get_object("identityProtection/riskyUsers/id-alice"))
    assert risky is None

    with pytest.raises(GraphAPIError) as excinfo:
        _call(handler, lambda g: g.get_all_pages("users/id-alice/mailFolders/inbox/messageRules"))
    assert excinfo.value.status_code == 403
    assert "Insufficient privileges" in str(excinfo.value)


def test_batch_results_keep_input_order():
    def handler(request):
        assert request.method == "POST"
        ids = [r["id"] for r in json.loads(request.content)["requests"]]
        return httpx.Response(200, json={"responses": [
            {"id": ids[1], "status": 404, "body": {"error": {"message": "gone"}}},
            {"id": ids[0], "status": 200, "body": {"appId": "app-1"}},
        ]})

    results, _ = _call(handler, lambda g: g.batch_get(["/servicePrincipals/1", "servicePrincipals/2"]))
    assert results[0] == {"appId": "app-1"}
    assert results[1] == {"_error": True, "status": 404, "_error_message": "gone"}


def test_requests_outside_the_allow_list_never_leave():
    def handler(request):
        raise AssertionError("request should have been blocked")

    guardian = SafetyGuardian()
    with pytest.raises(SafetyViolation):
        _call(handler, lambda g: g.get_object("https://example.com/v1.0/users"), guardian)
    assert guardian.get_audit_record()["violations_detected"] == 1
