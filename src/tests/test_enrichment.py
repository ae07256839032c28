import asyncio

import requests

from engine.enrichment import EnrichmentAdapter, default_payload
from engine.records import Finding, Severity


class FakeResponse:
    def __init__(self, payload=None, status=200, invalid_json=False):
        self.payload = payload
        self.status = status
        self.invalid_json = invalid_json

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def json(self):
        if self.invalid_json:
            raise ValueError("no json")
        return self.payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.requests.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


FINDINGS = [
    Finding(rule_id="js.xss", severity=Severity.HIGH, category="xss", file_path="a.js",
            start_line=4, end_line=4, message="xss", code_snippet="res.send(x)"),
    Finding(rule_id="py.sqli", severity=Severity.CRITICAL, category="sql-injection", file_path="b.py",
            start_line=9, end_line=9, message="sqli", code_snippet="execute(q)"),
]


def _enrich(session, findings=FINDINGS):
    adapter = EnrichmentAdapter(url="https://enrich.example/api", api_key="k", timeout=5, session=session)
    return asyncio.run(adapter.enrich(findings, {"project": "demo"}))


def test_successful_enrichment_matches_by_id_and_position():
    session = FakeSession(FakeResponse({
        "summary": "Two issues",
        "findings": [
            {"explanation": "first by position"},
            {"id": "py.sqli:b.py:9", "explanation": "SQL built from input", "businessImpact": "data loss"},
        ],
    }))
    enrichment = _enrich(session)
    assert enrichment.available
    assert enrichment.summary == "Two issues"
    assert enrichment.findings["js.xss:a.js:4"].explanation == "first by position"
    assert enrichment.findings["py.sqli:b.py:9"].business_impact == "data loss"
    assert enrichment.findings["py.sqli:b.py:9"].explanation == "SQL built from input"

    sent = session.requests[0]
    assert sent["headers"]["Authorization"] == "Bearer k"
    assert sent["timeout"] == 5
    assert sent["json"]["context"] == {"project": "demo"}
    assert sent["json"]["findings"][0]["ruleId"] == "js.xss"


def test_timeout_yields_empty_enrichment():
    enrichment = _enrich(FakeSession(error=requests.Timeout("slow")))
    assert not enrichment.available
    assert "timed out" in enrichment.error


def test_http_error_and_bad_json_yield_empty_enrichment():
    assert not _enrich(FakeSession(FakeResponse(status=502))).available
    assert not _enrich(FakeSession(FakeResponse(invalid_json=True))).available
    assert not _enrich(FakeSession(FakeResponse(["not", "an", "object"]))).available


def test_disabled_or_nothing_to_enrich():
    session = FakeSession(FakeResponse({}))
    adapter = EnrichmentAdapter(url="", session=session)
    assert not asyncio.run(adapter.enrich(FINDINGS)).available
    assert not _enrich(session, findings=[]).available
    assert session.requests == []


def test_payload_is_capped():
    payload = default_payload(FINDINGS * 40, {})
    assert len(payload["findings"]) == 50
