# src/engine/enrichment.py
"""
EnrichmentAdapter: optional call to an external text-generation service
for per-finding explanations and a scan summary.

Enrichment never gates a scan. Every failure yields Enrichment.empty().
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

import requests

from engine.config import settings
from engine.errors import EnrichmentError
from engine.records import Enrichment, Finding, FindingEnrichment

# Builds the request body sent to the service. Prompt wording lives on the
# service side; this only decides which finding fields are shared.
PayloadBuilder = Callable[[List[Finding], Dict[str, Any]], Dict[str, Any]]

MAX_FINDINGS = 50


def default_payload(findings: List[Finding], context: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "findings": [
            {
                "id": f.fingerprint,
                "ruleId": f.rule_id,
                "severity": f.severity.value,
                "category": f.category,
                "filePath": f.file_path,
                "line": f.start_line,
                "message": f.message,
                "codeSnippet": f.code_snippet,
                "cwe": f.cwe,
                "owasp": f.owasp,
            }
            for f in findings[:MAX_FINDINGS]
        ],
        "context": context,
    }


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def parse_response(data: Any, findings: List[Finding]) -> Enrichment:
    if not isinstance(data, dict):
        raise EnrichmentError("Enrichment response is not a JSON object")
    items = data.get("findings")
    if items is None:
        items = []
    if not isinstance(items, list):
        raise EnrichmentError("Enrichment response 'findings' is not a list")

    fingerprints = [f.fingerprint for f in findings]
    annotations: Dict[str, FindingEnrichment] = {}
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            continue
        key = item.get("id")
        if key not in fingerprints:
            if index >= len(fingerprints):
                continue
            key = fingerprints[index]
        annotations[key] = FindingEnrichment(
            explanation=_text(item.get("explanation")),
            risk=_text(item.get("risk")),
            remediation=_text(item.get("remediation")),
            business_impact=_text(item.get("businessImpact", item.get("business_impact"))),
        )
    summary = data.get("summary")
    return Enrichment(
        available=True,
        summary=_text(summary) if summary is not None else None,
        findings=annotations,
    )


class EnrichmentAdapter:
    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        build_payload: PayloadBuilder = default_payload,
        session: Optional[requests.Session] = None,
    ):
        self.url = url if url is not None else settings.enrichment_url
        self.api_key = api_key if api_key is not None else settings.enrichment_api_key
        self.timeout = timeout or settings.enrichment_timeout_seconds
        self.build_payload = build_payload
        self.session = session or requests.Session()

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def enrich(self, findings: List[Finding], context: Optional[Dict[str, Any]] = None) -> Enrichment:
        if not self.enabled or not findings:
            return Enrichment.empty()
        try:
            payload = self.build_payload(findings, context or {})
            data = await asyncio.to_thread(self._post, payload)
            return parse_response(data, findings)
        except EnrichmentError as e:
            logging.warning(f"Enrichment unavailable: {e}")
            return Enrichment.empty(error=str(e))
        except Exception as e:
            logging.warning(f"Enrichment failed unexpectedly: {e}")
            return Enrichment.empty(error=str(e))

    def _post(self, payload: Dict[str, Any]) -> Any:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            resp = self.session.post(self.url, json=payload, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except requests.Timeout as e:
            raise EnrichmentError(f"Enrichment request timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise EnrichmentError(f"Enrichment request failed: {e}") from e
        except ValueError as e:
            raise EnrichmentError("Enrichment response is not valid JSON") from e
