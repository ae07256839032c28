# src/engine/normalizer.py
"""
Normalizer: turn raw analyzer JSON into canonical Finding records.

Severity is mapped from the tool's label, then escalated to CRITICAL when
the rule metadata declares both high impact and high likelihood.
"""
import logging
import os
import re
from typing import Any, Dict, Iterable, List, Optional

from engine.records import Finding, Severity

SNIPPET_UNAVAILABLE = "<code excerpt unavailable>"

# excerpts the analyzer emits in place of code when it withholds the source
WITHHELD_SNIPPETS = {"", "requires login"}

TOOL_SEVERITY = {
    "CRITICAL": Severity.CRITICAL,
    "ERROR": Severity.HIGH,
    "HIGH": Severity.HIGH,
    "WARNING": Severity.MEDIUM,
    "MEDIUM": Severity.MEDIUM,
    "INFO": Severity.LOW,
    "LOW": Severity.LOW,
    "INVENTORY": Severity.LOW,
    "EXPERIMENT": Severity.LOW,
}

CONFIDENCE = {
    "HIGH": 90,
    "MEDIUM": 70,
    "LOW": 40,
}
DEFAULT_CONFIDENCE = 90

# checked in order; first keyword found in the rule id wins
CATEGORY_KEYWORDS = [
    ("sql", "sql-injection"),
    ("xss", "xss"),
    ("ssrf", "ssrf"),
    ("csrf", "csrf"),
    ("cors", "cors"),
    ("path-traversal", "path-traversal"),
    ("traversal", "path-traversal"),
    ("deserializ", "deserialization"),
    ("pickle", "deserialization"),
    ("secret", "secrets"),
    ("password", "secrets"),
    ("token", "secrets"),
    ("auth", "authentication"),
    ("jwt", "authentication"),
    ("crypto", "cryptography"),
    ("hash", "cryptography"),
    ("md5", "cryptography"),
    ("sha1", "cryptography"),
]
DEFAULT_CATEGORY = "security"

OWASP_INJECTION = "A03:2021 - Injection"
OWASP_AUTH = "A07:2021 - Identification and Authentication Failures"
OWASP_CRYPTO = "A02:2021 - Cryptographic Failures"
OWASP_ACCESS = "A01:2021 - Broken Access Control"
OWASP_MISCONFIG = "A05:2021 - Security Misconfiguration"
OWASP_INTEGRITY = "A08:2021 - Software and Data Integrity Failures"
OWASP_SSRF = "A10:2021 - Server-Side Request Forgery (SSRF)"

OWASP_BY_KEYWORD = {
    "sql": OWASP_INJECTION,
    "injection": OWASP_INJECTION,
    "xss": OWASP_INJECTION,
    "auth": OWASP_AUTH,
    "secret": OWASP_AUTH,
    "crypto": OWASP_CRYPTO,
    "path-traversal": OWASP_ACCESS,
    "csrf": OWASP_ACCESS,
    "cors": OWASP_MISCONFIG,
    "deserializ": OWASP_INTEGRITY,
    "ssrf": OWASP_SSRF,
}

CWE_RE = re.compile(r"(?:CWE[-_ ]?)?(\d{1,5})", re.IGNORECASE)
OWASP_RE = re.compile(r"^\s*(A\d{1,2}):?(\d{4})?\s*[-:]?\s*(.*)$", re.IGNORECASE)


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def _dedupe(values: Iterable[str]) -> List[str]:
    seen = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


def _upper(value: Any) -> str:
    if isinstance(value, list):
        value = value[0] if value else ""
    return str(value or "").strip().upper()


def map_severity(tool_severity: Any, metadata: Optional[Dict[str, Any]] = None) -> Severity:
    metadata = metadata or {}
    impact = _upper(metadata.get("impact"))
    likelihood = _upper(metadata.get("likelihood"))
    if impact == "HIGH" and likelihood == "HIGH":
        return Severity.CRITICAL
    declared = _upper(metadata.get("severity"))
    if declared == "CRITICAL":
        return Severity.CRITICAL
    return TOOL_SEVERITY.get(_upper(tool_severity), Severity.MEDIUM)


def categorize(rule_id: str, metadata: Optional[Dict[str, Any]] = None) -> str:
    metadata = metadata or {}
    for key in ("vulnerability_class", "category"):
        for value in _as_list(metadata.get(key)):
            label = str(value).strip().lower()
            if label and label != DEFAULT_CATEGORY:
                return label
    lowered = (rule_id or "").lower()
    for keyword, category in CATEGORY_KEYWORDS:
        if keyword in lowered:
            return category
    return DEFAULT_CATEGORY


def extract_cwes(metadata: Optional[Dict[str, Any]] = None) -> List[str]:
    metadata = metadata or {}
    cwes = []
    for value in _as_list(metadata.get("cwe")):
        match = CWE_RE.search(str(value))
        if match:
            cwes.append(f"CWE-{int(match.group(1))}")
    return _dedupe(cwes)


def _canonical_owasp(value: Any) -> Optional[str]:
    text = str(value or "").strip()
    if not text:
        return None
    match = OWASP_RE.match(text)
    if not match:
        return text
    code, year, title = match.groups()
    code = code.upper()
    head = f"{code}:{year}" if year else code
    return f"{head} - {title.strip()}" if title.strip() else head


def extract_owasp(rule_id: str, category: str, metadata: Optional[Dict[str, Any]] = None) -> List[str]:
    metadata = metadata or {}
    tags = []
    for value in _as_list(metadata.get("owasp")):
        tag = _canonical_owasp(value)
        if tag:
            tags.append(tag)
    haystack = f"{rule_id} {category}".lower()
    for keyword, tag in OWASP_BY_KEYWORD.items():
        if keyword in haystack:
            tags.append(tag)
    return _dedupe(tags)


def _confidence(metadata: Dict[str, Any]) -> int:
    return CONFIDENCE.get(_upper(metadata.get("confidence")), DEFAULT_CONFIDENCE)


def relative_path(target_root: str, path: str) -> str:
    """Path of a finding relative to the scan root; never an absolute host path."""
    if not path:
        return "unknown"
    root = os.path.realpath(target_root)
    candidate = path if os.path.isabs(path) else os.path.join(root, path)
    candidate = os.path.realpath(candidate)
    try:
        rel = os.path.relpath(candidate, root)
    except ValueError:
        return os.path.basename(path)
    if rel.startswith(os.pardir + os.sep) or rel == os.pardir:
        return os.path.basename(path)
    return rel.replace(os.sep, "/")


def read_excerpt(target_root: str, rel_path: str, start_line: int, end_line: int) -> str:
    full = os.path.join(target_root, rel_path)
    try:
        with open(full, "r", encoding="utf-8", errors="replace") as f:
            lines = f.read().splitlines()
    except OSError as e:
        logging.debug(f"Could not read excerpt from {rel_path}: {e}")
        return SNIPPET_UNAVAILABLE
    start = max(1, start_line)
    end = max(start, end_line)
    excerpt = lines[start - 1:end]
    if not excerpt:
        return SNIPPET_UNAVAILABLE
    return "\n".join(excerpt)


def normalize_result(result: Dict[str, Any], target_root: str) -> Finding:
    extra = result.get("extra") or {}
    if not isinstance(extra, dict):
        extra = {}
    metadata = extra.get("metadata") or {}
    if not isinstance(metadata, dict):
        metadata = {}

    rule_id = str(result.get("check_id") or result.get("rule_id") or "unknown")
    start_line = int((result.get("start") or {}).get("line") or 1)
    end_line = int((result.get("end") or {}).get("line") or start_line)
    rel_path = relative_path(target_root, result.get("path") or "")

    snippet = extra.get("lines")
    if not isinstance(snippet, str) or snippet.strip().lower() in WITHHELD_SNIPPETS:
        snippet = read_excerpt(target_root, rel_path, start_line, end_line)

    category = categorize(rule_id, metadata)
    return Finding(
        rule_id=rule_id,
        severity=map_severity(extra.get("severity"), metadata),
        category=category,
        file_path=rel_path,
        start_line=start_line,
        end_line=end_line,
        message=str(extra.get("message") or result.get("message") or rule_id).strip(),
        code_snippet=snippet,
        cwe=extract_cwes(metadata),
        owasp=extract_owasp(rule_id, category, metadata),
        confidence=_confidence(metadata),
    )


def normalize_results(raw: Optional[Dict[str, Any]], target_root: str) -> List[Finding]:
    results = (raw or {}).get("results") or []
    if not isinstance(results, list):
        return []
    findings = []
    for result in results:
        if not isinstance(result, dict):
            continue
        findings.append(normalize_result(result, target_root))
    return findings
