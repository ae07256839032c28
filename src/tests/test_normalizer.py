import os

from engine.normalizer import (
    SNIPPET_UNAVAILABLE,
    categorize,
    extract_cwes,
    map_severity,
    normalize_result,
    normalize_results,
    relative_path,
)
from engine.records import Severity


def _target(tmp_path):
    app = tmp_path / "app"
    app.mkdir()
    (app / "db.py").write_text("import sqlite3\nquery = 'SELECT ' + name\ncursor.execute(query)\n")
    return str(tmp_path)


def _raw(root, **overrides):
    result = {
        "check_id": "python.lang.security.audit.formatted-sql-query",
        "path": os.path.join(root, "app", "db.py"),
        "start": {"line": 2, "col": 1},
        "end": {"line": 3, "col": 22},
        "extra": {
            "severity": "ERROR",
            "message": "Detected possible SQL injection",
            "lines": "requires login",
            "metadata": {
                "cwe": ["CWE-89: Improper Neutralization of Special Elements used in an SQL Command"],
                "owasp": ["A03:2021 - Injection"],
                "impact": "HIGH",
                "likelihood": "HIGH",
                "confidence": "MEDIUM",
                "category": "security",
            },
        },
    }
    result.update(overrides)
    return result


def test_normalize_full_result(tmp_path):
    root = _target(tmp_path)
    finding = normalize_result(_raw(root), root)
    assert finding.rule_id == "python.lang.security.audit.formatted-sql-query"
    assert finding.severity == Severity.CRITICAL
    assert finding.category == "sql-injection"
    assert finding.file_path == "app/db.py"
    assert finding.start_line == 2
    assert finding.end_line == 3
    assert finding.cwe == ["CWE-89"]
    assert finding.owasp == ["A03:2021 - Injection"]
    assert finding.confidence == 70
    # withheld excerpt is read back from the target
    assert finding.code_snippet == "query = 'SELECT ' + name\ncursor.execute(query)"


def test_normalization_is_deterministic(tmp_path):
    root = _target(tmp_path)
    raw = _raw(root)
    raw["extra"]["metadata"] = {"cwe": "89", "category": "injection", "impact": "HIGH", "likelihood": "HIGH"}
    first = normalize_result(raw, root)
    second = normalize_result(raw, root)
    assert first == second
    assert first.cwe == ["CWE-89"]
    assert first.category == "injection"
    assert first.severity == Severity.CRITICAL


def test_severity_mapping():
    assert map_severity("ERROR") == Severity.HIGH
    assert map_severity("WARNING") == Severity.MEDIUM
    assert map_severity("INFO") == Severity.LOW
    assert map_severity("something-new") == Severity.MEDIUM
    assert map_severity("WARNING", {"impact": "HIGH", "likelihood": "HIGH"}) == Severity.CRITICAL
    assert map_severity("ERROR", {"impact": "HIGH", "likelihood": "MEDIUM"}) == Severity.HIGH
    assert map_severity("INFO", {"severity": "critical"}) == Severity.CRITICAL


def test_categorize_from_metadata_then_rule_id():
    assert categorize("anything", {"vulnerability_class": ["Cross-Site-Scripting (XSS)"]}) == "cross-site-scripting (xss)"
    assert categorize("javascript.express.security.audit.xss.direct-response-write") == "xss"
    assert categorize("generic.secrets.security.detected-aws-key") == "secrets"
    assert categorize("python.lang.security.insecure-hash-algorithm-md5") == "cryptography"
    assert categorize("python.flask.debug-enabled") == "security"


def test_extract_cwes_dedupes_and_canonicalizes():
    assert extract_cwes({"cwe": ["CWE-79: XSS", "cwe-79", "CWE 20"]}) == ["CWE-79", "CWE-20"]
    assert extract_cwes({}) == []


def test_paths_outside_the_target_are_reduced_to_basename(tmp_path):
    root = _target(tmp_path)
    assert relative_path(root, "/etc/passwd") == "passwd"
    assert relative_path(root, "app/db.py") == "app/db.py"


def test_missing_file_uses_placeholder_excerpt(tmp_path):
    root = _target(tmp_path)
    raw = _raw(root, path="app/gone.py")
    raw["extra"]["lines"] = ""
    assert normalize_result(raw, root).code_snippet == SNIPPET_UNAVAILABLE


def test_normalize_results_skips_malformed_entries(tmp_path):
    root = _target(tmp_path)
    findings = normalize_results({"results": [_raw(root), "junk", None]}, root)
    assert len(findings) == 1
    assert normalize_results(None, root) == []
    assert normalize_results({"results": "oops"}, root) == []
