from engine.records import Finding, Severity
from engine.scoring import grade_for, score_counts, score_findings, trend


def _finding(severity, line=1):
    return Finding(
        rule_id="rule",
        severity=severity,
        category="security",
        file_path="app.py",
        start_line=line,
        end_line=line,
        message="m",
        code_snippet="x",
    )


def test_no_findings_scores_perfect():
    risk = score_counts(0, 0, 0, 0)
    assert risk.score == 100
    assert risk.grade == "A"


def test_one_critical_two_high_is_grade_f():
    risk = score_findings([_finding(Severity.CRITICAL), _finding(Severity.HIGH, 2), _finding(Severity.HIGH, 3)])
    assert risk.weighted_total == 45
    assert risk.score == 10
    assert risk.grade == "F"


def test_score_is_clamped_at_zero():
    risk = score_counts(critical=10)
    assert risk.score == 0
    assert risk.grade == "F"


def test_score_never_increases_with_more_findings():
    for base in [(0, 0, 0, 0), (1, 0, 2, 3), (0, 3, 1, 0)]:
        start = score_counts(*base).score
        for index in range(4):
            bumped = list(base)
            bumped[index] += 1
            assert score_counts(*bumped).score <= start


def test_grade_bands():
    assert grade_for(0) == "A"
    assert grade_for(9) == "A"
    assert grade_for(10) == "B"
    assert grade_for(25) == "C"
    assert grade_for(35) == "D"
    assert grade_for(40) == "F"


def test_low_findings_keep_a_good_grade():
    risk = score_counts(low=3)
    assert risk.score == 94
    assert risk.grade == "A"
    assert risk.counts.total == 3


def test_trend():
    assert trend(80, None) == {"trend": "initial", "change": 0}
    assert trend(80, 70) == {"trend": "improved", "change": 10}
    assert trend(60, 70) == {"trend": "declined", "change": -10}
    assert trend(70, 70) == {"trend": "unchanged", "change": 0}
