# src/engine/records.py
"""
Domain records passed between pipeline components.

These are plain pydantic models, independent of the ORM rows in
engine.models, so a record can exist whether or not it was persisted.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Tier(str, Enum):
    FAST = "fast"
    DEEP = "deep"


class SourceKind(str, Enum):
    UPLOAD = "upload"
    GITHUB = "github"


class ScanStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ScanStatus.COMPLETED, ScanStatus.FAILED)


# queued -> running -> {completed, failed}; a queued scan may also fail
# before it starts running (e.g. the outer deadline fires first).
ALLOWED_TRANSITIONS = {
    ScanStatus.QUEUED: {ScanStatus.RUNNING, ScanStatus.FAILED},
    ScanStatus.RUNNING: {ScanStatus.COMPLETED, ScanStatus.FAILED},
    ScanStatus.COMPLETED: set(),
    ScanStatus.FAILED: set(),
}


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class Stage(str, Enum):
    QUEUED = "queued"
    COUNTING_FILES = "counting_files"
    CLONING = "cloning"
    EXTRACTING = "extracting"
    SCANNING_FILE = "scanning_file"
    PROCESSING_RESULTS = "processing_results"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.COMPLETED, Stage.FAILED)


class Finding(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: str
    severity: Severity
    category: str
    file_path: str
    start_line: int
    end_line: int
    message: str
    code_snippet: str
    cwe: List[str] = Field(default_factory=list)
    owasp: List[str] = Field(default_factory=list)
    confidence: int = 90

    @property
    def fingerprint(self) -> str:
        return f"{self.rule_id}:{self.file_path}:{self.start_line}"


class SeverityCounts(BaseModel):
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0

    @property
    def total(self) -> int:
        return self.critical + self.high + self.medium + self.low


class RiskScore(BaseModel):
    score: int
    grade: str
    weighted_total: int
    counts: SeverityCounts


class ProjectRecord(BaseModel):
    id: str
    name: str
    source: SourceKind
    repo_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class ScanRecord(BaseModel):
    id: str
    project_id: str
    status: ScanStatus = ScanStatus.QUEUED
    tier: Tier = Tier.FAST
    target: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    critical_count: int = 0
    high_count: int = 0
    medium_count: int = 0
    low_count: int = 0
    total_findings: int = 0
    files_scanned: int = 0
    risk_score: Optional[int] = None
    grade: Optional[str] = None
    error_message: Optional[str] = None
    report: Optional[Dict[str, Any]] = None


class ProgressRecord(BaseModel):
    """Immutable snapshot; the tracker replaces it wholesale on every update."""

    model_config = ConfigDict(frozen=True)

    scan_id: str
    stage: Stage = Stage.QUEUED
    percentage: int = 0
    processed_files: int = 0
    total_files: int = 0
    current_file: Optional[str] = None
    findings_count: int = 0
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @property
    def elapsed_ms(self) -> int:
        end = self.finished_at or utcnow()
        return int((end - self.started_at).total_seconds() * 1000)


class AcquiredTarget(BaseModel):
    path: str
    file_count: int
    size_bytes: int
    owner: Optional[str] = None
    repo: Optional[str] = None
    branch: Optional[str] = None
    head_commit: Optional[Dict[str, Any]] = None


class FindingEnrichment(BaseModel):
    explanation: str = ""
    risk: str = ""
    remediation: str = ""
    business_impact: str = ""


class Enrichment(BaseModel):
    available: bool = False
    summary: Optional[str] = None
    findings: Dict[str, FindingEnrichment] = Field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def empty(cls, error: Optional[str] = None) -> "Enrichment":
        return cls(available=False, error=error)


class ScanResults(BaseModel):
    """What the pipeline computed, independent of whether it was persisted."""

    findings: List[Finding]
    risk: RiskScore
    files_scanned: int
    trend: Dict[str, Any]
    enrichment: Enrichment
    warnings: List[str] = Field(default_factory=list)
