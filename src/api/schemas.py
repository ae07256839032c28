# src/api/schemas.py
# Pydantic models for scan requests and responses. Wire format is camelCase.
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from engine.records import Tier


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class RepoScanRequest(CamelModel):
    repo_url: str = Field(..., min_length=1, description="Repository URL (https, ssh or host/owner/repo)")
    branch: Optional[str] = Field(None, description="Branch to clone; default branch when omitted")
    access_token: Optional[str] = Field(None, description="Token for private repositories, never persisted")
    tier: Tier = Field(Tier.FAST, description="Analysis depth: fast or deep")
    project_name: Optional[str] = Field(None, description="Project name; defaults to owner/repo")


class ScanSubmission(CamelModel):
    scan_id: str
    status: str
    estimated_time: int


class ScanProgress(CamelModel):
    scan_id: str
    status: str
    percentage: int
    stage: str
    processed_files: int = 0
    total_files: int = 0
    current_file: Optional[str] = None
    findings_count: int = 0
    elapsed_ms: int = 0
    error: Optional[str] = None


class ProjectOut(CamelModel):
    id: str
    name: str
    source: str
    repo_url: Optional[str] = None
    created_at: datetime


class ScanOut(CamelModel):
    id: str
    project_id: str
    status: str
    tier: str
    target: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
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


class FindingOut(CamelModel):
    rule_id: str
    severity: str
    category: str
    file_path: str
    start_line: int
    end_line: int
    message: str
    code_snippet: str
    cwe: List[str] = Field(default_factory=list)
    owasp: List[str] = Field(default_factory=list)
    confidence: int


class ScanSummary(CamelModel):
    scan_id: str
    project_name: Optional[str] = None
    status: str
    tier: str
    risk_score: Optional[int] = None
    grade: Optional[str] = None
    total_findings: int = 0
    created_at: datetime
    finished_at: Optional[datetime] = None
    error: Optional[str] = None


class ProgressStats(CamelModel):
    total: int
    active: int
    completed: int
    failed: int
    active_scans: List[ScanProgress] = Field(default_factory=list)


def dump_record(model, record) -> Dict[str, Any]:
    """Render an engine record through a response model."""
    return model.model_validate(record.model_dump(mode="json")).dump()
