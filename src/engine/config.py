# src/engine/config.py
"""
Settings: process configuration read from the environment, with defaults.
"""
import os
import shlex
import tempfile
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

MIB = 1024 * 1024


def _env(name: str, default):
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw


class Settings(BaseModel):
    database_url: str = "sqlite:///./scans.db"
    work_dir: str = Field(default_factory=lambda: os.path.join(tempfile.gettempdir(), "codescan"))
    upload_dir: Optional[str] = None

    analyzer_command: List[str] = Field(default_factory=lambda: ["semgrep"])
    analyzer_max_memory_mb: int = 2048
    analyzer_max_target_bytes: int = 1_000_000
    analyzer_rule_timeout_seconds: int = 30

    max_upload_bytes: int = 50 * MIB
    max_archive_expanded_bytes: int = 200 * MIB
    max_repo_bytes: int = 500 * MIB
    clone_timeout_seconds: float = 120

    timeout_base_seconds: float = 30
    timeout_per_file_seconds: float = 0.2
    timeout_min_seconds: float = 60
    timeout_max_seconds: float = 600
    kill_grace_seconds: float = 5
    supervisor_timeout_seconds: float = 900

    progress_ttl_completed_seconds: float = 3600
    progress_ttl_failed_seconds: float = 600
    orphan_max_age_seconds: float = 3600
    sweep_interval_seconds: float = 300

    enrichment_url: Optional[str] = None
    enrichment_api_key: Optional[str] = None
    enrichment_timeout_seconds: float = 30

    @model_validator(mode="after")
    def _check_deadlines(self):
        if self.timeout_min_seconds > self.timeout_max_seconds:
            raise ValueError("TIMEOUT_MIN_SECONDS must not exceed TIMEOUT_MAX_SECONDS")
        if self.supervisor_timeout_seconds <= self.timeout_max_seconds:
            raise ValueError("SUPERVISOR_TIMEOUT_SECONDS must exceed TIMEOUT_MAX_SECONDS")
        if self.upload_dir is None:
            self.upload_dir = os.path.join(self.work_dir, "uploads")
        return self

    @property
    def scans_dir(self) -> str:
        return os.path.join(self.work_dir, "scans")

    @classmethod
    def from_env(cls) -> "Settings":
        values = {
            "database_url": _env("DATABASE_URL", None),
            "work_dir": _env("SCAN_WORK_DIR", None),
            "upload_dir": _env("UPLOAD_DIR", None),
            "analyzer_command": shlex.split(_env("ANALYZER_COMMAND", "")) or None,
            "analyzer_max_memory_mb": _env("ANALYZER_MAX_MEMORY_MB", None),
            "analyzer_max_target_bytes": _env("ANALYZER_MAX_TARGET_BYTES", None),
            "analyzer_rule_timeout_seconds": _env("ANALYZER_RULE_TIMEOUT_SECONDS", None),
            "max_upload_bytes": _env("MAX_UPLOAD_BYTES", None),
            "max_archive_expanded_bytes": _env("MAX_ARCHIVE_EXPANDED_BYTES", None),
            "max_repo_bytes": _env("MAX_REPO_BYTES", None),
            "clone_timeout_seconds": _env("CLONE_TIMEOUT_SECONDS", None),
            "timeout_base_seconds": _env("TIMEOUT_BASE_SECONDS", None),
            "timeout_per_file_seconds": _env("TIMEOUT_PER_FILE_SECONDS", None),
            "timeout_min_seconds": _env("TIMEOUT_MIN_SECONDS", None),
            "timeout_max_seconds": _env("TIMEOUT_MAX_SECONDS", None),
            "kill_grace_seconds": _env("KILL_GRACE_SECONDS", None),
            "supervisor_timeout_seconds": _env("SUPERVISOR_TIMEOUT_SECONDS", None),
            "progress_ttl_completed_seconds": _env("PROGRESS_TTL_COMPLETED_SECONDS", None),
            "progress_ttl_failed_seconds": _env("PROGRESS_TTL_FAILED_SECONDS", None),
            "orphan_max_age_seconds": _env("ORPHAN_MAX_AGE_SECONDS", None),
            "sweep_interval_seconds": _env("SWEEP_INTERVAL_SECONDS", None),
            "enrichment_url": _env("ENRICHMENT_URL", None),
            "enrichment_api_key": _env("ENRICHMENT_API_KEY", None),
            "enrichment_timeout_seconds": _env("ENRICHMENT_TIMEOUT_SECONDS", None),
        }
        return cls(**{k: v for k, v in values.items() if v is not None})


settings = Settings.from_env()
