# src/engine/errors.py
"""
Error taxonomy for the scan pipeline.

Only acquisition errors and unrecoverable analysis errors fail a scan.
Persistence and enrichment errors are absorbed by their components.
"""
from typing import Optional


class ScanError(Exception):
    """Base class for every pipeline error."""


class TargetAcquisitionError(ScanError):
    """Bad URL or archive, size ceiling exceeded, clone failure or timeout."""


class AnalysisError(ScanError):
    def __init__(self, message: str, stderr: Optional[str] = None):
        super().__init__(message)
        self.stderr = stderr


class AnalysisTimeoutError(AnalysisError):
    pass


class AnalysisProcessError(AnalysisError):
    def __init__(self, message: str, exit_code: Optional[int] = None, stderr: Optional[str] = None):
        super().__init__(message, stderr=stderr)
        self.exit_code = exit_code


class PersistenceError(ScanError):
    pass


class EnrichmentError(ScanError):
    pass
