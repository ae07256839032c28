# src/engine/persistence.py
"""
PersistenceGateway: durable writes for projects, scans and findings.

A failed write never aborts the pipeline. It returns Degraded(record) and
keeps the record in a bounded in-memory fallback, so the scan proceeds and
its results stay readable from this process. Callers branch on the result
type instead of probing the record.
"""
import json
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

from sqlalchemy.exc import SQLAlchemyError

from engine.errors import PersistenceError
from engine import models
from engine.records import (
    Finding,
    ProjectRecord,
    ScanRecord,
    ScanStatus,
    Severity,
    SourceKind,
    Tier,
)

T = TypeVar("T")

FALLBACK_CAPACITY = 500


@dataclass(frozen=True)
class Persisted(Generic[T]):
    record: T

    @property
    def durable(self) -> bool:
        return True


@dataclass(frozen=True)
class Degraded(Generic[T]):
    record: T
    error: str

    @property
    def durable(self) -> bool:
        return False


WriteResult = Union[Persisted[T], Degraded[T]]


def _naive(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)


def _loads(text: Optional[str], default):
    if not text:
        return default
    try:
        return json.loads(text)
    except ValueError:
        return default


def project_from_row(row: models.Project) -> ProjectRecord:
    return ProjectRecord(
        id=row.id,
        name=row.name,
        source=SourceKind(row.source),
        repo_url=row.repo_url,
        created_at=_aware(row.created_at),
    )


def scan_from_row(row: models.Scan) -> ScanRecord:
    return ScanRecord(
        id=row.id,
        project_id=row.project_id,
        status=ScanStatus(row.status),
        tier=Tier(row.tier),
        target=_loads(row.target, {}),
        created_at=_aware(row.created_at),
        started_at=_aware(row.started_at),
        finished_at=_aware(row.finished_at),
        critical_count=row.critical_count or 0,
        high_count=row.high_count or 0,
        medium_count=row.medium_count or 0,
        low_count=row.low_count or 0,
        total_findings=row.total_findings or 0,
        files_scanned=row.files_scanned or 0,
        risk_score=row.risk_score,
        grade=row.grade,
        error_message=row.error_message,
        report=_loads(row.report_json, None),
    )


def finding_from_row(row: models.Finding) -> Finding:
    return Finding(
        rule_id=row.rule_id,
        severity=Severity(row.severity),
        category=row.category,
        file_path=row.file_path,
        start_line=row.start_line,
        end_line=row.end_line,
        message=row.message,
        code_snippet=row.code_snippet or "",
        cwe=_loads(row.cwe, []),
        owasp=_loads(row.owasp, []),
        confidence=row.confidence if row.confidence is not None else 90,
    )


def _apply_scan(row: models.Scan, record: ScanRecord):
    row.status = record.status.value
    row.tier = record.tier.value
    row.target = json.dumps(record.target)
    row.started_at = _naive(record.started_at)
    row.finished_at = _naive(record.finished_at)
    row.critical_count = record.critical_count
    row.high_count = record.high_count
    row.medium_count = record.medium_count
    row.low_count = record.low_count
    row.total_findings = record.total_findings
    row.files_scanned = record.files_scanned
    row.risk_score = record.risk_score
    row.grade = record.grade
    row.error_message = record.error_message
    row.report_json = json.dumps(record.report) if record.report is not None else None


class _Fallback(OrderedDict):
    def remember(self, key, value):
        self[key] = value
        self.move_to_end(key)
        while len(self) > FALLBACK_CAPACITY:
            self.popitem(last=False)


class PersistenceGateway:
    def __init__(self, session_factory: Optional[Callable] = None):
        if session_factory is None:
            from engine.db import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory
        self.lock = threading.Lock()
        self.projects = _Fallback()
        self.scans = _Fallback()
        self.findings = _Fallback()

    # -- writes ---------------------------------------------------------

    def _write(self, scan_id: str, label: str, operation: Callable, record, remember: Callable) -> WriteResult:
        db = self.session_factory()
        try:
            operation(db)
            db.commit()
        except (SQLAlchemyError, PersistenceError, TypeError, ValueError) as e:
            # TypeError and ValueError come from JSON columns that do not serialize
            db.rollback()
            logging.warning(f"[scan_id={scan_id}] [fallback] {label} failed, keeping in-memory record: {e}")
            with self.lock:
                remember()
            return Degraded(record, str(e))
        finally:
            db.close()
        return Persisted(record)

    def create_project(self, project: ProjectRecord, scan_id: str = "-") -> WriteResult[ProjectRecord]:
        def operation(db):
            db.add(models.Project(
                id=project.id,
                name=project.name,
                source=project.source.value,
                repo_url=project.repo_url,
                created_at=_naive(project.created_at),
            ))

        return self._write(scan_id, "create project", operation, project,
                           lambda: self.projects.remember(project.id, project))

    def create_scan(self, scan: ScanRecord) -> WriteResult[ScanRecord]:
        def operation(db):
            row = models.Scan(id=scan.id, project_id=scan.project_id, created_at=_naive(scan.created_at))
            _apply_scan(row, scan)
            db.add(row)

        return self._write(scan.id, "create scan", operation, scan,
                           lambda: self.scans.remember(scan.id, scan))

    def update_scan(self, scan: ScanRecord) -> WriteResult[ScanRecord]:
        with self.lock:
            shadowed = scan.id in self.scans
            if shadowed:
                self.scans.remember(scan.id, scan)

        def operation(db):
            row = db.get(models.Scan, scan.id)
            if row is None:
                raise PersistenceError(f"scan {scan.id} has no durable row")
            _apply_scan(row, scan)

        result = self._write(scan.id, f"update scan ({scan.status.value})", operation, scan,
                             lambda: self.scans.remember(scan.id, scan))
        if shadowed and isinstance(result, Persisted):
            # the durable row exists now, but other writes for this scan degraded
            return Degraded(scan, "earlier writes for this scan were not persisted")
        return result

    def insert_findings(self, scan_id: str, findings: List[Finding]) -> WriteResult[int]:
        def operation(db):
            db.add_all([
                models.Finding(
                    scan_id=scan_id,
                    rule_id=f.rule_id,
                    severity=f.severity.value,
                    category=f.category,
                    file_path=f.file_path,
                    start_line=f.start_line,
                    end_line=f.end_line,
                    message=f.message,
                    code_snippet=f.code_snippet,
                    cwe=json.dumps(f.cwe),
                    owasp=json.dumps(f.owasp),
                    confidence=f.confidence,
                )
                for f in findings
            ])

        return self._write(scan_id, f"insert {len(findings)} findings", operation, len(findings),
                           lambda: self.findings.remember(scan_id, list(findings)))

    # -- reads ----------------------------------------------------------

    def _read(self, label: str, operation: Callable, default):
        db = self.session_factory()
        try:
            return operation(db)
        except SQLAlchemyError as e:
            logging.warning(f"[fallback] {label} failed, serving in-memory data only: {e}")
            return default
        finally:
            db.close()

    def get_scan(self, scan_id: str) -> Optional[ScanRecord]:
        with self.lock:
            shadow = self.scans.get(scan_id)
        if shadow is not None:
            return shadow

        def operation(db):
            row = db.get(models.Scan, scan_id)
            return scan_from_row(row) if row is not None else None

        return self._read(f"read scan {scan_id}", operation, None)

    def get_project(self, project_id: str) -> Optional[ProjectRecord]:
        with self.lock:
            shadow = self.projects.get(project_id)
        if shadow is not None:
            return shadow

        def operation(db):
            row = db.get(models.Project, project_id)
            return project_from_row(row) if row is not None else None

        return self._read(f"read project {project_id}", operation, None)

    def get_findings(self, scan_id: str) -> List[Finding]:
        with self.lock:
            shadow = self.findings.get(scan_id)
        if shadow is not None:
            return list(shadow)

        def operation(db):
            rows = (
                db.query(models.Finding)
                .filter(models.Finding.scan_id == scan_id)
                .order_by(models.Finding.id)
                .all()
            )
            return [finding_from_row(r) for r in rows]

        return self._read(f"read findings of {scan_id}", operation, [])

    def list_scans(
        self,
        project_name: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        def operation(db):
            query = db.query(models.Scan, models.Project).join(models.Project, models.Scan.project_id == models.Project.id)
            if project_name:
                query = query.filter(models.Project.name == project_name)
            if status:
                query = query.filter(models.Scan.status == status)
            # offset is applied after fallback-only scans are merged in
            rows = query.order_by(models.Scan.created_at.desc()).limit(offset + limit).all()
            return [(scan_from_row(s), project_from_row(p)) for s, p in rows]

        pairs = self._read("list scans", operation, [])
        with self.lock:
            durable_ids = {s.id for s, _ in pairs}
            for scan in self.scans.values():
                if scan.id in durable_ids:
                    continue
                project = self.projects.get(scan.project_id)
                if project_name and (project is None or project.name != project_name):
                    continue
                if status and scan.status.value != status:
                    continue
                pairs.append((scan, project))
            shadows = {scan_id: scan for scan_id, scan in self.scans.items()}
        pairs = [(shadows.get(s.id, s), p) for s, p in pairs]
        pairs.sort(key=lambda pair: pair[0].created_at, reverse=True)
        return [
            {"scan": scan, "project": project}
            for scan, project in pairs[offset:offset + limit]
        ]

    def previous_score(self, project: ProjectRecord, exclude_scan_id: str) -> Optional[int]:
        """Risk score of the latest completed scan of the same repository (or upload name)."""
        def operation(db):
            query = (
                db.query(models.Scan.risk_score)
                .join(models.Project, models.Scan.project_id == models.Project.id)
                .filter(models.Scan.status == ScanStatus.COMPLETED.value)
                .filter(models.Scan.id != exclude_scan_id)
                .filter(models.Scan.risk_score.isnot(None))
            )
            if project.repo_url:
                query = query.filter(models.Project.repo_url == project.repo_url)
            else:
                query = query.filter(models.Project.name == project.name, models.Project.source == project.source.value)
            row = query.order_by(models.Scan.finished_at.desc()).first()
            return row[0] if row else None

        return self._read("read previous score", operation, None)
