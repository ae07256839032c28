# src/engine/supervisor.py
"""
ScanSupervisor: submits scans as background asyncio tasks and drives each
one through acquire -> analyze -> normalize -> score -> enrich -> persist
under an outer deadline.

Every scan ends in exactly one terminal status, and everything it acquired
(scan directory, uploaded file) is released on every exit path.
"""
import asyncio
import logging
import os
import threading
import uuid
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

from engine.acquirer import TargetAcquirer, _run_blocking
from engine.config import settings
from engine.enrichment import EnrichmentAdapter
from engine.errors import AnalysisError, ScanError
from engine.normalizer import normalize_results
from engine.persistence import Degraded, PersistenceGateway
from engine.progress import ProgressTracker
from engine.records import (
    ALLOWED_TRANSITIONS,
    AcquiredTarget,
    ProjectRecord,
    ScanRecord,
    ScanResults,
    ScanStatus,
    SourceKind,
    Stage,
    Tier,
    utcnow,
)
from engine.scoring import score_findings, trend
from engine.timeouts import calculate_timeout, estimate_duration
from tools import git_adapter
from tools.base import SecurityToolAdapter
from tools.semgrep_adapter import SemgrepAdapter
from utils.archive import count_archive_files
from utils.fs_utils import remove_tree, sweep_orphans

MAX_ERROR_LENGTH = 500


@dataclass
class ScanSource:
    kind: SourceKind
    upload_path: Optional[str] = None
    original_name: Optional[str] = None
    repo_url: Optional[str] = None
    branch: Optional[str] = None
    access_token: Optional[str] = None

    def descriptor(self) -> Dict[str, Any]:
        """Persistable description of the target. Never includes the token."""
        if self.kind == SourceKind.UPLOAD:
            return {"kind": self.kind.value, "file_name": self.original_name}
        return {"kind": self.kind.value, "repo_url": self.repo_url, "branch": self.branch}


class _ScanState:
    def __init__(self, scan: ScanRecord):
        self.scan = scan
        self.target: Optional[AcquiredTarget] = None


class ScanSupervisor:
    def __init__(
        self,
        gateway: PersistenceGateway,
        tracker: ProgressTracker,
        acquirer: Optional[TargetAcquirer] = None,
        analyzer: Optional[SecurityToolAdapter] = None,
        enricher: Optional[EnrichmentAdapter] = None,
        timeout: Optional[float] = None,
        upload_dir: Optional[str] = None,
    ):
        self.gateway = gateway
        self.tracker = tracker
        self.acquirer = acquirer or TargetAcquirer()
        self.analyzer = analyzer or SemgrepAdapter()
        self.enricher = enricher or EnrichmentAdapter()
        self.timeout = timeout or settings.supervisor_timeout_seconds
        self.upload_dir = upload_dir or settings.upload_dir
        self.tasks: Dict[str, asyncio.Task] = {}
        self.lock = threading.Lock()

    # -- submission -----------------------------------------------------

    async def submit_upload(self, upload_path: str, original_name: str, tier, project_name: Optional[str] = None) -> Dict[str, Any]:
        source = ScanSource(kind=SourceKind.UPLOAD, upload_path=upload_path, original_name=original_name)
        project = ProjectRecord(
            id=str(uuid.uuid4()),
            name=project_name or os.path.splitext(os.path.basename(original_name))[0] or "upload",
            source=SourceKind.UPLOAD,
        )
        file_count = await asyncio.to_thread(count_archive_files, upload_path, original_name)
        return await self._submit(source, project, Tier(tier), estimate_duration(file_count, tier))

    async def submit_repo(
        self,
        repo_url: str,
        tier,
        branch: Optional[str] = None,
        access_token: Optional[str] = None,
        project_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            ref = git_adapter.parse_repo_url(repo_url)
            canonical, default_name = ref.clone_url, f"{ref.owner}/{ref.repo}"
        except ValueError:
            # rejected by the acquirer once the scan runs
            canonical = git_adapter.strip_credentials(repo_url)
            default_name = canonical
        source = ScanSource(
            kind=SourceKind.GITHUB,
            repo_url=canonical,
            branch=branch or None,
            access_token=access_token or None,
        )
        project = ProjectRecord(
            id=str(uuid.uuid4()),
            name=project_name or default_name,
            source=SourceKind.GITHUB,
            repo_url=canonical,
        )
        return await self._submit(source, project, Tier(tier), estimate_duration(None, tier))

    async def _submit(self, source: ScanSource, project: ProjectRecord, tier: Tier, estimated: int) -> Dict[str, Any]:
        scan_id = str(uuid.uuid4())
        await asyncio.to_thread(self.gateway.create_project, project, scan_id)
        scan = ScanRecord(id=scan_id, project_id=project.id, tier=tier, target=source.descriptor())
        await asyncio.to_thread(self.gateway.create_scan, scan)
        self.tracker.start(scan_id)

        task = asyncio.ensure_future(self.supervise(scan, project, source))
        with self.lock:
            self.tasks[scan_id] = task
        task.add_done_callback(lambda _: self._forget(scan_id))
        logging.info(f"[scan_id={scan_id}] Submitted {source.kind.value} scan ({tier.value}) for project {project.name}")
        return {"scan_id": scan_id, "status": ScanStatus.QUEUED.value, "estimated_time": estimated}

    def _forget(self, scan_id: str):
        with self.lock:
            self.tasks.pop(scan_id, None)

    # -- supervision ----------------------------------------------------

    async def supervise(self, scan: ScanRecord, project: ProjectRecord, source: ScanSource) -> ScanRecord:
        state = _ScanState(scan)
        try:
            try:
                results = await asyncio.wait_for(self._pipeline(state, project, source), timeout=self.timeout)
            except asyncio.TimeoutError:
                await self._finish_failed(state, f"Scan timed out after {self.timeout:g}s")
            except ScanError as e:
                if isinstance(e, AnalysisError) and e.stderr:
                    logging.error(f"[scan_id={scan.id}] Analyzer stderr:\n{e.stderr}")
                await self._finish_failed(state, str(e) or e.__class__.__name__)
            except asyncio.CancelledError:
                await self._finish_failed(state, "Scan was cancelled")
                raise
            except Exception as e:
                logging.exception(f"[scan_id={scan.id}] Unexpected pipeline error")
                await self._finish_failed(state, f"Internal error: {e}")
            else:
                try:
                    await self._finish_completed(state, results)
                except Exception as e:
                    logging.exception(f"[scan_id={scan.id}] Could not record completed scan")
                    await self._finish_failed(state, f"Internal error: {e}")
        finally:
            if source.upload_path and remove_tree(source.upload_path):
                logging.info(f"[scan_id={scan.id}] Removed uploaded file")
        return state.scan

    async def _pipeline(self, state: _ScanState, project: ProjectRecord, source: ScanSource) -> ScanResults:
        scan_id = state.scan.id
        tier = state.scan.tier
        if self._transition(state, ScanStatus.RUNNING, started_at=utcnow()):
            await asyncio.to_thread(self.gateway.update_scan, state.scan)
        logging.info(f"[scan_id={scan_id}] Started scan")

        def on_stage(stage, data):
            self.tracker.update(scan_id, Stage(stage), data)

        async with self._acquire(source, on_stage) as target:
            state.target = target
            deadline = calculate_timeout(target.file_count, tier)
            logging.info(f"[scan_id={scan_id}] Analyzing {target.file_count} files, deadline {deadline:.0f}s")
            outcome = await self.analyzer.run(target.path, tier.value, deadline, on_progress=on_stage)
            on_stage(Stage.PROCESSING_RESULTS, {})
            findings = await _run_blocking(normalize_results, outcome.raw, target.path)

        risk = score_findings(findings)
        on_stage(Stage.PROCESSING_RESULTS, {"findings_count": len(findings)})
        logging.info(f"[scan_id={scan_id}] {len(findings)} findings, risk score {risk.score} ({risk.grade})")

        previous = await asyncio.to_thread(self.gateway.previous_score, project, scan_id)
        enrichment = await self.enricher.enrich(
            findings,
            {"project": project.name, "tier": tier.value, "riskScore": risk.score},
        )

        warnings = list(outcome.warnings)
        if findings:
            written = await asyncio.to_thread(self.gateway.insert_findings, scan_id, findings)
            if isinstance(written, Degraded):
                logging.warning(f"[scan_id={scan_id}] [fallback] {len(findings)} findings kept in memory only")

        return ScanResults(
            findings=findings,
            risk=risk,
            files_scanned=target.file_count,
            trend=trend(risk.score, previous),
            enrichment=enrichment,
            warnings=warnings,
        )

    @asynccontextmanager
    async def _acquire(self, source: ScanSource, on_stage) -> AsyncIterator[AcquiredTarget]:
        if source.kind == SourceKind.UPLOAD:
            context = self.acquirer.acquire_upload(source.upload_path, source.original_name, on_stage=on_stage)
        else:
            context = self.acquirer.acquire_repo(
                source.repo_url, branch=source.branch, access_token=source.access_token, on_stage=on_stage
            )
        async with context as target:
            yield target

    # -- terminal transitions -------------------------------------------

    def _transition(self, state: _ScanState, status: ScanStatus, **changes) -> bool:
        current = state.scan.status
        if status not in ALLOWED_TRANSITIONS[current]:
            logging.warning(f"[scan_id={state.scan.id}] Ignoring transition {current.value} -> {status.value}")
            return False
        state.scan = state.scan.model_copy(update={"status": status, **changes})
        return True

    async def _finish_completed(self, state: _ScanState, results: ScanResults):
        counts = results.risk.counts
        report = build_report(state, results)
        if not self._transition(
            state,
            ScanStatus.COMPLETED,
            finished_at=utcnow(),
            critical_count=counts.critical,
            high_count=counts.high,
            medium_count=counts.medium,
            low_count=counts.low,
            total_findings=len(results.findings),
            files_scanned=results.files_scanned,
            risk_score=results.risk.score,
            grade=results.risk.grade,
            report=report,
        ):
            return
        try:
            written = await asyncio.to_thread(self.gateway.update_scan, state.scan)
        finally:
            self.tracker.complete(state.scan.id, findings_count=len(results.findings))
        if isinstance(written, Degraded):
            logging.warning(f"[scan_id={state.scan.id}] [fallback] Completed scan kept in memory only")
        logging.info(f"[scan_id={state.scan.id}] Completed scan. findings={len(results.findings)} score={results.risk.score}")

    async def _finish_failed(self, state: _ScanState, message: str):
        message = (message or "Scan failed")[:MAX_ERROR_LENGTH]
        if not self._transition(state, ScanStatus.FAILED, finished_at=utcnow(), error_message=message):
            return
        try:
            written = await asyncio.to_thread(self.gateway.update_scan, state.scan)
        finally:
            self.tracker.fail(state.scan.id, message)
        if isinstance(written, Degraded):
            logging.warning(f"[scan_id={state.scan.id}] [fallback] Failed scan status kept in memory only")
        logging.error(f"[scan_id={state.scan.id}] Scan failed: {message}")

    # -- read path ------------------------------------------------------

    def get_status(self, scan_id: str) -> Optional[Dict[str, Any]]:
        progress = self.tracker.get(scan_id)
        scan = self.gateway.get_scan(scan_id)
        if progress is None and scan is None:
            return None

        if progress is not None:
            # the tracker turns terminal last, so a finished record alone does not end the scan
            if progress.stage.is_terminal:
                status = ScanStatus(progress.stage.value)
            elif progress.stage == Stage.QUEUED and (scan is None or scan.status == ScanStatus.QUEUED):
                status = ScanStatus.QUEUED
            else:
                status = ScanStatus.RUNNING
            return {
                "scan_id": scan_id,
                "status": status.value,
                "percentage": progress.percentage,
                "stage": progress.stage.value,
                "processed_files": progress.processed_files,
                "total_files": progress.total_files,
                "current_file": progress.current_file,
                "findings_count": progress.findings_count,
                "elapsed_ms": progress.elapsed_ms,
                "error": progress.error,
            }

        elapsed = 0
        if scan.started_at is not None:
            end = scan.finished_at or utcnow()
            elapsed = int((end - scan.started_at).total_seconds() * 1000)
        return {
            "scan_id": scan_id,
            "status": scan.status.value,
            "percentage": 100 if scan.status == ScanStatus.COMPLETED else 0,
            "stage": scan.status.value,
            "processed_files": scan.files_scanned,
            "total_files": scan.files_scanned,
            "current_file": None,
            "findings_count": scan.total_findings,
            "elapsed_ms": elapsed,
            "error": scan.error_message,
        }

    def get_results(self, scan_id: str) -> Optional[Dict[str, Any]]:
        scan = self.gateway.get_scan(scan_id)
        if scan is None:
            return None
        return {
            "scan": scan,
            "project": self.gateway.get_project(scan.project_id),
            "findings": self.gateway.get_findings(scan_id) if scan.status.is_terminal else [],
        }

    def history(self, project_name: Optional[str] = None, status: Optional[str] = None, limit: int = 20, offset: int = 0):
        return self.gateway.list_scans(project_name=project_name, status=status, limit=limit, offset=offset)

    def progress_stats(self) -> Dict[str, Any]:
        stats = self.tracker.stats()
        active = [self.get_status(record.scan_id) for record in self.tracker.active()]
        stats["active_scans"] = [s for s in active if s is not None]
        return stats

    # -- housekeeping ---------------------------------------------------

    def sweep(self, max_age: Optional[float] = None) -> Dict[str, int]:
        max_age = settings.orphan_max_age_seconds if max_age is None else max_age
        return {
            "progress": self.tracker.sweep(),
            "scan_dirs": sweep_orphans(self.acquirer.scans_dir, max_age),
            "uploads": sweep_orphans(self.upload_dir, max_age),
        }

    async def run_sweeper(self, interval: Optional[float] = None):
        interval = interval or settings.sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                removed = await asyncio.to_thread(self.sweep)
            except OSError as e:
                logging.warning(f"Sweep failed: {e}")
                continue
            if any(removed.values()):
                logging.info(f"Sweep removed {removed}")

    async def shutdown(self):
        with self.lock:
            tasks = list(self.tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


def build_report(state: _ScanState, results: ScanResults) -> Dict[str, Any]:
    target = state.target
    categories = Counter(f.category for f in results.findings)
    return {
        "severity_counts": results.risk.counts.model_dump(),
        "risk_score": results.risk.score,
        "grade": results.risk.grade,
        "weighted_total": results.risk.weighted_total,
        "trend": results.trend,
        "categories": dict(categories.most_common()),
        "files_scanned": results.files_scanned,
        "target": target.model_dump(exclude={"path"}) if target is not None else None,
        "enrichment": results.enrichment.model_dump(),
        "warnings": results.warnings,
    }
