# src/api/routes.py
from fastapi import APIRouter, File, Form, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from typing import Optional
import logging

from api.schemas import (
    FindingOut,
    ProgressStats,
    ProjectOut,
    RepoScanRequest,
    ScanOut,
    ScanProgress,
    ScanSubmission,
    ScanSummary,
    dump_record,
)
from engine.config import settings
from engine.persistence import PersistenceGateway
from engine.progress import ProgressTracker
from engine.records import Tier
from engine.supervisor import ScanSupervisor
from utils.archive import is_supported_upload
from utils.fs_utils import UploadTooLarge, remove_tree, save_stream

router = APIRouter()

gateway = PersistenceGateway()
tracker = ProgressTracker()
supervisor = ScanSupervisor(gateway, tracker)


def _bad_request(error: str):
    return JSONResponse(status_code=400, content={"success": False, "error": error})


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.post(
    "/scan/upload",
    summary="Submit an uploaded archive or source file for scanning",
    response_description="Scan ID, status and estimated time",
    tags=["Scans"],
    response_model=dict,
    responses={
        200: {"description": "Scan queued"},
        400: {"description": "Invalid upload"},
        500: {"description": "Internal server error"}
    },
)
async def scan_upload(
    file: UploadFile = File(...),
    tier: str = Form(Tier.FAST.value),
    project_name: Optional[str] = Form(None),
):
    """
    Stream the upload to disk and queue a scan of it. Returns immediately.
    """
    try:
        tier = Tier(tier)
    except ValueError:
        return _bad_request(f"Invalid tier: {tier}")
    if not file.filename:
        return _bad_request("No file uploaded")
    if not is_supported_upload(file.filename):
        return _bad_request(f"Unsupported upload type: {file.filename}")

    try:
        path = await run_in_threadpool(
            save_stream, file.file, settings.upload_dir, file.filename, settings.max_upload_bytes
        )
    except UploadTooLarge as e:
        return _bad_request(str(e))
    finally:
        await file.close()

    try:
        submission = await supervisor.submit_upload(path, file.filename, tier, project_name=project_name)
    except Exception:
        remove_tree(path)
        raise
    return ScanSubmission(**submission).dump()


@router.post(
    "/scan/repo",
    summary="Submit a git repository for scanning",
    response_description="Scan ID, status and estimated time",
    tags=["Scans"],
    response_model=dict,
    responses={
        200: {"description": "Scan queued"},
        400: {"description": "Invalid request"},
        500: {"description": "Internal server error"}
    },
)
async def scan_repo(request: RepoScanRequest):
    """
    Queue a shallow clone and scan of a repository. Returns immediately.
    """
    if not request.repo_url.strip():
        return _bad_request("repoUrl is required")
    submission = await supervisor.submit_repo(
        request.repo_url.strip(),
        request.tier,
        branch=request.branch,
        access_token=request.access_token,
        project_name=request.project_name,
    )
    return ScanSubmission(**submission).dump()


@router.get(
    "/scan/status/{scan_id}",
    summary="Get scan progress",
    response_description="Stage, percentage and file counts of a scan",
    tags=["Scans"],
    response_model=dict,
)
def get_scan_status(scan_id: str):
    """
    Live progress while the scan runs; coarse status from the stored scan afterwards.
    """
    status = supervisor.get_status(scan_id)
    if status is None:
        return {"status": "not_found"}
    return ScanProgress(**status).dump()


@router.get(
    "/scan/results/{scan_id}",
    summary="Get scan results",
    response_description="Scan, project and normalized findings",
    tags=["Scans"],
    response_model=dict,
)
def get_scan_results(scan_id: str):
    results = supervisor.get_results(scan_id)
    if results is None:
        return {"status": "not_found"}
    scan = results["scan"]
    if not scan.status.is_terminal:
        return {"success": False, "error": f"Scan is still {scan.status.value}"}
    project = results["project"]
    return {
        "success": True,
        "scan": dump_record(ScanOut, scan),
        "project": dump_record(ProjectOut, project) if project is not None else None,
        "findings": [dump_record(FindingOut, f) for f in results["findings"]],
    }


@router.get(
    "/scan/history",
    summary="Query scan history",
    response_description="Scans filtered by project name and status, newest first",
    tags=["Scans"],
    response_model=list,
)
def get_scan_history(project_name: str = None, status: str = None, limit: int = 20, offset: int = 0):
    """
    Query scan history by project name and/or status.
    """
    limit = max(1, min(limit, 100))
    offset = max(0, offset)
    entries = supervisor.history(project_name=project_name, status=status, limit=limit, offset=offset)
    logging.info(f"History query returned {len(entries)} scans")
    return [
        ScanSummary(
            scan_id=entry["scan"].id,
            project_name=entry["project"].name if entry["project"] is not None else None,
            status=entry["scan"].status.value,
            tier=entry["scan"].tier.value,
            risk_score=entry["scan"].risk_score,
            grade=entry["scan"].grade,
            total_findings=entry["scan"].total_findings,
            created_at=entry["scan"].created_at,
            finished_at=entry["scan"].finished_at,
            error=entry["scan"].error_message,
        ).dump()
        for entry in entries
    ]


@router.get(
    "/scan/progress/stats",
    summary="Progress tracker statistics",
    tags=["Scans"],
    response_model=dict,
)
def get_progress_stats():
    return ProgressStats(**supervisor.progress_stats()).dump()
