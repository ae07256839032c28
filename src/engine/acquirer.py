# src/engine/acquirer.py
"""
TargetAcquirer: produce a local directory for the analyzer to scan.

Both acquisition paths are async context managers. The directory they
create belongs to one scan invocation and is removed exactly once when the
context exits, whichever way it exits.
"""
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from engine.config import settings
from engine.errors import TargetAcquisitionError
from engine.records import AcquiredTarget, Stage
from tools import git_adapter
from utils import archive
from utils.fs_utils import directory_stats, make_scan_dir, remove_tree

StageCallback = Callable[[Stage, dict], None]


async def _run_blocking(func, *args):
    """
    Run blocking filesystem work in a thread. If the caller is cancelled,
    wait for the thread to stop writing before letting cancellation through,
    so cleanup never races an extraction in progress.
    """
    task = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        await asyncio.wait([task])
        raise


class TargetAcquirer:
    def __init__(
        self,
        scans_dir: Optional[str] = None,
        max_archive_bytes: Optional[int] = None,
        max_repo_bytes: Optional[int] = None,
        clone_timeout: Optional[float] = None,
    ):
        self.scans_dir = scans_dir or settings.scans_dir
        self.max_archive_bytes = max_archive_bytes or settings.max_archive_expanded_bytes
        self.max_repo_bytes = max_repo_bytes or settings.max_repo_bytes
        self.clone_timeout = clone_timeout or settings.clone_timeout_seconds

    @asynccontextmanager
    async def scan_dir(self, kind: str) -> AsyncIterator[str]:
        path = make_scan_dir(self.scans_dir, kind)
        try:
            yield path
        finally:
            if remove_tree(path):
                logging.info(f"Removed scan directory {path}")

    @asynccontextmanager
    async def acquire_upload(
        self,
        upload_path: str,
        original_name: Optional[str] = None,
        on_stage: Optional[StageCallback] = None,
    ) -> AsyncIterator[AcquiredTarget]:
        name = original_name or os.path.basename(upload_path)
        if not os.path.isfile(upload_path):
            raise TargetAcquisitionError(f"Uploaded file not found: {name}")
        if not archive.is_supported_upload(name):
            raise TargetAcquisitionError(f"Unsupported upload type: {name}")

        declared = await _run_blocking(archive.count_archive_files, upload_path, name)
        if declared is None:
            raise TargetAcquisitionError(f"Archive is corrupt or unreadable: {name}")
        _notify(on_stage, Stage.COUNTING_FILES, {"total_files": declared})

        async with self.scan_dir("upload") as path:
            _notify(on_stage, Stage.EXTRACTING, {})
            try:
                await _run_blocking(archive.extract_upload, upload_path, path, self.max_archive_bytes, name)
            except archive.ArchiveError as e:
                raise TargetAcquisitionError(str(e)) from e
            except OSError as e:
                raise TargetAcquisitionError(f"Failed to extract {name}: {e}") from e

            file_count, size = await _run_blocking(directory_stats, path)
            _notify(on_stage, Stage.COUNTING_FILES, {"total_files": file_count})
            logging.info(f"Extracted {file_count} files ({size} bytes) from {name}")
            yield AcquiredTarget(path=path, file_count=file_count, size_bytes=size)

    @asynccontextmanager
    async def acquire_repo(
        self,
        repo_url: str,
        branch: Optional[str] = None,
        access_token: Optional[str] = None,
        on_stage: Optional[StageCallback] = None,
    ) -> AsyncIterator[AcquiredTarget]:
        try:
            ref = git_adapter.parse_repo_url(repo_url)
        except ValueError as e:
            raise TargetAcquisitionError(str(e)) from e

        async with self.scan_dir("repo") as path:
            _notify(on_stage, Stage.CLONING, {})
            try:
                await git_adapter.shallow_clone(
                    ref, path, branch=branch, token=access_token, timeout=self.clone_timeout
                )
            except git_adapter.GitTimeoutError as e:
                raise TargetAcquisitionError(f"Clone of {ref.clone_url} timed out after {self.clone_timeout:g}s") from e
            except git_adapter.GitError as e:
                raise TargetAcquisitionError(f"Failed to clone {ref.clone_url}: {e}") from e

            file_count, size = await _run_blocking(directory_stats, path)
            if size > self.max_repo_bytes:
                raise TargetAcquisitionError(
                    f"Repository size ({size / 1024 / 1024:.2f}MB) exceeds maximum allowed size "
                    f"({self.max_repo_bytes / 1024 / 1024:.0f}MB)"
                )
            _notify(on_stage, Stage.COUNTING_FILES, {"total_files": file_count})

            try:
                head = await git_adapter.head_info(path)
            except (OSError, git_adapter.GitError) as e:
                logging.warning(f"Could not read head commit of {ref.clone_url}: {e}")
                head = {"branch": None, "commit": None}

            yield AcquiredTarget(
                path=path,
                file_count=file_count,
                size_bytes=size,
                owner=ref.owner,
                repo=ref.repo,
                branch=head["branch"] or branch,
                head_commit=head["commit"],
            )


def _notify(on_stage: Optional[StageCallback], stage: Stage, data: dict):
    if on_stage is not None:
        on_stage(stage, data)
