# src/utils/fs_utils.py
import logging
import os
import shutil
import time
import uuid
from typing import Optional, Tuple

# directories never counted towards a scan's file count or size
SKIP_DIRS = {".git", "node_modules"}


def make_scan_dir(base_dir: str, kind: str) -> str:
    """
    Create a fresh, uniquely named directory owned by one scan invocation.
    """
    os.makedirs(base_dir, exist_ok=True)
    path = os.path.join(base_dir, f"{kind}_{uuid.uuid4().hex}")
    os.makedirs(path)
    return path


def remove_tree(path: Optional[str]) -> bool:
    if not path or not os.path.exists(path):
        return False
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        else:
            os.remove(path)
    except OSError as e:
        logging.warning(f"Could not remove {path}: {e}")
        return False
    return True


def directory_stats(path: str) -> Tuple[int, int]:
    """
    Return (file_count, size_bytes) for a directory, skipping VCS and
    dependency directories.
    """
    file_count = 0
    size = 0
    for root, dirs, files in os.walk(path):
        dirs[:] = [d for d in dirs if d not in SKIP_DIRS]
        for name in files:
            full = os.path.join(root, name)
            if os.path.islink(full):
                continue
            try:
                size += os.path.getsize(full)
            except OSError:
                continue
            file_count += 1
    return file_count, size


def sweep_orphans(base_dir: str, max_age_seconds: float, now: Optional[float] = None) -> int:
    """
    Remove scan subtrees under base_dir older than max_age_seconds.
    Guards against crashes that skipped a scan's own cleanup.
    """
    if not os.path.isdir(base_dir):
        return 0
    now = now if now is not None else time.time()
    removed = 0
    for entry in os.scandir(base_dir):
        try:
            age = now - entry.stat(follow_symlinks=False).st_mtime
        except OSError:
            continue
        if age > max_age_seconds and remove_tree(entry.path):
            removed += 1
            logging.info(f"Removed orphaned scan directory {entry.name} (age: {int(age // 60)} min)")
    return removed


class UploadTooLarge(ValueError):
    pass


def save_stream(src, dest_dir: str, filename: str, max_bytes: int, chunk_size: int = 1024 * 1024) -> str:
    """
    Copy a binary stream into dest_dir under a unique name, enforcing max_bytes
    while copying. A partial file is removed when the ceiling is exceeded.
    """
    os.makedirs(dest_dir, exist_ok=True)
    safe_name = os.path.basename(filename.replace("\\", "/")) or "upload"
    path = os.path.join(dest_dir, f"{uuid.uuid4().hex}_{safe_name}")
    written = 0
    try:
        with open(path, "wb") as out:
            while True:
                chunk = src.read(chunk_size)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_bytes:
                    raise UploadTooLarge(
                        f"Upload exceeds maximum allowed size ({max_bytes / 1024 / 1024:.0f}MB)"
                    )
                out.write(chunk)
    except BaseException:
        remove_tree(path)
        raise
    return path
