# src/utils/archive.py
"""
Unpack an uploaded artifact into a scan directory.

Archives (.zip, .tar, .tar.gz, .tgz) are extracted; single source files
are copied in as-is. Anything else is rejected.
"""
import os
import shutil
import tarfile
import zipfile
from typing import Optional

ARCHIVE_SUFFIXES = (".zip", ".tar", ".tar.gz", ".tgz")

SOURCE_EXTENSIONS = {
    ".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs", ".py", ".java", ".kt", ".c", ".h",
    ".cpp", ".cc", ".hpp", ".cs", ".php", ".rb", ".go", ".rs", ".swift", ".scala",
    ".html", ".css", ".scss", ".json", ".xml", ".yaml", ".yml", ".tf", ".sh",
    ".env", ".dockerfile",
}
SOURCE_FILENAMES = {"dockerfile", ".env"}


class ArchiveError(Exception):
    pass


def archive_kind(filename: str) -> Optional[str]:
    lowered = filename.lower()
    if lowered.endswith(".zip"):
        return "zip"
    if lowered.endswith((".tar", ".tar.gz", ".tgz")):
        return "tar"
    return None


def is_source_file(filename: str) -> bool:
    base = os.path.basename(filename).lower()
    if base in SOURCE_FILENAMES:
        return True
    return os.path.splitext(base)[1] in SOURCE_EXTENSIONS


def is_supported_upload(filename: str) -> bool:
    return archive_kind(filename) is not None or is_source_file(filename)


def _safe_destination(root: str, member_name: str) -> str:
    if os.path.isabs(member_name) or member_name.startswith(("/", "\\")):
        raise ArchiveError(f"Archive member has an absolute path: {member_name}")
    dest = os.path.realpath(os.path.join(root, member_name))
    if dest != root and not dest.startswith(root + os.sep):
        raise ArchiveError(f"Archive member escapes the extraction directory: {member_name}")
    return dest


def _extract_zip(path: str, dest: str, max_bytes: int) -> int:
    try:
        archive = zipfile.ZipFile(path)
    except (zipfile.BadZipFile, OSError) as e:
        raise ArchiveError(f"Corrupt zip archive: {e}") from e
    with archive:
        members = [m for m in archive.infolist() if not m.is_dir()]
        declared = sum(m.file_size for m in members)
        if declared > max_bytes:
            raise ArchiveError(f"Archive expands to {declared} bytes, exceeding the {max_bytes} byte limit")
        written = 0
        for member in archive.infolist():
            target = _safe_destination(dest, member.filename)
            if member.is_dir():
                os.makedirs(target, exist_ok=True)
                continue
            os.makedirs(os.path.dirname(target), exist_ok=True)
            try:
                with archive.open(member) as src, open(target, "wb") as out:
                    while True:
                        chunk = src.read(64 * 1024)
                        if not chunk:
                            break
                        written += len(chunk)
                        if written > max_bytes:
                            raise ArchiveError(f"Archive expands beyond the {max_bytes} byte limit")
                        out.write(chunk)
            except (zipfile.BadZipFile, zipfile.LargeZipFile, RuntimeError) as e:
                raise ArchiveError(f"Corrupt zip archive: {e}") from e
        return len(members)


def _extract_tar(path: str, dest: str, max_bytes: int) -> int:
    try:
        archive = tarfile.open(path, "r:*")
    except (tarfile.TarError, OSError) as e:
        raise ArchiveError(f"Corrupt tar archive: {e}") from e
    with archive:
        try:
            members = archive.getmembers()
        except (tarfile.TarError, EOFError) as e:
            raise ArchiveError(f"Corrupt tar archive: {e}") from e
        total = 0
        files = []
        for member in members:
            if member.issym() or member.islnk() or member.isdev():
                raise ArchiveError(f"Archive member is a link or device: {member.name}")
            _safe_destination(dest, member.name)
            if member.isfile():
                total += member.size
                files.append(member)
        if total > max_bytes:
            raise ArchiveError(f"Archive expands to {total} bytes, exceeding the {max_bytes} byte limit")
        for member in members:
            target = _safe_destination(dest, member.name)
            if member.isdir():
                os.makedirs(target, exist_ok=True)
                continue
            if not member.isfile():
                continue
            os.makedirs(os.path.dirname(target), exist_ok=True)
            src = archive.extractfile(member)
            if src is None:
                continue
            with src, open(target, "wb") as out:
                shutil.copyfileobj(src, out)
        return len(files)


def extract_upload(path: str, dest: str, max_bytes: int, original_name: Optional[str] = None) -> int:
    """
    Unpack the upload at `path` into the existing directory `dest`.
    Returns the number of files written. Raises ArchiveError.
    """
    name = original_name or os.path.basename(path)
    dest = os.path.realpath(dest)
    kind = archive_kind(name)
    if kind == "zip":
        return _extract_zip(path, dest, max_bytes)
    if kind == "tar":
        return _extract_tar(path, dest, max_bytes)
    if is_source_file(name):
        size = os.path.getsize(path)
        if size > max_bytes:
            raise ArchiveError(f"File is {size} bytes, exceeding the {max_bytes} byte limit")
        shutil.copyfile(path, os.path.join(dest, os.path.basename(name)))
        return 1
    raise ArchiveError(f"Unsupported upload type: {name}")


def count_archive_files(path: str, original_name: Optional[str] = None) -> Optional[int]:
    """Member count of an archive without extracting it, or None when unknown."""
    name = original_name or os.path.basename(path)
    kind = archive_kind(name)
    try:
        if kind == "zip":
            with zipfile.ZipFile(path) as archive:
                return sum(1 for m in archive.infolist() if not m.is_dir())
        if kind == "tar":
            with tarfile.open(path, "r:*") as archive:
                return sum(1 for m in archive.getmembers() if m.isfile())
    except (zipfile.BadZipFile, tarfile.TarError, OSError, EOFError):
        return None
    if is_source_file(name):
        return 1
    return None
