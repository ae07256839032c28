# src/tools/git_adapter.py
"""
Git plumbing for repository scans: URL normalization and shallow clones.

Access tokens only ever appear in the argv of the clone process. They are
stripped from the clone's remote afterwards and redacted from any error text.
"""
import asyncio
import logging
import os
import re
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import urlsplit, urlunsplit

SEGMENT = r"[A-Za-z0-9_.-]+"
HOST = r"[A-Za-z0-9.-]+\.[A-Za-z]{2,}(?::\d+)?"

HTTPS_RE = re.compile(rf"^https?://(?:[^@/\s]+@)?(?P<host>{HOST})/(?P<owner>{SEGMENT})/(?P<repo>{SEGMENT})/?$")
SSH_RE = re.compile(rf"^(?:ssh://)?[A-Za-z0-9_.-]+@(?P<host>{HOST})[:/](?P<owner>{SEGMENT})/(?P<repo>{SEGMENT})/?$")
SHORT_RE = re.compile(rf"^(?P<host>{HOST})/(?P<owner>{SEGMENT})/(?P<repo>{SEGMENT})/?$")


class GitError(Exception):
    pass


class GitTimeoutError(GitError):
    pass


@dataclass(frozen=True)
class RepoRef:
    host: str
    owner: str
    repo: str

    @property
    def clone_url(self) -> str:
        return f"https://{self.host}/{self.owner}/{self.repo}.git"

    def authenticated_url(self, token: Optional[str]) -> str:
        if not token:
            return self.clone_url
        return f"https://{token}@{self.host}/{self.owner}/{self.repo}.git"


def parse_repo_url(repo_url: str) -> RepoRef:
    """
    Fold HTTPS, SSH and short host/owner/repo forms into one RepoRef.
    Raises ValueError for anything else.
    """
    if not repo_url or not repo_url.strip():
        raise ValueError("Repository URL is required")
    text = repo_url.strip()
    for pattern in (HTTPS_RE, SSH_RE, SHORT_RE):
        match = pattern.match(text)
        if match:
            repo = match.group("repo")
            if repo.endswith(".git"):
                repo = repo[: -len(".git")]
            owner = match.group("owner")
            if not repo or repo in (".", "..") or owner in (".", ".."):
                break
            return RepoRef(host=match.group("host").lower(), owner=owner, repo=repo)
    raise ValueError("Invalid repository URL format")


def redact(text: str, token: Optional[str]) -> str:
    if not text or not token:
        return text
    return text.replace(token, "***")


def strip_credentials(url: str) -> str:
    """Drop any userinfo (user:token@) from a URL so it can be stored and logged."""
    text = (url or "").strip()
    try:
        parts = urlsplit(text)
    except ValueError:
        parts = None
    if parts is not None and parts.scheme and "@" in parts.netloc:
        return urlunsplit(parts._replace(netloc=parts.netloc.rsplit("@", 1)[1]))
    head, sep, tail = text.partition("/")
    if "@" in head:
        head = head.rsplit("@", 1)[1]
    return head + sep + tail


async def _run_git(args, cwd: Optional[str] = None, timeout: Optional[float] = None, env: Optional[Dict[str, str]] = None):
    proc = await asyncio.create_subprocess_exec(
        "git",
        *args,
        cwd=cwd,
        env=env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise GitTimeoutError(f"git {args[0]} timed out after {timeout}s")
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise
    return proc.returncode, stdout.decode("utf-8", "replace"), stderr.decode("utf-8", "replace")


async def shallow_clone(
    ref: RepoRef,
    dest: str,
    branch: Optional[str] = None,
    token: Optional[str] = None,
    timeout: Optional[float] = None,
) -> None:
    """Clone the newest commit of `ref` into `dest` (which must be empty)."""
    env = dict(os.environ)
    env["GIT_TERMINAL_PROMPT"] = "0"
    args = ["clone", "--depth", "1"]
    if branch:
        args += ["--branch", branch, "--single-branch"]
    args += ["--", ref.authenticated_url(token), dest]

    try:
        code, _, stderr = await _run_git(args, timeout=timeout, env=env)
    except FileNotFoundError as e:
        raise GitError("git is not installed or not on PATH") from e
    if code != 0:
        raise GitError(redact(stderr.strip(), token) or f"git clone exited with code {code}")
    if token:
        await _run_git(["remote", "set-url", "origin", ref.clone_url], cwd=dest, timeout=30)
    logging.info(f"Cloned {ref.clone_url} into {dest}")


async def head_info(path: str) -> Dict[str, Optional[object]]:
    info: Dict[str, Optional[object]] = {"branch": None, "commit": None}
    code, stdout, _ = await _run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=path, timeout=30)
    if code == 0:
        info["branch"] = stdout.strip() or None
    code, stdout, _ = await _run_git(["log", "-1", "--format=%H%x1f%s%x1f%an%x1f%aI"], cwd=path, timeout=30)
    if code == 0 and stdout.strip():
        parts = stdout.strip().split("\x1f")
        if len(parts) == 4:
            info["commit"] = {"hash": parts[0], "message": parts[1], "author": parts[2], "date": parts[3]}
    return info
