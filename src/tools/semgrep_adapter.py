# src/tools/semgrep_adapter.py
"""
SemgrepAdapter: run the external analyzer as a supervised child process.

stdout is read chunk by chunk. A parse is attempted when the buffer ends in
a closing brace and has doubled since the last attempt, or when stdout goes
idle; once it holds a complete results document the run resolves, even if
the process has not exited yet. The deadline is enforced with SIGTERM, then SIGKILL after a
grace period.
"""
import asyncio
import json
import logging
import re
import time
from collections import deque
from typing import Any, Dict, List, Optional

from engine.config import settings
from engine.errors import AnalysisProcessError, AnalysisTimeoutError
from engine.normalizer import relative_path
from engine.records import Stage, Tier
from .base import AnalysisOutcome, ProgressCallback, SecurityToolAdapter

# Rule bundles per tier. A tier always runs its whole bundle set.
RULE_BUNDLES = {
    Tier.FAST: ["p/security-audit", "p/secrets"],
    Tier.DEEP: ["p/security-audit", "p/secrets", "p/owasp-top-ten", "p/cwe-top-25"],
}

EXCLUDE_GLOBS = [
    ".git",
    "node_modules",
    "vendor",
    "dist",
    "build",
    "target",
    "coverage",
    "__pycache__",
    ".venv",
    "venv",
    ".next",
    "*.min.js",
]

# 1 means the run completed and reported findings
SUCCESS_EXIT_CODES = {0, 1}

READ_CHUNK = 64 * 1024
STDERR_TAIL_LINES = 50
EARLY_EXIT_WAIT = 1.0
# stdout silent this long counts as idle and triggers a parse attempt
IDLE_PARSE_DELAY = 0.25
# documents larger than this are parsed off the event loop
THREAD_PARSE_BYTES = 1024 * 1024

WHITESPACE = b" \t\r\n"

SCANNING_RE = re.compile(r"Scanning\s+(\d+)\s+files?", re.IGNORECASE)
PROGRESS_RE = re.compile(r"(\d+)\s*/\s*(\d+)\s+files?", re.IGNORECASE)
RAN_RE = re.compile(r"Ran\s+\d+\s+rules?\s+on\s+(\d+)\s+files?", re.IGNORECASE)
FILE_RE = re.compile(
    r"(?:Scanning|Analyzing|Processing)\s+(?:file:?\s+)?['\"]?(?P<path>[^\s'\"]+\.[A-Za-z0-9]+)['\"]?\s*$",
    re.IGNORECASE,
)


def ends_with_brace(buffer) -> bool:
    """True when the last non-whitespace byte of `buffer` is a closing brace."""
    index = len(buffer) - 1
    while index >= 0 and buffer[index] in WHITESPACE:
        index -= 1
    return index >= 0 and buffer[index] == ord("}")


def parse_document(buffer) -> Optional[Dict[str, Any]]:
    """Return the analyzer document if `buffer` holds a complete one."""
    if not ends_with_brace(buffer):
        return None
    try:
        doc = json.loads(buffer)
    except ValueError:
        return None
    if not isinstance(doc, dict) or not isinstance(doc.get("results"), list):
        return None
    return doc


async def parse_buffer(buffer) -> Optional[Dict[str, Any]]:
    if not ends_with_brace(buffer):
        return None
    if len(buffer) > THREAD_PARSE_BYTES:
        return await asyncio.to_thread(parse_document, buffer)
    return parse_document(buffer)


def progress_from_stderr(line: str) -> Optional[Dict[str, Any]]:
    match = PROGRESS_RE.search(line)
    if match:
        return {"processed_files": int(match.group(1)), "total_files": int(match.group(2))}
    match = RAN_RE.search(line)
    if match:
        count = int(match.group(1))
        return {"processed_files": count, "total_files": count}
    match = SCANNING_RE.search(line)
    if match:
        return {"processed_files": 0, "total_files": int(match.group(1))}
    match = FILE_RE.search(line)
    if match:
        return {"current_file": match.group("path")}
    return None


class SemgrepAdapter(SecurityToolAdapter):
    def __init__(
        self,
        command: Optional[List[str]] = None,
        max_memory_mb: Optional[int] = None,
        max_target_bytes: Optional[int] = None,
        rule_timeout: Optional[int] = None,
        kill_grace: Optional[float] = None,
    ):
        self.command = list(command or settings.analyzer_command)
        self.max_memory_mb = max_memory_mb or settings.analyzer_max_memory_mb
        self.max_target_bytes = max_target_bytes or settings.analyzer_max_target_bytes
        self.rule_timeout = rule_timeout or settings.analyzer_rule_timeout_seconds
        self.kill_grace = settings.kill_grace_seconds if kill_grace is None else kill_grace

    def build_command(self, target: str, tier) -> List[str]:
        cmd = self.command + [
            "scan",
            "--json",
            "--quiet",
            "--metrics=off",
            "--disable-version-check",
        ]
        for bundle in RULE_BUNDLES[Tier(tier)]:
            cmd += ["--config", bundle]
        for glob in EXCLUDE_GLOBS:
            cmd += ["--exclude", glob]
        cmd += [
            "--max-memory", str(self.max_memory_mb),
            "--max-target-bytes", str(self.max_target_bytes),
            "--timeout", str(self.rule_timeout),
            target,
        ]
        return cmd

    async def run(
        self,
        target: str,
        tier,
        deadline: float,
        on_progress: Optional[ProgressCallback] = None,
    ) -> AnalysisOutcome:
        def report(data: Dict[str, Any]):
            if on_progress is not None:
                on_progress(Stage.SCANNING_FILE.value, data)

        cmd = self.build_command(target, tier)
        logging.info(f"Running analyzer ({Tier(tier).value}, deadline {deadline:.0f}s): {' '.join(cmd)}")
        started = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=target,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise AnalysisProcessError(f"Analyzer could not be started: {e}") from e
        report({"processed_files": 0})

        buffer = bytearray()
        stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)

        async def read_stdout() -> Optional[Dict[str, Any]]:
            attempted_at = 0
            while True:
                idle = False
                try:
                    chunk = await asyncio.wait_for(proc.stdout.read(READ_CHUNK), timeout=IDLE_PARSE_DELAY)
                except asyncio.TimeoutError:
                    idle = True
                else:
                    if not chunk:
                        return None
                    buffer.extend(chunk)
                size = len(buffer)
                if size == attempted_at or not (idle or size >= 2 * attempted_at):
                    continue
                if not ends_with_brace(buffer):
                    continue
                attempted_at = size
                doc = await parse_buffer(buffer)
                if doc is not None:
                    return doc

        async def read_stderr():
            while True:
                line = await proc.stderr.readline()
                if not line:
                    return
                text = line.decode("utf-8", "replace").rstrip()
                stderr_tail.append(text)
                data = progress_from_stderr(text)
                if data is not None:
                    if "current_file" in data:
                        data["current_file"] = relative_path(target, data["current_file"])
                    report(data)

        stderr_task = asyncio.ensure_future(read_stderr())
        try:
            try:
                doc = await asyncio.wait_for(read_stdout(), timeout=deadline)
            except asyncio.TimeoutError:
                await self.terminate(proc)
                return await self._recover(
                    buffer, None, started, "\n".join(stderr_tail),
                    AnalysisTimeoutError(f"Analyzer exceeded its {deadline:.0f}s deadline", stderr="\n".join(stderr_tail)),
                    f"Analyzer timed out after {deadline:.0f}s; results are partial",
                )

            if doc is not None:
                early = False
                try:
                    await asyncio.wait_for(proc.wait(), timeout=EARLY_EXIT_WAIT)
                except asyncio.TimeoutError:
                    early = True
                    logging.info("Analyzer output complete before exit; terminating it")
                    await self.terminate(proc)
                if early or proc.returncode in SUCCESS_EXIT_CODES:
                    return self._outcome(doc, None if early else proc.returncode, started, "\n".join(stderr_tail), early=early)
            else:
                remaining = max(deadline - (time.monotonic() - started), 0)
                try:
                    await asyncio.wait_for(proc.wait(), timeout=max(remaining, self.kill_grace))
                except asyncio.TimeoutError:
                    await self.terminate(proc)

            code = proc.returncode
            stderr_text = "\n".join(stderr_tail)
            if code in SUCCESS_EXIT_CODES:
                doc = await parse_buffer(buffer)
                if doc is None:
                    raise AnalysisProcessError("Analyzer produced no parseable output", exit_code=code, stderr=stderr_text)
                return self._outcome(doc, code, started, stderr_text)
            return await self._recover(
                buffer, code, started, stderr_text,
                AnalysisProcessError(f"Analyzer failed with exit code {code}", exit_code=code, stderr=stderr_text),
                f"Analyzer exited with code {code}; results recovered from partial output",
            )
        except asyncio.CancelledError:
            await self.terminate(proc)
            raise
        finally:
            if proc.returncode is None:
                await self.terminate(proc)
            try:
                await asyncio.wait_for(stderr_task, timeout=self.kill_grace)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                stderr_task.cancel()

    def _outcome(self, doc, code, started, stderr_tail, early=False, partial=False, warnings=None) -> AnalysisOutcome:
        warnings = list(warnings or [])
        errors = doc.get("errors") or []
        if errors:
            warnings.append(f"Analyzer reported {len(errors)} error(s)")
        return AnalysisOutcome(
            raw=doc,
            exit_code=code,
            elapsed_seconds=time.monotonic() - started,
            early=early,
            partial=partial,
            warnings=warnings,
            stderr_tail=stderr_tail,
        )

    async def _recover(self, buffer, code, started, stderr_text, error, warning) -> AnalysisOutcome:
        doc = await parse_buffer(buffer)
        if doc is None:
            raise error
        logging.warning(warning)
        return self._outcome(doc, code, started, stderr_text, partial=True, warnings=[warning])

    async def terminate(self, proc) -> None:
        """SIGTERM, then SIGKILL once the grace period has passed."""
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace)
        except asyncio.TimeoutError:
            logging.warning(f"Analyzer pid={proc.pid} ignored SIGTERM; killing it")
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()
