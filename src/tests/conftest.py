# src/tests/conftest.py
import os
import tempfile

# must be set before engine.config is first imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCAN_WORK_DIR", tempfile.mkdtemp(prefix="codescan-tests-"))

import asyncio
import pytest
from sqlalchemy.exc import OperationalError

from engine.db import make_session_factory
from engine.enrichment import EnrichmentAdapter
from engine.persistence import PersistenceGateway
from engine.progress import ProgressTracker
from engine.acquirer import TargetAcquirer
from engine.supervisor import ScanSupervisor
from tools.base import AnalysisOutcome, SecurityToolAdapter


def db_down(statement="COMMIT"):
    return OperationalError(statement, {}, Exception("database is unavailable"))


class BrokenSession:
    """Session whose every database call fails."""

    def add(self, *args, **kwargs):
        pass

    def add_all(self, *args, **kwargs):
        pass

    def get(self, *args, **kwargs):
        raise db_down("SELECT")

    def query(self, *args, **kwargs):
        raise db_down("SELECT")

    def commit(self):
        raise db_down()

    def rollback(self):
        pass

    def close(self):
        pass


class FailingFindingsFactory:
    """Real sessions, except that inserting findings fails."""

    def __init__(self, factory):
        self.factory = factory

    def __call__(self):
        session = self.factory()

        def add_all(*args, **kwargs):
            raise db_down("INSERT INTO findings")

        session.add_all = add_all
        return session


class StubAnalyzer(SecurityToolAdapter):
    def __init__(self, raw=None, error=None, delay=0.0):
        self.raw = raw if raw is not None else {"results": [], "errors": []}
        self.error = error
        self.delay = delay
        self.targets = []
        self.deadlines = []

    async def run(self, target, tier, deadline, on_progress=None):
        self.targets.append(target)
        self.deadlines.append(deadline)
        if on_progress is not None:
            on_progress("scanning_file", {"processed_files": 1, "total_files": 1})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return AnalysisOutcome(raw=self.raw, exit_code=0, elapsed_seconds=0.01)


def semgrep_result(rule_id, path, severity="ERROR", line=1, **metadata):
    return {
        "check_id": rule_id,
        "path": path,
        "start": {"line": line, "col": 1},
        "end": {"line": line, "col": 10},
        "extra": {
            "severity": severity,
            "message": f"{rule_id} matched",
            "lines": "query = 'SELECT * FROM users WHERE id=' + user_id",
            "metadata": metadata,
        },
    }


@pytest.fixture
def session_factory():
    return make_session_factory("sqlite://")


@pytest.fixture
def gateway(session_factory):
    return PersistenceGateway(session_factory)


@pytest.fixture
def make_supervisor(tmp_path, session_factory):
    def build(analyzer, factory=None, timeout=None):
        return ScanSupervisor(
            PersistenceGateway(factory or session_factory),
            ProgressTracker(),
            acquirer=TargetAcquirer(scans_dir=str(tmp_path / "scans")),
            analyzer=analyzer,
            enricher=EnrichmentAdapter(url=""),
            timeout=timeout,
            upload_dir=str(tmp_path / "uploads"),
        )
    return build


@pytest.fixture
def source_upload(tmp_path):
    uploads = tmp_path / "uploads"
    uploads.mkdir(exist_ok=True)
    path = uploads / "app.py"
    path.write_text("import os\nquery = 'SELECT * FROM users WHERE id=' + user_id\n")
    return path
