"""Pytest configuration and shared fixtures."""

import json
import os
import time
from pathlib import Path

import pytest

from log_analytics_runner.config import RunConfig


@pytest.fixture
def repo_root():
    """Return the repository root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def src_path(repo_root):
    """Return the src directory path."""
    return repo_root / "src"


class RecordingEngine:
    """Analysis engine fake that records every call as a JSON line.

    Events go to a file (not memory) so calls made inside forked worker
    processes are visible to the test.
    """

    def __init__(self, events_path: Path, *, gate_path: Path | None = None, parse_sleep: float = 0.0):
        self.events_path = Path(events_path)
        self.gate_path = gate_path
        self.parse_sleep = parse_sleep

    def _record(self, kind: str, **data) -> None:
        rec = {"kind": kind, "pid": os.getpid(), "t": time.time(), **data}
        line = (json.dumps(rec, sort_keys=True) + "\n").encode("utf-8")
        fd = os.open(str(self.events_path), os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
        try:
            os.write(fd, line)
        finally:
            os.close(fd)

    def events(self, kind: str | None = None) -> list[dict]:
        if not self.events_path.exists():
            return []
        out = [json.loads(x) for x in self.events_path.read_text(encoding="utf-8").splitlines() if x.strip()]
        return [e for e in out if kind is None or e["kind"] == kind]

    def partition(self, sources, scope, budget):
        self._record("partition", sources=list(sources), budget=budget)
        shards = [[] for _ in range(max(1, budget))]
        for i, s in enumerate(sources):
            shards[i % len(shards)].append(s)
        return [s for s in shards if s]

    def parse(self, sources, scope):
        self._record("parse_start", sources=list(sources))
        if any(Path(s).name.startswith("bad") for s in sources):
            raise RuntimeError(f"cannot parse {sources}")
        if self.gate_path is not None:
            deadline = time.time() + 30
            while not self.gate_path.exists() and time.time() < deadline:
                time.sleep(0.02)
        if self.parse_sleep:
            time.sleep(self.parse_sleep)
        self._record("parse_end", sources=list(sources))
        return len(sources)

    def build_reports(self, scope, retention_months=None):
        self._record(
            "build_reports",
            build_date=scope.build_date,
            granularity=scope.granularity,
            rebuild=scope.rebuild,
            retention_months=retention_months,
        )

    def persist_checkpoint(self):
        self._record("checkpoint")
        if self.gate_path is not None:
            self.gate_path.touch()


@pytest.fixture
def recording_engine(tmp_path):
    return RecordingEngine(tmp_path / "events.jsonl")


@pytest.fixture
def make_log(tmp_path):
    """Create a log file with the given lines (or a single filler line)."""

    def _make(name: str, lines=None) -> Path:
        p = tmp_path / "logs" / name
        p.parent.mkdir(parents=True, exist_ok=True)
        body = lines if lines is not None else ["2024-03-15 10:00:00 GET /"]
        p.write_text("".join(f"{line}\n" for line in body), encoding="utf-8")
        return p

    return _make


@pytest.fixture
def run_config(tmp_path):
    """Factory for RunConfig values rooted in tmp_path."""

    pid_dir = tmp_path / "run"
    pid_dir.mkdir()

    def _make(**kwargs) -> RunConfig:
        base = {
            "config_path": tmp_path / "missing-config.json",
            "pid_dir": pid_dir,
            "mp_start_method": "fork",
        }
        base.update(kwargs)
        if "sources" in base:
            base["sources"] = tuple(str(s) for s in base["sources"])
        return RunConfig(**base)

    return _make
