"""Tests for the parse scheduler: worker budget, failures, stop hooks."""

import json
import os
import signal
import threading
import time

import pytest

from conftest import RecordingEngine
from log_analytics_runner import scheduler as scheduler_mod
from log_analytics_runner.errors import EngineError
from log_analytics_runner.scheduler import ParseScheduler
from log_analytics_runner.scope import TemporalScope


class OneShardPerSource(RecordingEngine):
    """Partitions into one shard per source, ignoring the budget."""

    def partition(self, sources, scope, budget):
        self._record("partition", sources=list(sources), budget=budget)
        return [[s] for s in sources]


def _wait_for(cond, timeout=20.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if cond():
            return
        time.sleep(0.02)
    raise AssertionError("condition not met in time")


def _max_overlap(engine):
    """Largest number of parse intervals open at the same instant."""
    points = []
    for e in engine.events("parse_start"):
        points.append((e["t"], 1))
    for e in engine.events("parse_end"):
        points.append((e["t"], -1))
    # Ends sort before starts at the same timestamp.
    points.sort(key=lambda p: (p[0], p[1]))
    cur = peak = 0
    for _, d in points:
        cur += d
        peak = max(peak, cur)
    return peak


@pytest.fixture
def scheduler(tmp_path):
    return ParseScheduler(
        state_path=tmp_path / "run" / "runner.pid.workers.json",
        start_method="fork",
        poll_interval=0.05,
    )


def test_budget_one_parses_in_process(tmp_path, recording_engine, scheduler):
    outcome = scheduler.schedule(TemporalScope(), 1, ["a.log", "b.log"], recording_engine)

    assert outcome.mode == "sequential"
    assert outcome.result == 2
    starts = recording_engine.events("parse_start")
    assert len(starts) == 1
    assert starts[0]["pid"] == os.getpid()
    assert starts[0]["sources"] == ["a.log", "b.log"]
    assert recording_engine.events("partition") == []
    assert scheduler.launched_workers() == []


def test_budget_zero_is_sequential(recording_engine, scheduler):
    outcome = scheduler.schedule(TemporalScope(), 0, ["a.log"], recording_engine)
    assert outcome.mode == "sequential"


def test_sequential_failure_becomes_engine_error(recording_engine, scheduler):
    with pytest.raises(EngineError, match="Parse failed"):
        scheduler.schedule(TemporalScope(), 1, ["bad.log"], recording_engine)


def test_parallel_never_exceeds_budget(tmp_path, scheduler):
    engine = OneShardPerSource(tmp_path / "events.jsonl", parse_sleep=0.3)
    sources = [f"s{i}.log" for i in range(6)]

    outcome = scheduler.schedule(TemporalScope(), 2, sources, engine)

    assert outcome.mode == "parallel"
    assert outcome.shards == 6
    assert outcome.succeeded == 6
    assert not outcome.cancelled
    assert scheduler.peak_workers == 2
    assert _max_overlap(engine) <= 2
    assert sorted(e["sources"][0] for e in engine.events("parse_end")) == sorted(sources)
    assert all(e["pid"] != os.getpid() for e in engine.events("parse_start"))


def test_partition_receives_budget_and_scope(recording_engine, scheduler):
    outcome = scheduler.schedule(TemporalScope(), 3, ["a.log", "b.log"], recording_engine)
    (part,) = recording_engine.events("partition")
    assert part["budget"] == 3
    assert outcome.shards == 2


def test_failed_worker_does_not_stop_siblings(tmp_path, scheduler):
    engine = OneShardPerSource(tmp_path / "events.jsonl", parse_sleep=0.2)

    with pytest.raises(EngineError) as exc:
        scheduler.schedule(TemporalScope(), 2, ["a.log", "bad.log", "c.log"], engine)

    assert exc.value.failed_shards == [["bad.log"]]
    assert "1 of 3" in str(exc.value)
    finished = sorted(e["sources"][0] for e in engine.events("parse_end"))
    assert finished == ["a.log", "c.log"]


def test_stop_launching_skips_pending_shards(tmp_path, scheduler):
    gate = tmp_path / "gate"
    engine = OneShardPerSource(tmp_path / "events.jsonl", gate_path=gate)
    sources = ["a.log", "b.log", "c.log", "d.log"]
    seen_state = {}

    def _state():
        try:
            return json.loads(scheduler.state_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}

    def _stop_when_busy():
        _wait_for(lambda: len(engine.events("parse_start")) == 2 and len(_state().get("workers", [])) == 2)
        seen_state.update(_state())
        scheduler.stop_launching()
        gate.touch()

    helper = threading.Thread(target=_stop_when_busy)
    helper.start()
    outcome = scheduler.schedule(TemporalScope(), 2, sources, engine)
    helper.join()

    assert outcome.cancelled
    assert outcome.succeeded == 2
    assert outcome.skipped_shards == [["c.log"], ["d.log"]]
    assert len(engine.events("parse_start")) == 2
    assert seen_state["coordinator_pid"] == os.getpid()
    assert len(seen_state["workers"]) == 2


def test_wait_for_workers_escalates_to_kill(tmp_path, scheduler, monkeypatch):
    monkeypatch.setattr(scheduler_mod, "KILL_AFTER_TERMINATE_SECONDS", 0.2)
    # The gate never opens; workers ignore SIGTERM, so only SIGKILL ends them.
    engine = OneShardPerSource(tmp_path / "events.jsonl", gate_path=tmp_path / "never")
    errors = []

    def _run():
        try:
            scheduler.schedule(TemporalScope(), 2, ["a.log", "b.log"], engine)
        except EngineError as e:
            errors.append(e)

    runner = threading.Thread(target=_run)
    runner.start()
    _wait_for(lambda: len(engine.events("parse_start")) == 2)

    t0 = time.monotonic()
    scheduler.wait_for_workers(grace=0.2)
    assert time.monotonic() - t0 < 10

    runner.join(10)
    assert not runner.is_alive()
    assert all(r.process.exitcode == -signal.SIGKILL for r in scheduler.launched_workers())
    assert len(errors) == 1
    assert len(errors[0].failed_shards) == 2
    assert engine.events("parse_end") == []


def test_wait_for_workers_without_workers_returns(scheduler):
    scheduler.wait_for_workers(grace=0)
    assert scheduler.stopping


def test_state_file_is_cleared_for_good(recording_engine, scheduler):
    scheduler.schedule(TemporalScope(), 2, ["a.log", "b.log"], recording_engine)
    state = json.loads(scheduler.state_path.read_text(encoding="utf-8"))
    assert state["workers"] == []

    scheduler.clear_temp_state(final=True)
    assert not scheduler.state_path.exists()

    scheduler.wait_for_workers()
    assert not scheduler.state_path.exists()


def test_no_launch_after_stop(recording_engine, scheduler):
    scheduler.stop_launching()
    outcome = scheduler.schedule(TemporalScope(), 2, ["a.log", "b.log"], recording_engine)
    assert outcome.cancelled
    assert outcome.succeeded == 0
    assert recording_engine.events("parse_start") == []
