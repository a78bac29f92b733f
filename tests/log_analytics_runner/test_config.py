"""Tests for config-file loading and flag/file/default precedence."""

import json
from pathlib import Path

import pytest

from log_analytics_runner.config import (
    DEFAULT_ENGINE,
    DEFAULT_PID_DIR,
    DEFAULT_PID_FILE,
    RunConfig,
    load_config_file,
    write_json_atomic,
)
from log_analytics_runner.errors import ConfigError


def test_defaults_without_file_or_flags():
    """With nothing given every field falls back to its default."""
    cfg = RunConfig.from_sources()
    assert cfg.jobs == 1
    assert cfg.pid_dir == DEFAULT_PID_DIR
    assert cfg.pid_file == DEFAULT_PID_FILE
    assert cfg.engine == DEFAULT_ENGINE
    assert cfg.preserve_months is None
    assert cfg.shutdown_grace_seconds is None
    assert cfg.lock_path == DEFAULT_PID_DIR / DEFAULT_PID_FILE


def test_flag_beats_file_beats_default(tmp_path):
    """A given flag overrides the file; a flag left as None does not."""
    cfg = RunConfig.from_sources(
        config_path=tmp_path / "runner.json",
        file_values={"jobs": 4, "pid_dir": str(tmp_path / "run"), "preserve": 12, "pid_file": "x.pid"},
        overrides={"jobs": 2, "pid_dir": None, "preserve_months": None},
    )
    assert cfg.jobs == 2
    assert cfg.pid_dir == tmp_path / "run"
    assert cfg.preserve_months == 12
    assert cfg.lock_path == tmp_path / "run" / "x.pid"
    assert cfg.workers_state_path == tmp_path / "run" / "x.pid.workers.json"


def test_sources_and_scope_come_from_flags_only():
    """Run-scope values are never read from the config file."""
    cfg = RunConfig.from_sources(
        file_values={"build_date": "2020", "rebuild": True},
        overrides={"sources": [Path("/var/log/a.log")], "start": "08:00"},
    )
    assert cfg.sources == ("/var/log/a.log",)
    assert cfg.build_date is None
    assert cfg.rebuild is False
    assert cfg.start == "08:00"


@pytest.mark.parametrize("jobs", [-1, "many"])
def test_invalid_jobs_rejected(jobs):
    with pytest.raises(ConfigError, match="jobs"):
        RunConfig.from_sources(file_values={"jobs": jobs})


def test_negative_preserve_rejected():
    with pytest.raises(ConfigError, match="preserve"):
        RunConfig.from_sources(overrides={"preserve_months": -3})


def test_grace_seconds_parsed_as_float():
    cfg = RunConfig.from_sources(file_values={"shutdown_grace_seconds": "2.5"})
    assert cfg.shutdown_grace_seconds == 2.5
    with pytest.raises(ConfigError):
        RunConfig.from_sources(file_values={"shutdown_grace_seconds": "soon"})


def test_engine_settings_mirror_run_config(tmp_path):
    cfg = RunConfig(
        config_path=tmp_path / "c.json",
        sources=("a.log",),
        rebuild=True,
        pid_dir=tmp_path,
        pid_file="run.pid",
        tz_offset=-5,
        debug=True,
    )
    s = cfg.engine_settings()
    assert s.config_path == tmp_path / "c.json"
    assert s.sources == ("a.log",)
    assert s.rebuild is True
    assert s.debug is True
    assert s.lock_dir == tmp_path
    assert s.lock_filename == "run.pid"
    assert s.tz_offset == -5


def test_load_missing_file(tmp_path):
    """A missing default config is fine; a missing explicit one is not."""
    assert load_config_file(tmp_path / "nope.json") == {}
    with pytest.raises(ConfigError, match="not found"):
        load_config_file(tmp_path / "nope.json", required=True)


def test_load_rejects_non_object(tmp_path):
    p = tmp_path / "runner.json"
    p.write_text(json.dumps([1, 2, 3]), encoding="utf-8")
    with pytest.raises(ConfigError, match="JSON object"):
        load_config_file(p)


def test_load_rejects_bad_json(tmp_path):
    p = tmp_path / "runner.json"
    p.write_text("{jobs: 4", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config_file(p)


def test_load_round_trips_object(tmp_path):
    p = tmp_path / "runner.json"
    p.write_text(json.dumps({"jobs": 3, "tally": {"state_dir": "/x"}}), encoding="utf-8")
    assert load_config_file(p, required=True) == {"jobs": 3, "tally": {"state_dir": "/x"}}


def test_write_json_atomic_replaces_file(tmp_path):
    target = tmp_path / "nested" / "state.json"
    write_json_atomic(target, {"b": 1, "a": [1, 2]})
    write_json_atomic(target, {"a": 2}, indent=2)
    assert json.loads(target.read_text(encoding="utf-8")) == {"a": 2}
    assert [p.name for p in target.parent.iterdir()] == ["state.json"]
