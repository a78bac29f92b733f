"""Run configuration.

Values come from three layers, highest first:
1. command-line flags,
2. the JSON config file (`-c/--configfile`, default DEFAULT_CONFIG_PATH),
3. built-in defaults.

The result is a frozen RunConfig built once per run and handed to each
component; nothing mutates it afterwards.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(os.environ.get("LOG_ANALYTICS_CONFIG") or "/etc/log-analytics/runner.json")
DEFAULT_PID_DIR = Path("/tmp")
DEFAULT_PID_FILE = "log-analytics-runner.pid"
DEFAULT_ENGINE = "log_analytics_runner.tally_engine:TallyEngine"


def load_config_file(path: Path, *, required: bool = False) -> Dict[str, Any]:
    """Read a JSON config object.

    A missing file returns {} unless `required` is set.
    """

    path = Path(path)
    if not path.exists():
        if required:
            raise ConfigError(f"Config file {path} not found")
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return data


def write_json_atomic(path: Path, obj: Dict[str, Any], *, indent: Optional[int] = None) -> None:
    """Write `obj` as JSON to a sibling temp file, then rename it over `path`."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=indent, sort_keys=True)
        f.write("\n")
    os.replace(tmp, path)


def opt_int(value: Any, key: str) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Config key {key!r} must be an integer, got {value!r}") from None


@dataclass(frozen=True)
class EngineSettings:
    """Construction arguments handed to the analysis engine."""

    config_path: Path
    sources: Tuple[str, ...]
    debug: bool
    rebuild: bool
    lock_dir: Path
    lock_filename: str
    tz_offset: int


@dataclass(frozen=True)
class RunConfig:
    config_path: Path = DEFAULT_CONFIG_PATH
    sources: Tuple[str, ...] = ()
    rebuild: bool = False
    build_date: Optional[str] = None
    start: Optional[str] = None
    stop: Optional[str] = None
    jobs: int = 1
    preserve_months: Optional[int] = None
    pid_dir: Path = DEFAULT_PID_DIR
    pid_file: str = DEFAULT_PID_FILE
    tz_offset: int = 0
    debug: bool = False
    engine: str = DEFAULT_ENGINE
    shutdown_grace_seconds: Optional[float] = None
    mp_start_method: Optional[str] = None
    file_values: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def lock_path(self) -> Path:
        return self.pid_dir / self.pid_file

    @property
    def workers_state_path(self) -> Path:
        return self.pid_dir / f"{self.pid_file}.workers.json"

    def engine_settings(self) -> EngineSettings:
        return EngineSettings(
            config_path=self.config_path,
            sources=tuple(self.sources),
            debug=self.debug,
            rebuild=self.rebuild,
            lock_dir=self.pid_dir,
            lock_filename=self.pid_file,
            tz_offset=self.tz_offset,
        )

    @classmethod
    def from_sources(
        cls,
        *,
        config_path: Optional[Path] = None,
        file_values: Optional[Dict[str, Any]] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> "RunConfig":
        """Merge config-file values with CLI overrides (None means "not given")."""

        cfg = dict(file_values or {})
        over = {k: v for k, v in (overrides or {}).items() if v is not None}

        for k, v in over.items():
            if k in cfg and cfg[k] != v:
                logger.info(f"Overriding {k}: {cfg[k]!r} -> {v!r}")

        def pick(key: str, file_key: Optional[str] = None, default: Any = None) -> Any:
            if key in over:
                return over[key]
            fk = file_key or key
            if fk in cfg and cfg[fk] is not None:
                return cfg[fk]
            return default

        jobs = opt_int(pick("jobs", default=1), "jobs")
        if jobs is None or jobs < 0:
            raise ConfigError(f"jobs must be a non-negative integer, got {jobs!r}")

        preserve = opt_int(pick("preserve_months", "preserve"), "preserve")
        if preserve is not None and preserve < 0:
            raise ConfigError(f"preserve must be a non-negative integer, got {preserve!r}")

        grace = pick("shutdown_grace_seconds")
        if grace is not None:
            try:
                grace = float(grace)
            except (TypeError, ValueError):
                raise ConfigError(f"shutdown_grace_seconds must be a number, got {grace!r}") from None

        return cls(
            config_path=Path(config_path) if config_path else DEFAULT_CONFIG_PATH,
            sources=tuple(str(s) for s in (over.get("sources") or ())),
            rebuild=bool(over.get("rebuild", False)),
            build_date=over.get("build_date"),
            start=over.get("start"),
            stop=over.get("stop"),
            jobs=int(jobs),
            preserve_months=preserve,
            pid_dir=Path(pick("pid_dir", default=DEFAULT_PID_DIR)).expanduser(),
            pid_file=str(pick("pid_file", default=DEFAULT_PID_FILE)),
            tz_offset=int(over.get("tz_offset", 0)),
            debug=bool(over.get("debug", False)),
            engine=str(pick("engine", default=DEFAULT_ENGINE)),
            shutdown_grace_seconds=grace,
            mp_start_method=pick("mp_start_method"),
            file_values=cfg,
        )
