"""Contract between the run coordinator and the analysis engine.

The coordinator never looks inside the engine. It relies on four calls:

  parse(sources, scope)          parse a shard of log sources (may run in a
                                 worker process, so the engine must pickle)
  partition(sources, scope, budget)
                                 split sources into at most `budget` shards
  build_reports(scope, months)   build reports, optionally pruning old data
  persist_checkpoint()           flush the resumable read positions now

Engines are selected by the `engine` config key ("module:Class") and built
from an EngineSettings value.
"""

from __future__ import annotations

import importlib
from typing import Any, List, Optional, Protocol, Sequence, runtime_checkable

from .config import EngineSettings
from .errors import ConfigError
from .scope import TemporalScope


@runtime_checkable
class AnalysisEngine(Protocol):
    def parse(self, sources: Sequence[str], scope: TemporalScope) -> Any: ...

    def partition(self, sources: Sequence[str], scope: TemporalScope, budget: int) -> List[List[str]]: ...

    def build_reports(self, scope: TemporalScope, retention_months: Optional[int] = None) -> Any: ...

    def persist_checkpoint(self) -> None: ...


def load_engine_class(spec: str) -> type:
    module_path, sep, attr = spec.partition(":")
    if not sep or not module_path or not attr:
        raise ConfigError(f"Engine must be given as 'module:Class', got {spec!r}")
    try:
        mod = importlib.import_module(module_path)
    except ImportError as e:
        raise ConfigError(f"Cannot import engine module {module_path!r}: {e}") from e
    cls = getattr(mod, attr, None)
    if cls is None:
        raise ConfigError(f"Module {module_path} has no attribute {attr!r}")
    return cls


def create_engine(spec: str, settings: EngineSettings) -> AnalysisEngine:
    engine = load_engine_class(spec)(settings)
    if not isinstance(engine, AnalysisEngine):
        raise ConfigError(f"{spec} does not implement parse/partition/build_reports/persist_checkpoint")
    return engine
