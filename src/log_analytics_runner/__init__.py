"""Run coordinator for the batch log-analytics job.

This package owns the parts of a log-analytics run that deal with concurrency
and interruption:
- a singleton lock marker so only one run is active at a time,
- temporal-scope resolution (incremental tail vs. dated rebuild),
- a bounded parallel parse scheduler, and
- signal-driven graceful shutdown that flushes the engine checkpoint.

Parsing, aggregation and report rendering live behind the analysis engine
interface (see `engine.py`); `tally_engine.py` is the engine shipped here.
"""

__version__ = "1.4.0"

__all__ = ["__version__"]
