"""Tally engine: hourly hit counts per log source.

This is the analysis engine shipped with the runner. It counts log lines per
(source, day, hour) and renders one report per period.

State layout (under `state_dir`)
  tally.duckdb
    positions(source, inode, offset_bytes, generation, fresh_from,
              recount_periods, updated_at)              committed read positions
    hourly_hits(source, day, hour, hits)                committed counts
  segments/<source-key>.<generation>.<start-offset>.json
    immutable parse segments: byte range [start, end) of one source plus the
    counts observed in it. Written atomically every `checkpoint_lines` lines
    and at EOF.

Checkpointing
- Parsing (possibly in worker processes) only reads log files and writes
  segments; it never opens DuckDB.
- persist_checkpoint() folds segments into DuckDB. A segment is applied only
  if it continues the committed position, together with the position update,
  in one transaction. Segments behind the committed position are discarded,
  so a fold can safely be repeated after a crash.
- Reading a source again from offset 0 (rotation, truncation, rebuild) starts
  a new generation. The first segment of a generation replaces the position
  whatever its offset was, and for a rebuild it also purges the rebuilt
  hits in the same transaction. Until then the previous state stays intact.
- A dated rebuild records how far the source had been read before
  (`fresh_from`) and which periods are being recounted. Lines before that
  offset only count inside those periods, also in a later run that resumes an
  interrupted rebuild.
- Start offsets for a parse are computed on the coordinator side, in
  partition() (parallel) or at the start of parse() (sequential).

Recognized timestamps
  Common Log Format  [10/Oct/2000:13:55:36 -0700]
  ISO-8601 prefix    2000-10-10T13:55:36 / 2000-10-10 13:55:36
The run's timezone offset is added to the wall-clock time; lines without a
timestamp are skipped.

Config section "tally":
  {"state_dir": "...", "report_dir": "...", "checkpoint_lines": 5000,
   "logs": ["/var/log/nginx/access.log"]}
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import duckdb
import pyarrow as pa
import pyarrow.parquet as pq

from .config import EngineSettings, load_config_file, opt_int, write_json_atomic
from .errors import ConfigError
from .scope import TemporalScope

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path("log-analytics-state")
DEFAULT_CHECKPOINT_LINES = 5000

# None: keep existing hits; "all": drop every hit of the source; otherwise
# the list of periods (YYYY[-MM[-DD]]) whose hits are replaced.
Purge = Union[None, str, List[str]]

_MONTHS = {m: i for i, m in enumerate(
    ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"], start=1
)}
_CLF_TS_RE = re.compile(r"\[(\d{2})/([A-Za-z]{3})/(\d{4}):(\d{2}):(\d{2}):(\d{2})(?:\s+[+-]\d{4})?\]")
_ISO_TS_RE = re.compile(r"^\s*(\d{4})-(\d{2})-(\d{2})[T ](\d{2}):(\d{2}):(\d{2})")

HOURLY_HITS_SCHEMA = pa.schema(
    [
        ("source", pa.string()),
        ("day", pa.string()),
        ("hour", pa.int32()),
        ("hits", pa.int64()),
    ]
)


def parse_timestamp(line: str) -> Optional[datetime]:
    m = _ISO_TS_RE.match(line)
    try:
        if m:
            y, mo, d, hh, mi, ss = (int(x) for x in m.groups())
            return datetime(y, mo, d, hh, mi, ss)
        m = _CLF_TS_RE.search(line)
        if m:
            month = _MONTHS.get(m.group(2).title())
            if month is None:
                return None
            return datetime(int(m.group(3)), month, int(m.group(1)), int(m.group(4)), int(m.group(5)), int(m.group(6)))
    except ValueError:
        return None
    return None


def source_key(path: str) -> str:
    return hashlib.sha256(path.encode("utf-8")).hexdigest()[:16]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _rows_to_arrow(rows: Sequence[Tuple[str, str, int, int]]) -> pa.Table:
    batch = {
        "source": [r[0] for r in rows],
        "day": [r[1] for r in rows],
        "hour": [int(r[2]) for r in rows],
        "hits": [int(r[3]) for r in rows],
    }
    return pa.Table.from_pydict(batch, schema=HOURLY_HITS_SCHEMA)


def _month_floor(d: date, months_back: int) -> date:
    idx = d.year * 12 + (d.month - 1) - int(months_back)
    return date(idx // 12, idx % 12 + 1, 1)


def _purge_clause(purge: Purge, column: str) -> Tuple[str, List[str]]:
    """SQL predicate on `column` selecting the days a purge replaces."""

    if purge is None:
        return "FALSE", []
    if purge == "all":
        return "TRUE", []
    periods = list(purge)
    return "(" + " OR ".join(f"{column} LIKE ?" for _ in periods) + ")", [f"{p}%" for p in periods]


@dataclass
class SourcePlan:
    path: str
    inode: int
    start_offset: int
    generation: int
    new_generation: bool = False
    purge: Purge = None
    # Lines before this offset were counted by an earlier run; they only count
    # again when their day falls in one of recount_periods.
    fresh_from: int = 0
    recount_periods: List[str] = field(default_factory=list)


@dataclass
class ParseResult:
    sources: int = 0
    lines: int = 0
    counted: int = 0
    skipped: int = 0
    segments: int = 0

    def add(self, other: "ParseResult") -> None:
        self.sources += other.sources
        self.lines += other.lines
        self.counted += other.counted
        self.skipped += other.skipped
        self.segments += other.segments


@dataclass
class ReportResult:
    period: str
    rows: int
    total_hits: int
    parquet_path: Path
    summary_path: Path
    purged_rows: int = 0


class TallyEngine:
    def __init__(self, settings: EngineSettings):
        self.settings = settings
        section = load_config_file(settings.config_path).get("tally")
        if section is None:
            section = {}
        if not isinstance(section, dict):
            raise ConfigError(f"Config key 'tally' in {settings.config_path} must be a JSON object")

        checkpoint_lines = opt_int(section.get("checkpoint_lines"), "tally.checkpoint_lines")
        if checkpoint_lines is not None and checkpoint_lines < 1:
            raise ConfigError(f"tally.checkpoint_lines must be at least 1, got {checkpoint_lines}")
        logs = section.get("logs") or []
        if not isinstance(logs, list):
            raise ConfigError(f"tally.logs must be a list of paths, got {logs!r}")

        self.state_dir = Path(section.get("state_dir") or DEFAULT_STATE_DIR).expanduser()
        self.report_dir = Path(section.get("report_dir") or (self.state_dir / "reports")).expanduser()
        self.checkpoint_lines = checkpoint_lines or DEFAULT_CHECKPOINT_LINES
        self.default_logs = [str(p) for p in logs]

        self._db_lock = threading.Lock()
        self._plan: Dict[str, SourcePlan] = {}
        self._planned_for_workers = False

    # Worker processes receive a pickled copy; locks do not pickle.
    def __getstate__(self) -> Dict[str, Any]:
        state = dict(self.__dict__)
        state.pop("_db_lock", None)
        return state

    def __setstate__(self, state: Dict[str, Any]) -> None:
        self.__dict__.update(state)
        self._db_lock = threading.Lock()

    @property
    def db_path(self) -> Path:
        return self.state_dir / "tally.duckdb"

    @property
    def segments_dir(self) -> Path:
        return self.state_dir / "segments"

    # ---- engine interface ----

    def partition(self, sources: Sequence[str], scope: TemporalScope, budget: int) -> List[List[str]]:
        """Plan start offsets, then split sources into <= budget shards by bytes left to read."""

        paths = self._resolve_sources(sources)
        self._prepare(paths, scope)
        self._planned_for_workers = True

        planned = [p for p in paths if p in self._plan]
        n_shards = max(1, min(int(budget), len(planned)))
        shards: List[List[str]] = [[] for _ in range(n_shards)]
        loads = [0] * n_shards

        def remaining(p: str) -> int:
            try:
                return max(0, os.path.getsize(p) - self._plan[p].start_offset)
            except OSError:
                return 0

        for p in sorted(planned, key=remaining, reverse=True):
            i = loads.index(min(loads))
            shards[i].append(p)
            loads[i] += remaining(p)
        return [s for s in shards if s]

    def parse(self, sources: Sequence[str], scope: TemporalScope) -> ParseResult:
        t0 = time.monotonic()
        paths = self._resolve_sources(sources)
        if not self._planned_for_workers:
            self._prepare(paths, scope)

        total = ParseResult()
        for p in paths:
            plan = self._plan.get(p)
            if plan is None:
                continue
            total.add(self._parse_source(plan, scope))

        if self.settings.debug:
            logger.debug(
                f"Parsed {total.sources} source(s): lines={total.lines} counted={total.counted} "
                f"skipped={total.skipped} segments={total.segments} in {time.monotonic() - t0:.2f}s"
            )
        return total

    def persist_checkpoint(self) -> int:
        with self._db_lock:
            con = self._connect()
            try:
                applied = self._fold_segments(con)
            finally:
                con.close()
        logger.info(f"Checkpoint persisted ({applied} segment(s) committed)")
        return applied

    def build_reports(self, scope: TemporalScope, retention_months: Optional[int] = None) -> ReportResult:
        period = scope.period_label() or date.today().strftime("%Y-%m")
        purged = 0

        with self._db_lock:
            con = self._connect()
            try:
                self._fold_segments(con)

                if retention_months is not None:
                    cutoff = _month_floor(date.today(), retention_months).isoformat()
                    row = con.execute("SELECT count(*) FROM hourly_hits WHERE day < ?", [cutoff]).fetchone()
                    purged = int(row[0]) if row else 0
                    if purged:
                        con.execute("DELETE FROM hourly_hits WHERE day < ?", [cutoff])
                        logger.info(f"Purged {purged} row(s) older than {cutoff} (preserve={retention_months} months)")

                rows = con.execute(
                    """
                    SELECT source, day, hour, hits
                    FROM hourly_hits
                    WHERE day LIKE ?
                    ORDER BY source, day, hour
                    """,
                    [f"{period}%"],
                ).fetchall()
                by_source = con.execute(
                    "SELECT source, sum(hits) FROM hourly_hits WHERE day LIKE ? GROUP BY source ORDER BY source",
                    [f"{period}%"],
                ).fetchall()
                by_day = con.execute(
                    "SELECT day, sum(hits) FROM hourly_hits WHERE day LIKE ? GROUP BY day ORDER BY day",
                    [f"{period}%"],
                ).fetchall()
            finally:
                con.close()

        self._plan.clear()
        self._planned_for_workers = False

        tbl = _rows_to_arrow(rows)
        self.report_dir.mkdir(parents=True, exist_ok=True)
        parquet_path = self.report_dir / f"{period}.parquet"
        tmp = parquet_path.with_suffix(".parquet.tmp")
        pq.write_table(tbl, tmp, compression="zstd")
        tmp.replace(parquet_path)

        total_hits = int(sum(int(n) for _, n in by_source))
        summary = {
            "period": period,
            "generated_at": _utc_now_iso(),
            "scope": scope.describe(),
            "total_hits": total_hits,
            "by_source": {s: int(n) for s, n in by_source},
            "by_day": {d: int(n) for d, n in by_day},
        }
        summary_path = self.report_dir / f"{period}.json"
        write_json_atomic(summary_path, summary, indent=2)

        logger.info(f"Report {period}: {tbl.num_rows} row(s), {total_hits} hit(s) -> {parquet_path}")
        return ReportResult(
            period=period,
            rows=tbl.num_rows,
            total_hits=total_hits,
            parquet_path=parquet_path,
            summary_path=summary_path,
            purged_rows=purged,
        )

    # ---- planning (coordinator side) ----

    def _resolve_sources(self, sources: Sequence[str]) -> List[str]:
        raw = list(sources) or list(self.settings.sources) or list(self.default_logs)
        out: List[str] = []
        for s in raw:
            p = str(Path(s).expanduser().resolve())
            if p not in out:
                out.append(p)
        return out

    def _prepare(self, paths: Sequence[str], scope: TemporalScope) -> None:
        with self._db_lock:
            con = self._connect()
            try:
                self._fold_segments(con)
                committed = {
                    row[0]: row[1:]
                    for row in con.execute(
                        "SELECT source, inode, offset_bytes, generation, fresh_from, recount_periods FROM positions"
                    ).fetchall()
                }
            finally:
                con.close()

        for p in paths:
            try:
                st = os.stat(p)
            except OSError as e:
                logger.warning(f"Skipping log source {p}: {e}")
                continue
            self._plan[p] = self._plan_source(p, st, committed.get(p), scope)

        if scope.rebuild:
            logger.info(f"Planned rebuild of {len(self._plan)} source(s) ({scope.describe()})")

    def _plan_source(self, path: str, st: os.stat_result, prev: Optional[tuple], scope: TemporalScope) -> SourcePlan:
        if scope.rebuild:
            purge: Purge = [scope.build_date] if scope.build_date else "all"
        else:
            purge = None

        if prev is None:
            return SourcePlan(path=path, inode=st.st_ino, start_offset=0, generation=0, new_generation=True, purge=purge)

        inode, off, generation, fresh_from, periods = prev
        off, generation, fresh_from = int(off), int(generation), int(fresh_from or 0)
        same_file = int(inode) == st.st_ino and off <= st.st_size
        if not same_file:
            logger.info(f"Log source {path} was rotated or truncated; reading from the start")
        # A dated rebuild of this source was interrupted before reaching fresh_from.
        pending = [x for x in (periods or "").split(",") if x] if same_file and fresh_from > off else []

        if not scope.rebuild:
            if same_file:
                return SourcePlan(
                    path=path,
                    inode=st.st_ino,
                    start_offset=off,
                    generation=generation,
                    fresh_from=fresh_from if pending else off,
                    recount_periods=pending,
                )
            return SourcePlan(path=path, inode=st.st_ino, start_offset=0, generation=generation + 1, new_generation=True)

        if not scope.build_date or not same_file:
            return SourcePlan(
                path=path, inode=st.st_ino, start_offset=0, generation=generation + 1, new_generation=True, purge=purge
            )

        recount = [scope.build_date] + [x for x in pending if x != scope.build_date]
        return SourcePlan(
            path=path,
            inode=st.st_ino,
            start_offset=0,
            generation=generation + 1,
            new_generation=True,
            purge=recount,
            fresh_from=max(off, fresh_from) if pending else off,
            recount_periods=recount,
        )

    # ---- parsing (may run in a worker) ----

    def _iter_lines(self, path: str, start: int) -> Iterator[Tuple[int, int, bytes]]:
        """Yield (line_start, line_end, line) for complete lines from `start`.

        A trailing line without a newline is left for the next run.
        """

        with open(path, "rb") as f:
            f.seek(start)
            offset = start
            for raw in f:
                if not raw.endswith(b"\n"):
                    return
                yield offset, offset + len(raw), raw
                offset += len(raw)

    def _parse_source(self, plan: SourcePlan, scope: TemporalScope) -> ParseResult:
        res = ParseResult(sources=1)
        counts: Counter = Counter()
        seg_start = plan.start_offset
        offset = plan.start_offset
        shift = timedelta(hours=scope.tz_offset)
        since_flush = 0

        for line_start, offset, raw in self._iter_lines(plan.path, plan.start_offset):
            res.lines += 1
            since_flush += 1
            ts = parse_timestamp(raw.decode("utf-8", errors="replace"))
            if ts is None:
                res.skipped += 1
            else:
                ts = ts + shift
                day = ts.strftime("%Y-%m-%d")
                fresh = line_start >= plan.fresh_from or any(day.startswith(p) for p in plan.recount_periods)
                if fresh and scope.in_window(f"{ts.hour:02d}:{ts.minute:02d}"):
                    counts[(day, ts.hour)] += 1
                    res.counted += 1

            if since_flush >= self.checkpoint_lines:
                self._write_segment(plan, seg_start, offset, counts)
                res.segments += 1
                seg_start = offset
                counts = Counter()
                since_flush = 0

        # A new generation needs a segment even for an empty file.
        if offset > seg_start or (plan.new_generation and res.segments == 0):
            self._write_segment(plan, seg_start, offset, counts)
            res.segments += 1
        return res

    def _write_segment(self, plan: SourcePlan, start: int, end: int, counts: Counter) -> None:
        payload = {
            "source": plan.path,
            "inode": int(plan.inode),
            "generation": int(plan.generation),
            "start": int(start),
            "end": int(end),
            "purge": plan.purge,
            "fresh_from": int(plan.fresh_from),
            "recount_periods": list(plan.recount_periods),
            "counts": [[day, int(hour), int(n)] for (day, hour), n in sorted(counts.items())],
            "written_at": _utc_now_iso(),
        }
        name = f"{source_key(plan.path)}.{int(plan.generation):06d}.{int(start):020d}.json"
        write_json_atomic(self.segments_dir / name, payload)

    # ---- store ----

    def _connect(self) -> duckdb.DuckDBPyConnection:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        con = duckdb.connect(str(self.db_path))
        _init_schema(con)
        return con

    def _fold_segments(self, con: duckdb.DuckDBPyConnection) -> int:
        if not self.segments_dir.exists():
            return 0

        segments: List[Tuple[str, int, int, Path, Dict[str, Any]]] = []
        for seg_path in self.segments_dir.glob("*.json"):
            try:
                seg = json.loads(seg_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Unreadable checkpoint segment {seg_path}: {e}")
                continue
            segments.append((str(seg["source"]), int(seg.get("generation", 0)), int(seg["start"]), seg_path, seg))
        segments.sort(key=lambda t: (t[0], t[1], t[2]))

        committed = {
            src: (int(gen), int(off))
            for src, gen, off in con.execute("SELECT source, generation, offset_bytes FROM positions").fetchall()
        }

        applied = 0
        for src, gen, start, seg_path, seg in segments:
            cur_gen, base = committed.get(src, (-1, 0))
            if gen < cur_gen or (gen == cur_gen and start < base):
                seg_path.unlink(missing_ok=True)
                continue

            new_generation = gen > cur_gen
            if start != (0 if new_generation else base):
                # An earlier segment for this source has not been written yet.
                continue

            self._apply_segment(con, src, seg, new_generation=new_generation)
            committed[src] = (gen, int(seg["end"]))
            seg_path.unlink(missing_ok=True)
            applied += 1
        return applied

    def _apply_segment(
        self,
        con: duckdb.DuckDBPyConnection,
        src: str,
        seg: Dict[str, Any],
        *,
        new_generation: bool,
    ) -> None:
        rows = [(src, day, hour, n) for day, hour, n in (seg.get("counts") or [])]
        purge = seg.get("purge") if new_generation else None

        if rows:
            con.register("_tally_delta", _rows_to_arrow(rows))
        con.begin()
        try:
            if purge is not None:
                clause, params = _purge_clause(purge, "day")
                sql = f"DELETE FROM hourly_hits WHERE source = ? AND {clause}"
                if rows:
                    # Rows the delta is about to replace stay put and are overwritten below.
                    sql += (
                        " AND NOT EXISTS (SELECT 1 FROM _tally_delta d"
                        " WHERE d.day = hourly_hits.day AND d.hour = hourly_hits.hour)"
                    )
                con.execute(sql, [src, *params])
            if rows:
                replace, params = _purge_clause(purge, "d.day")
                con.execute(
                    f"""
                    INSERT OR REPLACE INTO hourly_hits
                    SELECT d.source, d.day, d.hour,
                           CASE WHEN {replace} THEN d.hits ELSE COALESCE(h.hits, 0) + d.hits END
                    FROM _tally_delta d
                    LEFT JOIN hourly_hits h
                      ON h.source = d.source AND h.day = d.day AND h.hour = d.hour
                    """,
                    params,
                )
            con.execute(
                """
                INSERT OR REPLACE INTO positions
                    (source, inode, offset_bytes, generation, fresh_from, recount_periods, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    src,
                    int(seg["inode"]),
                    int(seg["end"]),
                    int(seg.get("generation", 0)),
                    int(seg.get("fresh_from") or 0),
                    ",".join(seg.get("recount_periods") or []),
                    _utc_now_iso(),
                ],
            )
            con.commit()
        except Exception:
            con.rollback()
            raise
        finally:
            if rows:
                con.unregister("_tally_delta")


def _init_schema(con: duckdb.DuckDBPyConnection) -> None:
    con.execute(
        """
        CREATE TABLE IF NOT EXISTS positions (
            source VARCHAR PRIMARY KEY,
            inode BIGINT,
            offset_bytes BIGINT,
            generation BIGINT,
            fresh_from BIGINT,
            recount_periods VARCHAR,
            updated_at VARCHAR
        );
        """
    )
    con.execute(
        """
        CREATE TABLE IF NOT EXISTS hourly_hits (
            source VARCHAR,
            day VARCHAR,
            hour INTEGER,
            hits BIGINT,
            PRIMARY KEY (source, day, hour)
        );
        """
    )
