#!/usr/bin/env python3
"""Command-line entrypoint for the log-analytics run coordinator."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .config import DEFAULT_CONFIG_PATH, RunConfig, load_config_file
from .errors import ConfigError, InvalidFormat
from .orchestrator import EXIT_USAGE, RunOrchestrator
from .scope import parse_timezone_offset

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

EPILOG = """\
Examples:
  log-analytics-run /var/log/nginx/access.log
  log-analytics-run -j 4 -P /run/log-analytics /var/log/nginx/*.log
  log-analytics-run -b 2024-03                 # rebuild March 2024 reports
  log-analytics-run -r -s 08:00 -S 18:00 -t +2 /var/log/app.log

Exit status: 0 on success or graceful shutdown, 1 if another run holds the
lock or the run failed, 2 on malformed arguments or configuration.
"""


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="log-analytics-run",
        description="Run the log-analytics job: parse new log lines and rebuild reports, one run at a time.",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    ap.add_argument(
        "-c",
        "--configfile",
        type=Path,
        default=None,
        help=f"Configuration file (default: {DEFAULT_CONFIG_PATH})",
    )
    ap.add_argument(
        "-b",
        "--build_date",
        default=None,
        metavar="DATE",
        help="Rebuild reports for DATE (YYYY, YYYY-MM or YYYY-MM-DD); implies --rebuild",
    )
    ap.add_argument(
        "-r",
        "--rebuild",
        action="store_true",
        default=False,
        help="Rebuild reports from recorded data; log files are only re-read when given",
    )
    ap.add_argument("-j", "--jobs", type=int, default=None, metavar="N", help="Number of parallel parse workers")
    ap.add_argument(
        "-p",
        "--preserve",
        type=int,
        default=None,
        metavar="N",
        help="Keep N months of statistics; older data is purged",
    )
    ap.add_argument("-P", "--pid_dir", type=Path, default=None, metavar="DIR", help="Directory for the lock file (default: /tmp)")
    ap.add_argument("-s", "--start", default=None, metavar="HH:MM", help="Only count log lines at or after HH:MM")
    ap.add_argument("-S", "--stop", default=None, metavar="HH:MM", help="Only count log lines at or before HH:MM")
    ap.add_argument("-t", "--timezone", default=None, metavar="+HH", help="Offset in hours added to log timestamps")
    ap.add_argument("-d", "--debug", action="store_true", default=False, help="Verbose timing and diagnostic output")
    ap.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("logs", nargs="*", help="Log files to parse")
    return ap


def accepted_sources(paths: List[str]) -> List[str]:
    """Keep log files that exist and are non-empty; warn about the rest."""

    out: List[str] = []
    for raw in paths:
        p = Path(raw).expanduser()
        try:
            size = p.stat().st_size if p.is_file() else None
        except OSError:
            size = None
        if size is None:
            logger.warning(f"Ignoring log source {raw}: not a readable file")
            continue
        if size == 0:
            logger.warning(f"Ignoring log source {raw}: file is empty")
            continue
        out.append(str(p))
    return out


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    config_path = args.configfile or DEFAULT_CONFIG_PATH
    try:
        file_values = load_config_file(config_path, required=args.configfile is not None)
        tz_raw = args.timezone if args.timezone is not None else file_values.get("timezone")
        tz_offset = parse_timezone_offset(None if tz_raw is None else str(tz_raw))
        config = RunConfig.from_sources(
            config_path=config_path,
            file_values=file_values,
            overrides={
                "sources": accepted_sources(args.logs),
                "rebuild": args.rebuild,
                "build_date": args.build_date,
                "start": args.start,
                "stop": args.stop,
                "jobs": args.jobs,
                "preserve_months": args.preserve,
                "pid_dir": args.pid_dir,
                "tz_offset": tz_offset,
                "debug": args.debug,
            },
        )
    except (ConfigError, InvalidFormat) as e:
        logger.error(str(e))
        return EXIT_USAGE

    logger.debug(f"Config: {config}")
    return RunOrchestrator(config).run()


if __name__ == "__main__":
    sys.exit(main())
