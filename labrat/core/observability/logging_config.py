"""
Logging configuration for the ``labrat`` process.

main.py calls ``configure_logging`` once, before any command runs.
Modules only ever do ``logger = logging.getLogger(__name__)``.

Console level: ``--debug`` > ``--verbose`` > ``--quiet`` > ``LABRAT_LOG_LEVEL``
> WARNING.  ``LABRAT_LOG_FILE`` adds a file sink: an absolute path is
used as given, a relative one lands in the data directory, and ``1`` /
``yes`` / ``on`` mean ``<data_dir>/labrat.log``.  The file level comes
from ``LABRAT_LOG_FILE_LEVEL`` (default DEBUG).
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Mapping

from labrat.core.config.loader import Settings

LOG_FILE_NAME = "labrat.log"
_ENABLE_WORDS = {"1", "yes", "on", "true"}

# Console format narrows as the level rises; WARNING and above is one line per problem.
_CONSOLE_FORMATS: list[tuple[int, str, str | None]] = [
    (logging.DEBUG, "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d  %(message)s", "%H:%M:%S"),
    (logging.INFO, "%(asctime)s [%(name)s] %(message)s", "%H:%M:%S"),
]
_CONSOLE_DEFAULT = "%(levelname)s: %(message)s"
_FILE_FORMAT = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d [pid %(process)d] %(message)s"


def parse_level(level: str | None, default: int = logging.WARNING) -> int:
    """Level name to its numeric constant; ``default`` for blank or unknown names."""
    if not level:
        return default
    numeric = logging.getLevelName(level.strip().upper())
    return numeric if isinstance(numeric, int) else default


def resolve_level(
    debug: bool = False,
    verbose: bool = False,
    quiet: bool = False,
    env: Mapping[str, str] | None = None,
) -> int:
    """Console level from the global CLI flags, then ``LABRAT_LOG_LEVEL``."""
    if debug:
        return logging.DEBUG
    if verbose:
        return logging.INFO
    if quiet:
        return logging.ERROR
    env = os.environ if env is None else env
    return parse_level(env.get("LABRAT_LOG_LEVEL"))


def resolve_log_file(env: Mapping[str, str] | None = None) -> Path | None:
    """Where ``LABRAT_LOG_FILE`` points, relative paths anchored at the data dir."""
    env = os.environ if env is None else env
    value = (env.get("LABRAT_LOG_FILE") or "").strip()
    if not value:
        return None

    if value.lower() in _ENABLE_WORDS:
        return _data_dir(env) / LOG_FILE_NAME
    path = Path(value).expanduser()
    return path if path.is_absolute() else _data_dir(env) / path


def _data_dir(env: Mapping[str, str]) -> Path:
    home = Path(env.get("HOME") or Path.home())
    overrides = {"data_dir": env["LABRAT_DATA_DIR"]} if env.get("LABRAT_DATA_DIR") else {}
    return Settings.for_home(home, **overrides).data_dir


def _console_format(level: int) -> tuple[str, str | None]:
    for threshold, fmt, datefmt in _CONSOLE_FORMATS:
        if level <= threshold:
            return fmt, datefmt
    return _CONSOLE_DEFAULT, None


def setup_logging(
    level: int | str = logging.WARNING,
    log_file: Path | str | None = None,
    log_file_level: int | str | None = None,
) -> None:
    """Replace the root handlers with a stderr console and an optional file sink."""
    console_level = level if isinstance(level, int) else parse_level(level)
    fmt, datefmt = _console_format(console_level)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(fmt, datefmt=datefmt))

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        if isinstance(handler, logging.FileHandler):
            handler.close()
    root.addHandler(console)
    root_level = console_level

    if log_file:
        if isinstance(log_file_level, int):
            file_level = log_file_level
        else:
            file_level = parse_level(log_file_level, default=logging.DEBUG)
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setLevel(file_level)
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        root.addHandler(file_handler)
        root_level = min(root_level, file_level)

    root.setLevel(root_level)
    logging.raiseExceptions = False


def configure_logging(
    debug: bool = False,
    verbose: bool = False,
    quiet: bool = False,
    env: Mapping[str, str] | None = None,
) -> Path | None:
    """CLI entry: resolve level and file sink from flags and environment.

    Returns the log file in use, if any.
    """
    env = os.environ if env is None else env
    log_file = resolve_log_file(env)
    setup_logging(
        resolve_level(debug, verbose, quiet, env),
        log_file=log_file,
        log_file_level=env.get("LABRAT_LOG_FILE_LEVEL"),
    )
    return log_file
