"""Run logging for PatchSeq-Mapper.

A mapping run logs to the console and, when a log directory is given, to a
per-run file. Run records (parameters, seed, counts) are written as YAML
documents next to the outputs.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Tuple, Union

import yaml

PathLike = Union[str, Path]

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
CONSOLE_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_timestamped_log_path(log_path: PathLike) -> Path:
    """Per-run log file name, e.g. mapping.log -> mapping_20251209_080530.log."""
    log_path = Path(log_path)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return log_path.with_name(f"{log_path.stem}_{stamp}{log_path.suffix or '.log'}")


def _replace_handlers(logger: logging.Logger, kind: type) -> None:
    for handler in [h for h in logger.handlers if type(h) is kind]:
        logger.removeHandler(handler)
        handler.close()


def get_logger(
    name: str,
    log_path: Optional[PathLike] = None,
    level: int = logging.INFO,
    timestamped: bool = True,
    console: bool = False,
) -> Tuple[logging.Logger, Optional[Path]]:
    """Configure a run logger.

    Parameters
    ----------
    name : str
        Logger name (the package logger for a mapping run).
    log_path : PathLike, optional
        Base path of the log file. No file handler when None.
    level : int
        Logging level for the logger and its handlers.
    timestamped : bool
        Keep earlier runs by stamping the file name; otherwise the file
        is truncated.
    console : bool
        Also log to stdout.

    Returns
    -------
    Tuple[logging.Logger, Optional[Path]]
        The logger and the file actually written (None without a file).

    Calling again with the same name replaces the previous handlers, so a
    process running several mappings never duplicates log lines.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    actual_path = None
    _replace_handlers(logger, logging.FileHandler)
    if log_path is not None:
        actual_path = get_timestamped_log_path(log_path) if timestamped else Path(log_path)
        actual_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(
            actual_path, mode="a" if timestamped else "w", encoding="utf-8"
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(file_handler)

    _replace_handlers(logger, logging.StreamHandler)
    if console:
        stream = logging.StreamHandler(sys.stdout)
        stream.setLevel(level)
        stream.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(stream)

    return logger, actual_path


def log_yaml(
    log_path: PathLike,
    record: dict[str, Any],
    *,
    append: bool = True,
    logger: logging.Logger | None = None,
) -> None:
    """Write a run record as a YAML document.

    Documents are terminated with "---" so appended records stay separable
    with yaml.safe_load_all. append=False replaces the file. With a logger
    the record goes to the log instead.
    """
    text = yaml.safe_dump(record, sort_keys=False).rstrip("\n") + "\n---\n"
    if logger is not None:
        logger.info("%s", text.rstrip("\n"))
        return

    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a" if append else "w", encoding="utf-8") as handle:
        handle.write(text)
