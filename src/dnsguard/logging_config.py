from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "crit": logging.CRITICAL,
    "critical": logging.CRITICAL,
}

LOG_FORMAT = "%(asctime)s %(level_tag)s %(name)s: %(message)s"


class BracketLevelFormatter(logging.Formatter):
    """Formatter with bracketed lowercase level tags and UTC record timestamps."""

    _TAGS = {
        logging.DEBUG: "[debug]",
        logging.INFO: "[info]",
        logging.WARNING: "[warn]",
        logging.ERROR: "[error]",
        logging.CRITICAL: "[crit]",
    }

    def formatTime(self, record, datefmt=None):
        """Format the record creation time as UTC ISO-8601 with Z suffix."""
        return datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
            datefmt or "%Y-%m-%dT%H:%M:%SZ"
        )

    def format(self, record):
        record.level_tag = self._TAGS.get(record.levelno, f"[lvl{record.levelno}]")
        return super().format(record)


def resolve_level(value: Any) -> int:
    """Map a config level name (debug/info/warn/error/crit) to a logging constant."""
    return _LEVELS.get(str(value or "info").lower(), logging.INFO)


def init_logging(cfg: Optional[Dict[str, Any]]) -> None:
    """
    Configure the root logger from the ``logging`` config section.

    Args:
        cfg: Mapping with optional keys:
            - level: debug, info, warn, error, crit (default: info)
            - stderr: log to stderr (default: True)
            - file: path of an append-mode log file (optional)
            - query_log: when false, per-query "Blocked ..." lines from
              dnsguard.pipeline are raised to warning so they are hidden at
              the default level (default: True)

    Example config:
        {"level": "info", "stderr": True, "file": "./dnsguard.log"}
    """
    cfg = cfg or {}
    level = resolve_level(cfg.get("level", "info"))
    formatter = BracketLevelFormatter(fmt=LOG_FORMAT)

    root = logging.getLogger()
    root.setLevel(level)

    # Replace handlers so repeated calls (tests, reloads) do not duplicate output
    for h in list(root.handlers):
        root.removeHandler(h)

    if cfg.get("stderr", True):
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(formatter)
        root.addHandler(stderr_handler)

    file_path = cfg.get("file")
    if isinstance(file_path, str) and file_path.strip():
        path = os.path.abspath(os.path.expanduser(file_path.strip()))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    pipeline_logger = logging.getLogger("dnsguard.pipeline")
    if cfg.get("query_log", True):
        pipeline_logger.setLevel(logging.NOTSET)
    else:
        pipeline_logger.setLevel(logging.WARNING)

    logging.captureWarnings(True)
