"""
Logging helpers.

Solver runs are batch jobs that can take many iterations, so logs go to a
file under the user's state directory. Per-iteration progress is DEBUG;
anything that changes the outcome of an iteration (exhausted line search,
failed linear solve) is a WARNING.
"""

from __future__ import annotations

import logging
import os
import sys
import threading
from pathlib import Path
from typing import Optional

ENV_LOG_LEVEL = "SLIMMAPPER_LOG_LEVEL"
ENV_LOG_DIR = "SLIMMAPPER_LOG_DIR"

LOG_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s [%(name)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

_ONCE_KEYS: set[str] = set()
_ONCE_LOCK = threading.Lock()


def default_log_dir() -> Path:
    override = os.environ.get(ENV_LOG_DIR)
    if override:
        return Path(override)

    if os.name == "nt":
        base = os.environ.get("LOCALAPPDATA") or os.environ.get("APPDATA") or str(Path.home())
        return Path(base) / "SlimMapper" / "logs"

    state_home = os.environ.get("XDG_STATE_HOME")
    base = Path(state_home) if state_home else Path.home() / ".local" / "state"
    return base / "slimmapper" / "logs"


def parse_log_level(level: str | int) -> int:
    """Level name or number; unknown names fall back to INFO."""
    if isinstance(level, int):
        return level
    name = str(level).strip().upper()
    value = logging.getLevelName(name) if name else logging.INFO
    return value if isinstance(value, int) else logging.INFO


def _has_handler(logger: logging.Logger, kind: type) -> Optional[logging.Handler]:
    for handler in logger.handlers:
        # FileHandler subclasses StreamHandler
        if kind is logging.StreamHandler and isinstance(handler, logging.FileHandler):
            continue
        if isinstance(handler, kind):
            return handler
    return None


def setup_logging(
    *,
    log_level: str | int = "INFO",
    log_dir: Optional[str | Path] = None,
    filename: str = "slimmapper.log",
    console_level: Optional[str | int] = None,
    logger: Optional[logging.Logger] = None,
) -> Optional[Path]:
    """
    Attach a UTF-8 file handler (and optionally a stderr handler) to ``logger``.

    Defaults to the root logger. Calling it again does not add a second
    handler of the same kind; the existing log file path is returned.
    Returns None when the log directory cannot be created.
    """
    target = logger if logger is not None else logging.getLogger()
    level = parse_log_level(os.environ.get(ENV_LOG_LEVEL) or log_level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    if console_level is not None and _has_handler(target, logging.StreamHandler) is None:
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(parse_log_level(console_level))
        console.setFormatter(formatter)
        target.addHandler(console)

    existing = _has_handler(target, logging.FileHandler)
    if existing is not None:
        return Path(existing.baseFilename)

    directory = Path(log_dir) if log_dir is not None else default_log_dir()
    log_path = directory / filename
    try:
        directory.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(str(log_path), encoding="utf-8")
    except OSError:
        return None

    target.setLevel(level)
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    target.addHandler(file_handler)

    logging.captureWarnings(True)
    target.info("Logging to %s (level=%s)", log_path, logging.getLevelName(level))
    return log_path


def log_once(
    logger: logging.Logger,
    key: str,
    level: int,
    msg: str,
    *args,
    exc_info: bool | BaseException | None = None,
) -> bool:
    """
    Log ``msg`` only the first time ``key`` is seen in this process.

    Keeps iteration loops from repeating the same warning every step.
    Returns True when the message was emitted.
    """
    k = str(key)
    with _ONCE_LOCK:
        if k in _ONCE_KEYS:
            return False
        _ONCE_KEYS.add(k)

    logger.log(level, msg, *args, exc_info=exc_info)
    return True


def forget_log_once(prefix: str) -> int:
    """Drop every ``log_once`` key starting with ``prefix``; returns how many."""
    p = str(prefix)
    with _ONCE_LOCK:
        stale = [k for k in _ONCE_KEYS if k.startswith(p)]
        _ONCE_KEYS.difference_update(stale)
    return len(stale)
