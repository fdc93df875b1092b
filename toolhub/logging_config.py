"""Logging for the hub process.

The hub may be serving MCP over its own stdout, so nothing is ever logged
there: records go to a rotating file and, when asked, to stderr. Settings
(``logging`` section)::

    file: data/logs/toolhub.log
    level: INFO
    log_to_console: false
    loggers: {toolhub.discovery: DEBUG}
    quiet: [mcp, httpx, httpcore]
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEFAULT_LOG_FILE = "data/logs/toolhub.log"
# Client libraries that log every downstream request at INFO.
DEFAULT_QUIET = ("mcp", "httpx", "httpcore")


def _level(value: Any, default: int = logging.INFO) -> int:
    if isinstance(value, int):
        return value
    level = logging.getLevelName(str(value).upper())
    return level if isinstance(level, int) else default


def setup_logging(project_root: Path, settings: dict[str, Any]) -> Path:
    """Replace root handlers with the hub's file (and optional stderr) handler.

    Returns the log file path. Per-logger levels from ``loggers`` are applied
    after the root level; ``quiet`` loggers never go below WARNING unless they
    are listed in ``loggers`` too.
    """
    cfg = settings.get("logging") or {}
    level = _level(cfg.get("level", "INFO"))
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    log_path = project_root / cfg.get("file", DEFAULT_LOG_FILE)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=int(cfg.get("max_bytes", 10 * 1024 * 1024)),
            backupCount=int(cfg.get("backup_count", 3)),
            encoding="utf-8",
        )
    ]
    if cfg.get("log_to_console", False):
        handlers.append(logging.StreamHandler(sys.stderr))

    root = logging.getLogger()
    for h in root.handlers[:]:
        root.removeHandler(h)
        h.close()
    root.setLevel(level)
    for h in handlers:
        h.setLevel(level)
        h.setFormatter(formatter)
        root.addHandler(h)

    overrides = {str(name): _level(value, level) for name, value in (cfg.get("loggers") or {}).items()}
    for name in cfg.get("quiet", DEFAULT_QUIET):
        if name not in overrides:
            logging.getLogger(name).setLevel(max(level, logging.WARNING))
    for name, value in overrides.items():
        logging.getLogger(name).setLevel(value)
    return log_path
