import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from docmodel.core.config import settings
from docmodel.core.utils import deep_merge


logger = logging.getLogger(__name__)

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def configure_logging(level: str = settings.LOG_LEVEL, console: bool = False) -> logging.Logger:
    """
    Set the level of the "docmodel" logger.

    Root logging belongs to the host application and is left alone. With
    `console=True` a stream handler is attached to the "docmodel" logger
    (once) for scripts that have no logging setup of their own.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    package_logger = logging.getLogger("docmodel")
    package_logger.setLevel(numeric_level)

    if console and not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        package_logger.addHandler(handler)
    return package_logger


def _now_ms() -> int:
    return int(time.time() * 1000)


class Monitor:
    """A timed span started by LogContext.monitor()."""

    def __init__(self, action: str, meta: Optional[Dict[str, Any]] = None):
        self.action = action
        self.meta = meta or {}
        self.start = _now_ms()
        self.end: Optional[int] = None

    def finished(self):
        self.end = _now_ms()

    @property
    def duration(self) -> Optional[int]:
        if self.end is None:
            return None
        return self.end - self.start

    def serialize(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "start": self.start,
            "end": self.end,
            "duration": self.duration,
            "meta": self.meta,
        }


class LogContext:
    """
    Structured logger scoped to one action (e.g. a model).

    Every entry is kept in a bounded history with its metadata deep-merged
    over the base metadata given at construction. When `echo` is on, entries
    are also written to the stdlib logger.

    Example:
        log = LogContext("docmodel:model:user", {"name": "user"})
        log.debug("Fetched document", {"id": "123"})
    """

    def __init__(
        self,
        action: str,
        meta: Optional[Dict[str, Any]] = None,
        echo: bool = False,
        history: int = settings.LOG_HISTORY,
    ):
        self.action = action
        self.meta = meta or {}
        self.echo = echo
        self.logs: deque = deque(maxlen=history)
        self.monitors: deque = deque(maxlen=history)

    def add_log(self, severity: str, message: str, meta: Optional[Dict[str, Any]] = None):
        final_meta = deep_merge(self.meta, meta or {})
        entry = {
            "severity": severity,
            "message": message,
            "meta": final_meta,
            "ts": datetime.now(timezone.utc).isoformat(),
        }
        self.logs.append(entry)

        if self.echo:
            logger.log(
                LEVELS[severity], f"({self.action}) {message} - {final_meta}"
            )
        return entry

    def debug(self, message: str, meta: Optional[Dict[str, Any]] = None):
        return self.add_log("debug", message, meta)

    def info(self, message: str, meta: Optional[Dict[str, Any]] = None):
        return self.add_log("info", message, meta)

    def warn(self, message: str, meta: Optional[Dict[str, Any]] = None):
        return self.add_log("warn", message, meta)

    def error(self, message: str, meta: Optional[Dict[str, Any]] = None):
        return self.add_log("error", message, meta)

    def monitor(self, action: str, meta: Optional[Dict[str, Any]] = None) -> Monitor:
        new_monitor = Monitor(action, meta)
        self.monitors.append(new_monitor)
        return new_monitor

    def get_logs(self) -> List[Dict[str, Any]]:
        return list(self.logs)
