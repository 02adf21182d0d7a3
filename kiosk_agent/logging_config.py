# Logging setup for the Kiosk Sync Agent
# Rotating log file, optional console, recent ERROR lines kept for the status endpoint

import logging
import sys
import threading
from collections import deque
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

LOG_DIR = Path(__file__).resolve().parent.parent / "logs"
LOG_FILE = LOG_DIR / "kiosk_agent.log"
LOG_MAX_BYTES = 5 * 1024 * 1024  # 5 MB
LOG_BACKUP_COUNT = 5
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty third-party loggers; requests logs every pooled connection at INFO/DEBUG
QUIET_LOGGERS = ("urllib3",)


class RecentErrors:
    """Last N error lines, shown to the kiosk operator via /status"""

    def __init__(self, maxlen: int = 20):
        self._entries = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def add(self, message: str, level: str):
        with self._lock:
            self._entries.append({'level': level, 'message': message})

    def snapshot(self) -> List[Dict[str, str]]:
        with self._lock:
            return list(self._entries)

    def clear(self):
        with self._lock:
            self._entries.clear()


class ErrorAlertHandler(logging.Handler):
    """Passes formatted ERROR/CRITICAL records to callback(message, level)"""

    def __init__(self, callback: Callable[[str, str], None]):
        super().__init__(level=logging.ERROR)
        self.callback = callback

    def emit(self, record: logging.LogRecord):
        try:
            self.callback(self.format(record), record.levelname)
        except Exception:
            self.handleError(record)


def _resolve_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level}")
    return resolved


def setup_logging(
    log_path: Optional[Union[str, Path]] = None,
    level: Union[int, str] = logging.INFO,
    console: bool = True,
    alert_callback: Optional[Callable[[str, str], None]] = None,
    max_bytes: int = LOG_MAX_BYTES,
    backup_count: int = LOG_BACKUP_COUNT,
) -> None:
    """
    Configure the root logger. Safe to call again, previous handlers are replaced.
    """
    log_path = Path(log_path or LOG_FILE)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    root = logging.getLogger()
    root.setLevel(_resolve_level(level))
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()

    handlers: List[logging.Handler] = [
        RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"),
    ]
    if console:
        handlers.append(logging.StreamHandler(sys.stderr))
    if alert_callback:
        handlers.append(ErrorAlertHandler(alert_callback))

    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
