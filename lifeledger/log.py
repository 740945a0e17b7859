# lifeledger/log.py
from __future__ import annotations
import logging, os

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
# libraries that log every job tick, file event or SQL connection at INFO
_CHATTY = ("apscheduler", "watchdog", "aiosqlite", "httpx", "openai")


def setup_logging(level: str | None = None) -> None:
    """
    LIFELEDGER_LOG picks the level (default INFO); LIFELEDGER_LOG_FILE also
    appends to that file. Below DEBUG, third-party loggers only show warnings.
    """
    level_name = (level or os.getenv("LIFELEDGER_LOG", "INFO")).upper()
    lvl = getattr(logging, level_name, logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_file = os.getenv("LIFELEDGER_LOG_FILE")
    if log_file:
        handlers.append(logging.FileHandler(os.path.expanduser(log_file), encoding="utf-8"))
    logging.basicConfig(level=lvl, format=_FORMAT, datefmt="%H:%M:%S", handlers=handlers)
    if lvl > logging.DEBUG:
        for name in _CHATTY:
            logging.getLogger(name).setLevel(logging.WARNING)

logger = logging.getLogger("lifeledger")
