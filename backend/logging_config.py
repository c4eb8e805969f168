"""
Logging configuration for the offer portal API.
Call setup_logging() once at app startup.
"""
import json
import logging
import logging.handlers
import os
from datetime import datetime
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent
LOG_DIR = Path(os.getenv("LOG_DIR", str(BASE_DIR.parent / "logs"))).expanduser()
LOG_FILE_NAME = "offer_portal.log"


class JSONFormatter(logging.Formatter):
    """Structured JSON log lines for machine parsing."""

    def format(self, record):
        entry = {
            "ts": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)
        for key in ("quote_id", "offer_plate_id", "campaign_id", "user_id", "duration_ms"):
            if hasattr(record, key):
                entry[key] = getattr(record, key)
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    """Readable console format with color."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record):
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.utcnow().strftime("%H:%M:%S")
        line = f"{color}{ts} [{record.levelname[0]}] {record.name}: {record.getMessage()}{self.RESET}"
        if record.exc_info and record.exc_info[0]:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


def setup_logging(level=None, json_logs=None, log_dir=None):
    """
    Configure the root logger.

    Args:
        level: Override log level (default: LOG_LEVEL env or INFO)
        json_logs: Force JSON console output (default: LOG_JSON env)
        log_dir: Directory for the rotating log file (default: LOG_DIR env)
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO").upper()
    if json_logs is None:
        json_logs = env_flag("LOG_JSON")
    target_dir = Path(log_dir) if log_dir else LOG_DIR

    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setFormatter(JSONFormatter() if json_logs else HumanFormatter())
    root.addHandler(console)

    # Rotates at 5MB, keeps 5 backups; skipped when the directory is not writable.
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        fh = logging.handlers.RotatingFileHandler(
            str(target_dir / LOG_FILE_NAME),
            maxBytes=5_000_000,
            backupCount=5,
        )
        fh.setFormatter(JSONFormatter())
        root.addHandler(fh)
    except OSError:
        root.warning("File logging disabled: %s is not writable", target_dir)

    for name in ("urllib3", "uvicorn.access", "multipart", "reportlab"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("offer_portal").info("Logging initialized (level=%s)", level)
