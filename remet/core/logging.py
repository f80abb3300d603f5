import logging
import logging.handlers
import sys
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from remet.core.config import settings

# --- Logging Configuration ---

LOG_FILE_NAME    = "remet.log"
LOG_MAX_BYTES    = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5

# Record extras copied into the JSON line when present.
STRUCTURED_EXTRAS = ("identity_id", "scan_generation", "duration_ms")


class DevFormatter(logging.Formatter):

    LEVEL_COLORS = {
        "DEBUG"    : "\033[94m",   # BLUE
        "INFO"     : "\033[92m",   # GREEN
        "WARNING"  : "\033[93m",   # YELLOW
        "ERROR"    : "\033[91m",   # RED
        "CRITICAL" : "\033[95m",   # MAGENTA
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:

        color     = self.LEVEL_COLORS.get(record.levelname, self.RESET)
        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        level     = f"{color}{record.levelname:<8}{self.RESET}"
        name      = record.name[:40]

        message = record.getMessage()

        # Exception goes on the following lines
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return f"{timestamp} | {level} | {name:<40} | {message}"


class JSONFormatter(logging.Formatter):
    """
    Production formatter, one JSON line per event so log aggregators can
    query the fields directly.

    Example line:
    {
        "timestamp": "2026-02-25T10:32:11.123Z",
        "level": "INFO",
        "logger": "remet.services.scan_orchestrator",
        "message": "Scan finished with 2 face(s)",
        "environment": "production",
        "service": "remet-core",
        "scan_generation": 4
    }
    """

    def __init__(self, environment: Optional[str] = None):
        super().__init__()
        self.environment = environment or settings.ENVIRONMENT

    def format(self, record: logging.LogRecord) -> str:

        log_entry: dict[str, Any] = {
            "timestamp"   : datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level"       : record.levelname,
            "logger"      : record.name,
            "message"     : record.getMessage(),
            "environment" : self.environment,
            "service"     : "remet-core",
        }

        for key in STRUCTURED_EXTRAS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False)


# Main SetUp

def setup_logging(
    log_dir: Optional[str] = None,
    level: Optional[str] = None,
    environment: Optional[str] = None,
) -> None:
    """
    Initialize the logging system of the host application.

    It must be called only ONCE, before the first scan or quiz session is
    created. The library itself never calls it.

    Configures two handlers:

    - StreamHandler: stdout
    - RotatingFileHandler: <LOG_DIR>/remet.log

    """
    environment = environment or settings.ENVIRONMENT
    level_name  = (level or settings.LOG_LEVEL).upper()
    log_path    = Path(log_dir or settings.LOG_DIR)

    if environment == "production":
        formatter: logging.Formatter = JSONFormatter(environment)
    else:
        formatter = DevFormatter()

    numeric_level = getattr(logging, level_name, logging.INFO)

    # --- Handler 1: stdout ---
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setLevel(numeric_level)
    stream_handler.setFormatter(formatter)

    # --- Handler 2: rotating file ---
    try:
        log_path.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            filename    = log_path / LOG_FILE_NAME,
            maxBytes    = LOG_MAX_BYTES,
            backupCount = LOG_BACKUP_COUNT,
            encoding    = "utf-8"
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        handlers: list[logging.Handler] = [stream_handler, file_handler]
    except PermissionError:
        # Read-only sandbox or unmounted volume: keep going with stdout only
        handlers = [stream_handler]
        logging.warning(
            f"Could not create the log file in {log_path}. "
            f"Continuing with stdout only."
        )

    logging.basicConfig(
        level    = numeric_level,
        handlers = handlers,
        force    = True
    )

    # Inference runtime is chatty at INFO
    logging.getLogger("onnxruntime").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(
        f"Logging initialized. "
        f"env={environment}  level={level_name}  "
        f"file={log_path / LOG_FILE_NAME}"
    )


def get_logger(name: str) -> logging.Logger:
    """
    Returns a logger named after the calling module.
    """
    return logging.getLogger(name)
