import logging
import logging.config
import os
from pathlib import Path
from typing import Any, Dict

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _rotating_file(path: Path, level: str, max_bytes: int, backup_count: int) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "formatter": "default",
        "filename": str(path),
        "maxBytes": max_bytes,
        "backupCount": backup_count,
        "level": level,
        "encoding": "utf8",
    }


def build_logging_config(log_dir: Path, level: str = "INFO") -> Dict[str, Any]:
    """dictConfig for the gateway: console plus rotating app/error files."""
    max_bytes = int(os.getenv("LOG_MAX_BYTES", str(5 * 1024 * 1024)))
    backup_count = int(os.getenv("LOG_BACKUP_COUNT", "3"))
    everywhere = ["console", "file_app", "file_error"]
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": {"format": LOG_FORMAT}},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "level": level,
            },
            "file_app": _rotating_file(log_dir / "app.log", "INFO", max_bytes, backup_count),
            "file_error": _rotating_file(
                log_dir / "error.log", "ERROR", max_bytes, backup_count
            ),
        },
        "root": {"handlers": everywhere, "level": "INFO"},
        "loggers": {
            "auth_module": {
                "handlers": ["console", "file_app"],
                "level": "INFO",
                "propagate": False,
            },
            "boardroom": {"handlers": everywhere, "level": level, "propagate": False},
        },
    }


def setup_logging():
    """
    Configures logging for the gateway.
    Logs are written to '<BOARDROOM_LOG_DIR>/app.log' and '<BOARDROOM_LOG_DIR>/error.log'.
    """
    log_dir = Path(os.getenv("BOARDROOM_LOG_DIR", "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)
    level = os.getenv("LOG_LEVEL", "INFO").upper()

    logging.config.dictConfig(build_logging_config(log_dir, level))
    logging.getLogger("boardroom").info("Logging configured (level %s, dir %s)", level, log_dir)
