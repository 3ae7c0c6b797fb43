"""
Logging Configuration for the Copilot Server
Console + rotating file logging with optional JSON structured output
"""

import logging
import logging.config
import sys
from pathlib import Path

from .settings import get_settings


def build_logging_config(settings=None) -> dict:
    """Build the dictConfig payload for the current settings"""
    settings = settings or get_settings()

    log_path = Path(settings.log_path)
    main_log_file = log_path / "copilot_server.log"
    error_log_file = log_path / "errors.log"

    file_formatter = "json" if settings.structured_logging else "detailed"

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            },
            "detailed": {
                "format": "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(funcName)s() - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            },
            "json": {
                "()": "pythonjsonlogger.json.JsonFormatter",
                "format": "%(asctime)s %(name)s %(levelname)s %(message)s %(pathname)s %(lineno)d"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": "INFO",
                "formatter": "standard",
                "stream": sys.stdout
            },
            "file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "INFO",
                "formatter": file_formatter,
                "filename": str(main_log_file),
                "maxBytes": 10485760,  # 10MB
                "backupCount": 5,
                "encoding": "utf8"
            },
            "error_file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "ERROR",
                "formatter": "detailed",
                "filename": str(error_log_file),
                "maxBytes": 10485760,  # 10MB
                "backupCount": 10,
                "encoding": "utf8"
            }
        },
        "loggers": {
            "": {  # Root logger
                "level": settings.log_level,
                "handlers": ["console", "file", "error_file"],
                "propagate": False
            },
            "copilot": {
                "level": "DEBUG" if settings.debug else settings.log_level,
                "handlers": ["console", "file", "error_file"],
                "propagate": False
            },
            "uvicorn": {
                "level": "INFO",
                "handlers": ["console", "file"],
                "propagate": False
            },
            "uvicorn.access": {
                "level": "INFO",
                "handlers": ["file"],
                "propagate": False
            },
            "httpx": {
                "level": "WARNING",
                "handlers": ["file"],
                "propagate": False
            }
        }
    }


def setup_logging(settings=None):
    """
    Set up logging for the copilot server.
    Creates the log directory before handlers open their files.
    """
    settings = settings or get_settings()
    Path(settings.log_path).mkdir(parents=True, exist_ok=True)

    logging.config.dictConfig(build_logging_config(settings))

    logger = logging.getLogger("copilot_server")
    logger.info("Logging system initialized")
    logger.info(f"Log level: {settings.log_level}")
    logger.info(f"Log directory: {settings.log_path}")
    logger.info(f"Structured logging: {'enabled' if settings.structured_logging else 'disabled'}")
