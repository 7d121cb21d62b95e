"""
Centralized logging configuration.

Sets up:
- Console handler (level from LOG_LEVEL, INFO by default)
- Rotating file handler for app.log (DEBUG level)
- Separate file handler for errors.log (ERROR level)
- Rotating ticks.log for the phase scheduler (transition engine and the
  cron route), so lock claims and recoveries can be audited on their own
- Quieter third-party loggers (pymongo, google-genai, httpx)
"""

import logging
import logging.config
import os

from configs.config import get_config

cfg = get_config()

_NOISY_LOGGERS = ("pymongo", "google_genai", "httpx", "urllib3")

_SCHEDULER_LOGGERS = (
    "campfire.game.transition_engine",
    "campfire.routes.cron_routes",
)


def setup_logging() -> None:
    """Configure logging once at application startup."""
    console_level = os.getenv("LOG_LEVEL", "INFO").upper()

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": console_level,
                "formatter": "default",
            },
            "app_log_handler": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "DEBUG",
                "formatter": "default",
                "filename": cfg.LOG_FILE_APP,
                "maxBytes": cfg.LOG_MAX_BYTES,
                "backupCount": cfg.LOG_BACKUP_COUNT,
                "encoding": "utf8",
            },
            "error_log_handler": {
                "class": "logging.FileHandler",
                "level": "ERROR",
                "formatter": "default",
                "filename": cfg.LOG_FILE_ERRORS,
                "encoding": "utf8",
            },
            "tick_log_handler": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "INFO",
                "formatter": "default",
                "filename": cfg.LOG_FILE_TICKS,
                "maxBytes": cfg.LOG_MAX_BYTES,
                "backupCount": cfg.LOG_BACKUP_COUNT,
                "encoding": "utf8",
            },
        },
        "loggers": {
            **{name: {"level": "WARNING"} for name in _NOISY_LOGGERS},
            **{
                name: {"level": "DEBUG", "handlers": ["tick_log_handler"]}
                for name in _SCHEDULER_LOGGERS
            },
        },
        "root": {
            "level": "DEBUG",
            "handlers": ["console", "app_log_handler", "error_log_handler"],
        },
    }

    logging.config.dictConfig(logging_config)
    logging.info(
        "Logging configured (console=%s, environment=%s).",
        console_level, cfg.ENVIRONMENT,
    )
