"""Configuração de logging via dictConfig (console em dev, JSON em produção)."""
import logging
import logging.config
import sys
from typing import Any, Dict, Optional


def get_logging_config(level: str = "INFO", environment: str = "development",
                       service_name: Optional[str] = "trend-story-api") -> Dict[str, Any]:
    console_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    json_fmt = "%(asctime)s %(levelname)s %(name)s %(message)s"
    if service_name:
        console_fmt = f"%(asctime)s [{service_name}] [%(levelname)s] %(name)s: %(message)s"
        json_fmt = f"%(asctime)s %(levelname)s {service_name} %(name)s %(message)s"

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "format": json_fmt,
                "datefmt": "%Y-%m-%d %H:%M:%S",
                "class": "pythonjsonlogger.jsonlogger.JsonFormatter",
            },
            "console": {
                "format": console_fmt,
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "json" if environment == "production" else "console",
                "stream": sys.stdout,
            }
        },
        "loggers": {
            "trendstory": {"level": level, "handlers": ["console"], "propagate": False},
            "uvicorn": {"level": "INFO", "handlers": ["console"], "propagate": False},
            "uvicorn.access": {"level": "WARNING", "handlers": ["console"], "propagate": False},
            # apscheduler é verboso em INFO (um log por execução de job)
            "apscheduler": {"level": "WARNING", "handlers": ["console"], "propagate": False},
        },
        "root": {"level": level, "handlers": ["console"]},
    }


def setup_logging(level: str = "INFO", environment: str = "development") -> None:
    logging.config.dictConfig(get_logging_config(level, environment))
