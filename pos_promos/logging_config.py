"""Logging setup shared by the web app and the CLI commands."""
from logging.config import dictConfig


def setup_logging(level: str = 'INFO'):
    """Console logging for the application loggers ('pos_promos.*')."""
    dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "pos_promos": {"level": level.upper()},
        },
        "root": {
            "level": "WARNING",
            "handlers": ["console"],
        },
    })
