"""Logging setup for the service process."""
from logging.config import dictConfig

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Send all log records to stderr with timestamps.

    Library modules only call ``logging.getLogger(__name__)``; this is called
    once by the service entry point.
    """
    dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {"format": LOG_FORMAT},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "standard",
                "stream": "ext://sys.stderr",
            },
        },
        "root": {"handlers": ["console"], "level": level.upper()},
        "loggers": {
            # nostr_sdk's UniFFI layer is chatty at INFO
            "nostr_sdk": {"level": "WARNING"},
            "urllib3": {"level": "WARNING"},
        },
    })
