from __future__ import annotations

import logging
import logging.config

from leasekeeper.core.config import get_settings


_LOG_FORMAT = "%(asctime)s level=%(levelname)s logger=%(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Emit key=value style lines on stderr so log shippers can parse fields without a JSON layer.
    resolved_level = (level or get_settings().log_level or "INFO").upper()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"kv": {"format": _LOG_FORMAT}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "kv",
                    "stream": "ext://sys.stderr",
                }
            },
            "root": {"handlers": ["console"], "level": resolved_level},
            "loggers": {
                # Keep driver chatter out of request logs unless debugging.
                "sqlalchemy.engine": {"level": "WARNING"},
                "botocore": {"level": "WARNING"},
                "uvicorn.access": {"level": resolved_level},
            },
        }
    )
    logging.getLogger(__name__).debug("logging_configured level=%s", resolved_level)
