from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone

from tenantinfra.core.config import get_settings


# Third-party loggers that drown out workflow events at INFO.
_NOISY_LOGGERS = ("botocore", "boto3", "urllib3", "aiosqlite", "asyncio", "arq.jobs")

_configured = False


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        # One object per line keeps log shippers from splitting tracebacks.
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(*, force: bool = False) -> None:
    # Configure the root logger once per process; workers and the API share it.
    global _configured
    if _configured and not force:
        return
    settings = get_settings()
    level = settings.log_level.upper()
    formatter: dict = (
        {"()": JsonFormatter}
        if settings.log_json
        else {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"}
    )
    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": formatter},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stdout",
            }
        },
        "root": {"level": level, "handlers": ["console"]},
        "loggers": {
            name: {"level": "WARNING" if level != "DEBUG" else "DEBUG"} for name in _NOISY_LOGGERS
        },
    }
    logging.config.dictConfig(config)
    _configured = True
